"""Utility node handlers - Triggers, Delay, Condition."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, Any

from core.logging import get_logger
from models.nodes import TriggerParams, DelayParams, ConditionParams
from services.execution.conditions import evaluate_condition, get_nested_value
from services.execution.models import NodeExecutionContext

logger = get_logger(__name__)


# =============================================================================
# TRIGGER HANDLERS
# =============================================================================

async def handle_trigger(
    node_id: str,
    node_type: str,
    parameters: TriggerParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """Entry marker for manual, schedule and webhook triggers.

    The run payload is passed through unchanged so downstream nodes can read
    it both at top level and under the trigger's node id.
    """
    logger.debug("Trigger fired", node_id=node_id, trigger=node_type, run_id=context.run_id)
    return dict(context.payload)


# =============================================================================
# LOGIC HANDLERS
# =============================================================================

async def handle_delay(
    node_id: str,
    node_type: str,
    parameters: DelayParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """Sleep for `duration` seconds."""
    if parameters.duration > 0:
        await asyncio.sleep(parameters.duration)
    return {
        "delayed": True,
        "duration": parameters.duration,
        "delayedAt": datetime.now(timezone.utc).isoformat(),
    }


async def handle_condition(
    node_id: str,
    node_type: str,
    parameters: ConditionParams,
    context: NodeExecutionContext
) -> Dict[str, Any]:
    """Evaluate field/operator/value against the accumulated input.

    Args:
        node_id: The node ID
        node_type: The node type (condition)
        parameters: Validated condition config
        context: Execution context; `input` is searched with dot paths

    Returns:
        {decision, passed, fieldValue, condition}
    """
    condition = {
        "field": parameters.field,
        "operator": parameters.operator,
        "value": parameters.value,
    }
    passed = evaluate_condition(condition, context.input)
    logger.info("Condition evaluated", node_id=node_id, field=parameters.field,
                operator=parameters.operator, passed=passed)
    return {
        "decision": passed,
        "passed": passed,
        "fieldValue": get_nested_value(context.input, parameters.field),
        "condition": {**condition, "result": passed},
    }
