"""Node Executor Registry - single node execution with handler dispatch.

Uses a registry pattern for clean handler dispatch without if-else chains.
Each node type maps to an async handler and a pydantic config model. The
registry validates config, applies the per-node deadline, measures duration,
and converts handler failures into a failed NodeResult.
"""

import asyncio
import time
from functools import partial
from typing import Dict, Any, Optional, Callable, Awaitable, Type, TYPE_CHECKING

import httpx
from pydantic import BaseModel, ValidationError

from core.logging import get_logger
from constants import TRIGGER_NODE_TYPES, SUPPORTED_NODE_TYPES
from models.nodes import validate_node_config
from services.execution.exceptions import NodeExecutionError, UnknownNodeTypeError
from services.execution.models import GraphNode, NodeResult, NodeExecutionContext
from services.handlers import (
    handle_trigger, handle_delay, handle_condition,
    handle_http_request,
    handle_slack_send, handle_discord_send, handle_twilio_message, handle_whatsapp_group,
    handle_email_send, handle_alert_send,
    handle_attendance_track, handle_assignment_create, handle_schedule_check,
)

if TYPE_CHECKING:
    from core.config import Settings

logger = get_logger(__name__)

NodeHandler = Callable[[str, str, Any, NodeExecutionContext], Awaitable[Any]]


def format_validation_error(error: ValidationError) -> str:
    """Condense a pydantic ValidationError into one line."""
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "type")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Invalid node config: " + "; ".join(parts)


class NodeExecutorRegistry:
    """Maps node type tags to handlers and executes single nodes."""

    def __init__(
        self,
        settings: "Settings",
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.node_timeout = settings.node_timeout_seconds
        self._http_transport = http_transport
        self._handlers: Dict[str, NodeHandler] = self._build_handler_registry()
        self._config_models: Dict[str, Type[BaseModel]] = {}

    def _build_handler_registry(self) -> Dict[str, NodeHandler]:
        """Build handler registry with service dependencies bound via partial."""
        transport = self._http_transport
        registry = {
            # Logic
            'delay': handle_delay,
            'condition': handle_condition,
            # HTTP
            'http-request': partial(handle_http_request, transport=transport),
            # Messaging
            'slack-send': partial(handle_slack_send, settings=self.settings, transport=transport),
            'discord-send': partial(handle_discord_send, settings=self.settings, transport=transport),
            'twilio-sms': partial(handle_twilio_message, settings=self.settings, transport=transport),
            'twilio-whatsapp': partial(handle_twilio_message, settings=self.settings, transport=transport),
            'whatsapp-group': partial(handle_whatsapp_group, settings=self.settings, transport=transport),
            'email-send': partial(handle_email_send, settings=self.settings),
            'alert-send': partial(handle_alert_send, settings=self.settings, transport=transport),
            # Education
            'attendance-track': handle_attendance_track,
            'assignment-create': handle_assignment_create,
            'schedule-check': handle_schedule_check,
        }

        # Register triggers
        for node_type in TRIGGER_NODE_TYPES:
            registry[node_type] = handle_trigger

        return registry

    def register(self, node_type: str, handler: NodeHandler,
                 config_model: Optional[Type[BaseModel]] = None) -> None:
        """Register (or replace) the handler for a node type."""
        self._handlers[node_type] = handler
        if config_model is not None:
            self._config_models[node_type] = config_model
        else:
            self._config_models.pop(node_type, None)
        logger.info("Registered node handler", node_type=node_type)

    def resolve(self, node_type: str) -> NodeHandler:
        """Return the handler for a node type.

        Raises:
            UnknownNodeTypeError: no handler registered
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(node_type)
        return handler

    def supports(self, node_type: str) -> bool:
        return node_type in self._handlers

    def supported_types(self) -> list:
        return sorted(self._handlers)

    def _validate_config(self, node_type: str, config: Dict[str, Any]) -> Any:
        model = self._config_models.get(node_type)
        if model is not None:
            return model.model_validate(config)
        if node_type in SUPPORTED_NODE_TYPES:
            return validate_node_config(node_type, config)
        # Extension handler without a model receives the raw mapping
        return dict(config)

    async def execute(self, node: GraphNode, context: NodeExecutionContext) -> NodeResult:
        """Execute a single workflow node.

        Never raises for node-level failures: unknown type, invalid config,
        handler exceptions and deadline expiry all yield success=False.
        """
        start_time = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start_time) * 1000)

        try:
            handler = self.resolve(node.type)
            params = self._validate_config(node.type, node.config)
            output = await asyncio.wait_for(
                handler(node.id, node.type, params, context),
                timeout=self.node_timeout,
            )
        except ValidationError as e:
            message = format_validation_error(e)
            logger.warning("Node config invalid", node_id=node.id, node_type=node.type, error=message)
            return NodeResult(node.id, False, error=message, duration_ms=elapsed_ms())
        except asyncio.TimeoutError:
            message = f"Node timed out after {self.node_timeout} seconds"
            logger.error("Node execution timed out", node_id=node.id, node_type=node.type,
                         timeout=self.node_timeout)
            return NodeResult(node.id, False, error=message, duration_ms=elapsed_ms())
        except Exception as e:
            logger.error("Node execution error", node_id=node.id, node_type=node.type,
                         run_id=context.run_id, error=str(e))
            output = e.output if isinstance(e, NodeExecutionError) else None
            return NodeResult(node.id, False, output=output, error=str(e) or type(e).__name__,
                              duration_ms=elapsed_ms())

        duration = elapsed_ms()
        logger.debug("Node executed", node_id=node.id, node_type=node.type, duration_ms=duration)
        return NodeResult(node.id, True, output=output, duration_ms=duration)
