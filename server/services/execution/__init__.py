"""Execution engine package.

Workflow execution with:
- Immutable per-run graph snapshots
- Breadth-first frontiers executed in parallel with asyncio.gather
- Runtime conditional branching on "true"/"false" edge handles
- A node execution ceiling that bounds cyclic graphs
"""

from .exceptions import (
    WorkflowEngineError,
    WorkflowValidationError,
    WorkflowNotFoundError,
    ScheduleValidationError,
    ScheduleNotFoundError,
    UnknownNodeTypeError,
    NodeExecutionError,
    WorkflowRunError,
    NodeLimitExceededError,
)
from .models import (
    GraphNode,
    GraphEdge,
    NodeResult,
    NodeExecutionContext,
    WorkflowSnapshot,
)
from .conditions import (
    evaluate_condition,
    extract_decision,
    get_nested_value,
)
from .graph import GraphWalker, validate_graph

__all__ = [
    # Exceptions
    "WorkflowEngineError",
    "WorkflowValidationError",
    "WorkflowNotFoundError",
    "ScheduleValidationError",
    "ScheduleNotFoundError",
    "UnknownNodeTypeError",
    "NodeExecutionError",
    "WorkflowRunError",
    "NodeLimitExceededError",
    # Models
    "GraphNode",
    "GraphEdge",
    "NodeResult",
    "NodeExecutionContext",
    "WorkflowSnapshot",
    # Conditions
    "evaluate_condition",
    "extract_decision",
    "get_nested_value",
    # Graph
    "GraphWalker",
    "validate_graph",
]
