"""Execution engine state models.

Immutable graph snapshot types plus the per-node result and context records
threaded through a run. All records are JSON-serializable for persistence on
the run row and for dashboard events.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple

import orjson

from core.logging import get_logger
from .exceptions import WorkflowValidationError

logger = get_logger(__name__)


def to_jsonable(value: Any) -> Any:
    """Coerce handler output into plain JSON types (datetimes, UUIDs -> str).

    Never raises: values orjson cannot encode (integers wider than 64 bits,
    unusual keys) are converted piecewise, falling back to str().
    """
    if value is None:
        return None
    try:
        return orjson.loads(orjson.dumps(value, default=str, option=orjson.OPT_NON_STR_KEYS))
    except TypeError:
        return _coerce(value)


def _coerce(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        return value if -2**63 <= value < 2**64 else str(value)
    if isinstance(value, dict):
        return {str(k): _coerce(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce(v) for v in value]
    try:
        return orjson.loads(orjson.dumps(value, default=str, option=orjson.OPT_NON_STR_KEYS))
    except TypeError:
        return str(value)


@dataclass(frozen=True)
class GraphNode:
    """A node as read from the workflow snapshot."""
    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphNode":
        """Parse the stored React Flow shape.

        The effective type is data.nodeType when present, else the top-level
        type. Config lives under data.config (or top-level config).
        """
        if not isinstance(data, dict):
            raise WorkflowValidationError("Workflow nodes are malformed or not an array")

        node_id = data.get("id")
        node_data = data.get("data") if isinstance(data.get("data"), dict) else {}
        node_type = node_data.get("nodeType") or data.get("type")
        if not isinstance(node_id, str) or not node_id:
            raise WorkflowValidationError("Every node requires a string id")
        if not isinstance(node_type, str) or not node_type:
            raise WorkflowValidationError(f"Node {node_id} has no type")

        config = node_data.get("config", data.get("config")) or {}
        if not isinstance(config, dict):
            raise WorkflowValidationError(f"Node {node_id} config must be an object")

        return cls(id=node_id, type=node_type, config=dict(config), label=node_data.get("label"))


@dataclass(frozen=True)
class GraphEdge:
    """Directed edge; source_handle selects conditional branches."""
    source: str
    target: str
    source_handle: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GraphEdge":
        if not isinstance(data, dict):
            raise WorkflowValidationError("Workflow edges are malformed or not an array")
        source = data.get("source")
        target = data.get("target")
        if not isinstance(source, str) or not isinstance(target, str):
            raise WorkflowValidationError("Every edge requires string source and target")
        handle = data.get("sourceHandle")
        return cls(
            source=source,
            target=target,
            source_handle=str(handle).lower() if handle is not None else None,
            id=data.get("id"),
        )


@dataclass
class NodeResult:
    """Recorded outcome of one node within one run."""
    node_id: str
    success: bool
    output: Any = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase JSON stored on the run row."""
        return {
            "nodeId": self.node_id,
            "success": self.success,
            "output": to_jsonable(self.output),
            "error": self.error,
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeResult":
        return cls(
            node_id=data["nodeId"],
            success=bool(data.get("success")),
            output=data.get("output"),
            error=data.get("error"),
            duration_ms=data.get("durationMs"),
        )


@dataclass(frozen=True)
class NodeExecutionContext:
    """Everything a handler may read about the run it executes in.

    input is the run payload merged with {node_id: output} of every node that
    completed before this node's frontier. A node id equal to a payload key
    shadows it, so input["payload"] and input["nodes"] always hold the raw
    payload and the outputs by node id.
    """
    workflow_id: str
    run_id: str
    organization_id: str
    node_id: str
    node_type: str
    input: Dict[str, Any] = field(default_factory=dict)
    payload: Dict[str, Any] = field(default_factory=dict)
    previous_results: Tuple[NodeResult, ...] = ()
    credentials: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class WorkflowSnapshot:
    """Immutable copy of a workflow's graph taken at run start."""
    workflow_id: str
    organization_id: str
    name: str
    nodes: Tuple[GraphNode, ...]
    edges: Tuple[GraphEdge, ...]

    @classmethod
    def from_definition(cls, workflow_id: str, organization_id: str, name: str,
                        nodes: Any, edges: Any) -> "WorkflowSnapshot":
        if not isinstance(nodes, list):
            raise WorkflowValidationError("Workflow nodes are malformed or not an array")
        if edges is None:
            edges = []
        if not isinstance(edges, list):
            raise WorkflowValidationError("Workflow edges are malformed or not an array")

        return cls(
            workflow_id=workflow_id,
            organization_id=organization_id,
            name=name,
            nodes=tuple(GraphNode.from_dict(n) for n in nodes),
            edges=tuple(GraphEdge.from_dict(e) for e in edges),
        )

    def node_types(self) -> List[str]:
        return [n.type for n in self.nodes]
