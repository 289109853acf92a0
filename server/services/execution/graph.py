"""Graph walking over a workflow snapshot.

The adjacency index is built once per run. Standard nodes fan out to every
outgoing edge; conditional nodes follow only the edges whose sourceHandle
matches the decision in their output.
"""

from typing import Dict, List, Optional, Sequence, Set, Tuple

from core.logging import get_logger
from constants import CONDITIONAL_NODE_TYPES, BRANCH_TRUE, BRANCH_FALSE, BRANCH_HANDLES
from .conditions import extract_decision
from .exceptions import WorkflowValidationError
from .models import GraphNode, GraphEdge, NodeResult

logger = get_logger(__name__)


class GraphWalker:
    """Computes successor node ids for a fixed node/edge snapshot."""

    def __init__(self, nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]):
        self._nodes: Dict[str, GraphNode] = {n.id: n for n in nodes}
        self._order: List[str] = [n.id for n in nodes]
        self._adjacency: Dict[str, List[Tuple[str, Optional[str]]]] = {}
        self._targets: Set[str] = set()

        for edge in edges:
            self._adjacency.setdefault(edge.source, []).append((edge.target, edge.source_handle))
            self._targets.add(edge.target)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._nodes.get(node_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def entry_points(self) -> List[str]:
        """Nodes that are not the target of any edge, in node order."""
        return [node_id for node_id in self._order if node_id not in self._targets]

    def next_nodes(self, node_id: str, result: NodeResult) -> List[str]:
        """Ordered successor ids given the node's result.

        A failed node has no successors. Edge array order is preserved.
        """
        if not result.success:
            return []

        outgoing = self._adjacency.get(node_id, [])
        node = self._nodes.get(node_id)

        if node is None or node.type not in CONDITIONAL_NODE_TYPES:
            return [target for target, _ in outgoing]

        decision = extract_decision(result.output)
        if decision is None:
            logger.warning("Conditional node produced no decision",
                           node_id=node_id, output_type=type(result.output).__name__)
            return []

        handle = BRANCH_TRUE if decision else BRANCH_FALSE
        targets = [target for target, edge_handle in outgoing if edge_handle == handle]
        if not targets:
            logger.debug("No edge for branch, terminating", node_id=node_id, branch=handle)
        return targets

    def find_cycle(self) -> Optional[List[str]]:
        """Return one cycle as a list of node ids, or None when acyclic."""
        WHITE, GREY, BLACK = 0, 1, 2
        color = {node_id: WHITE for node_id in self._order}
        parent: Dict[str, Optional[str]] = {}

        for root in self._order:
            if color[root] != WHITE:
                continue
            stack = [(root, iter(self._adjacency.get(root, [])))]
            color[root] = GREY
            parent[root] = None

            while stack:
                current, children = stack[-1]
                advanced = False
                for target, _ in children:
                    if target not in color:
                        continue
                    if color[target] == GREY:
                        cycle = [target]
                        walk = current
                        while walk is not None and walk != target:
                            cycle.append(walk)
                            walk = parent[walk]
                        cycle.append(target)
                        cycle.reverse()
                        return cycle
                    if color[target] == WHITE:
                        color[target] = GREY
                        parent[target] = current
                        stack.append((target, iter(self._adjacency.get(target, []))))
                        advanced = True
                        break
                if not advanced:
                    color[current] = BLACK
                    stack.pop()

        return None


def validate_graph(nodes: Sequence[GraphNode], edges: Sequence[GraphEdge]) -> None:
    """Reject structurally broken graphs.

    Raises:
        WorkflowValidationError: duplicate node ids, edges to unknown nodes,
            or conditional edges with a handle other than true/false.
    """
    seen: Set[str] = set()
    types: Dict[str, str] = {}
    for node in nodes:
        if node.id in seen:
            raise WorkflowValidationError(f"Duplicate node id: {node.id}")
        seen.add(node.id)
        types[node.id] = node.type

    for edge in edges:
        if edge.source not in seen:
            raise WorkflowValidationError(f"Edge references unknown source node: {edge.source}")
        if edge.target not in seen:
            raise WorkflowValidationError(f"Edge references unknown target node: {edge.target}")
        if types[edge.source] in CONDITIONAL_NODE_TYPES and edge.source_handle not in BRANCH_HANDLES:
            raise WorkflowValidationError(
                f"Conditional node {edge.source} edge must use sourceHandle 'true' or 'false'"
            )
