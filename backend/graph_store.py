import logging
from typing import Dict, List, Any, Optional, Tuple, Iterable

from pydantic import ValidationError as PydanticValidationError

from .errors import (
    GraphIntegrityError,
    DuplicateIdError,
    DanglingReferenceError,
    NodeNotFoundError,
    EdgeNotFoundError,
)
from .schemas import Node, Edge, Graph, NodeState, NODE_FIELDS

logger = logging.getLogger(__name__)


class GraphStore:
    """
    Authoritative in-memory owner of the workflow graph.

    Nodes and edges are private; callers get copies and change the graph only
    through the mutators below. Every mutator either applies completely or
    raises before touching anything, so no dangling edge and no node breaking
    the output/state invariant is ever observable.

    Not thread-safe: it is meant to be used from a single event loop.
    """

    def __init__(self):
        self._nodes: Dict[str, Node] = {}
        self._edges: List[Edge] = []

    # --- Read access ---

    @property
    def nodes(self) -> Tuple[Node, ...]:
        return tuple(n.model_copy(deep=True) for n in self._nodes.values())

    @property
    def edges(self) -> Tuple[Edge, ...]:
        return tuple(e.model_copy() for e in self._edges)

    def snapshot(self) -> Graph:
        return Graph(nodes=list(self.nodes), edges=list(self.edges))

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_node(self, node_id: str) -> Node:
        return self._require_node(node_id).model_copy(deep=True)

    def find_node(self, node_id: str) -> Optional[Node]:
        node = self._nodes.get(node_id)
        return node.model_copy(deep=True) if node else None

    # --- Nodes ---

    def add_node(self, node: Node) -> Node:
        if node.id in self._nodes:
            raise DuplicateIdError(node.id)
        self._nodes[node.id] = node.model_copy(deep=True)
        logger.info(f"Added {node.kind.value} node {node.id}")
        return node.model_copy(deep=True)

    def update_node_data(self, node_id: str, partial: Dict[str, Any]) -> Node:
        """
        Shallow-merge `partial` into a node.

        state/output/error/position go to the node itself, any other key is
        merged into its config. Keys absent from `partial` are left alone.
        """
        updated = self._merged(node_id, partial)
        self._nodes[node_id] = updated
        logger.debug(f"Updated node {node_id}: {sorted(partial.keys())}")
        return updated.model_copy(deep=True)

    def reset_node(self, node_id: str) -> Node:
        """Drop a node's output and error and put it back to idle."""
        return self.update_node_data(
            node_id, {"state": NodeState.IDLE, "output": None, "error": None}
        )

    def remove_node(self, node_id: str) -> Node:
        node = self._require_node(node_id)
        del self._nodes[node_id]
        before = len(self._edges)
        self._edges = [e for e in self._edges if node_id not in (e.source, e.target)]
        logger.info(f"Removed node {node_id} and {before - len(self._edges)} connected edge(s)")
        return node

    def set_nodes(self, nodes: Iterable[Node]) -> None:
        """
        Replace every node at once.

        Edges whose endpoints are no longer present are dropped along with
        the nodes they referenced.
        """
        replacement: Dict[str, Node] = {}
        for node in nodes:
            if node.id in replacement:
                raise DuplicateIdError(node.id)
            replacement[node.id] = node.model_copy(deep=True)

        surviving = [e for e in self._edges if e.source in replacement and e.target in replacement]
        dropped = len(self._edges) - len(surviving)
        if dropped:
            logger.info(f"set_nodes dropped {dropped} edge(s) referencing removed nodes")
        self._nodes = replacement
        self._edges = surviving

    def apply_result(self, node_id: str, partial: Dict[str, Any], new_node: Node) -> Tuple[Node, Node]:
        """Update a node and insert a new one in a single step."""
        if new_node.id in self._nodes:
            raise DuplicateIdError(new_node.id)
        updated = self._merged(node_id, partial)
        self._nodes[node_id] = updated
        self._nodes[new_node.id] = new_node.model_copy(deep=True)
        logger.info(f"Node {node_id} produced {new_node.kind.value} node {new_node.id}")
        return updated.model_copy(deep=True), new_node.model_copy(deep=True)

    # --- Edges ---

    def add_edge(self, edge: Edge) -> Edge:
        self._check_edge(edge, self._edges)
        self._edges.append(edge.model_copy())
        logger.info(f"Connected {edge.source} -> {edge.target} ({edge.id})")
        return edge.model_copy()

    def remove_edge(self, edge_id: str) -> Edge:
        for i, edge in enumerate(self._edges):
            if edge.id == edge_id:
                del self._edges[i]
                logger.info(f"Removed edge {edge_id}")
                return edge
        raise EdgeNotFoundError(edge_id)

    def set_edges(self, edges: Iterable[Edge]) -> None:
        replacement: List[Edge] = []
        for edge in edges:
            self._check_edge(edge, replacement)
            replacement.append(edge.model_copy())
        self._edges = replacement

    def clear(self) -> None:
        self._nodes = {}
        self._edges = []
        logger.info("Graph cleared")

    # --- Helpers ---

    def _require_node(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            logger.warning(f"Unknown node id: {node_id}")
            raise NodeNotFoundError(node_id)
        return node

    def _check_edge(self, edge: Edge, existing: List[Edge]) -> None:
        if any(e.id == edge.id for e in existing):
            raise DuplicateIdError(edge.id, what="edge")
        for endpoint in (edge.source, edge.target):
            if endpoint not in self._nodes:
                logger.warning(f"Rejected edge {edge.id}: missing node {endpoint}")
                raise DanglingReferenceError(edge.id, endpoint)

    def _merged(self, node_id: str, partial: Dict[str, Any]) -> Node:
        node = self._require_node(node_id)
        data = node.model_dump()
        config = data["config"]
        for key, value in partial.items():
            if key in ("id", "kind"):
                raise GraphIntegrityError(f"Node '{node_id}': '{key}' cannot be changed")
            if key in NODE_FIELDS:
                data[key] = value
            else:
                config[key] = value
        try:
            return Node.model_validate(data)
        except PydanticValidationError as e:
            reason = "; ".join(err["msg"] for err in e.errors())
            raise GraphIntegrityError(f"Invalid update for node '{node_id}': {reason}") from e
