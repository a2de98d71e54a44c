class GraphError(Exception):
    """Base class for every error raised by the graph engine."""


class GraphIntegrityError(GraphError):
    """A mutation would break referential integrity or a node invariant."""


class DuplicateIdError(GraphIntegrityError):
    def __init__(self, item_id: str, what: str = "node"):
        self.item_id = item_id
        super().__init__(f"{what.capitalize()} '{item_id}' already exists")


class DanglingReferenceError(GraphIntegrityError):
    def __init__(self, edge_id: str, missing: str):
        self.edge_id = edge_id
        self.missing = missing
        super().__init__(f"Edge '{edge_id}' references missing node '{missing}'")


class NodeNotFoundError(GraphIntegrityError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found")


class EdgeNotFoundError(GraphIntegrityError):
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge '{edge_id}' not found")


class ValidationError(GraphError):
    """Invoke rejected because the node lacks required inputs or config."""

    def __init__(self, node_id: str, reason: str):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Node '{node_id}' cannot run: {reason}")


class ProcessorError(GraphError):
    """The external image backend failed to produce an artifact."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)
