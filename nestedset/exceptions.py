class NestedSetError(Exception):
    """Base class for every error raised by the tree operations."""


class MappingError(NestedSetError):
    """A record (or a mapping definition) cannot be resolved to node coordinates."""


class StoreError(NestedSetError):
    """The relational store failed while an atomic tree operation was running."""


class NodeNotFoundError(StoreError):
    def __init__(self, node_id, scope: dict | None = None):
        self.node_id = node_id
        self.scope = scope or {}
        where = f" in scope {self.scope}" if self.scope else ""
        super().__init__(f"Node {node_id} not found{where}")


class ScopeMismatchError(NestedSetError):
    """Two nodes taking part in one operation belong to different scopes."""


class InvalidMoveError(NestedSetError):
    """The requested move would place a subtree inside itself."""


class LockError(NestedSetError):
    """The per-scope lock could not be acquired."""
