"""
Error kinds raised by the inventory core.

Callers at the HTTP layer map these to status codes: NotFoundError -> 404,
InvalidArgumentError -> 400, TransactionAbortedError -> 500 (safe to retry).
"""


class InventoryError(Exception):
    """Base class for all inventory errors."""


class NotFoundError(InventoryError, LookupError):
    """A referenced entity (county, state, property, data source, run) does not exist."""


class InvalidArgumentError(InventoryError, ValueError):
    """A disallowed mutation, e.g. changing a property's parent via a plain update."""


class TransactionAbortedError(InventoryError):
    """The store aborted a multi-step mutation (write conflict or I/O failure)."""


class CollectorFailure(InventoryError):
    """An external collector raised, timed out, or could not be resolved."""

    def __init__(self, source_id: str, message: str):
        super().__init__(f"Collector failed for source {source_id}: {message}")
        self.source_id = source_id
        self.message = message
