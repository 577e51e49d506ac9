class LedgerError(Exception):
    """Base class for failures surfaced by the ledger services."""


class InvalidEntryError(LedgerError, ValueError):
    """Raised when an operation is malformed; nothing has been written."""


class DuplicateOperationError(LedgerError):
    """Raised when an idempotency key has already been accepted."""


class StoreUnavailableError(LedgerError):
    """Raised when the store aborted the transaction; retry with the same key."""


class OrderingHazardError(StoreUnavailableError):
    """Raised on lock timeouts, detected deadlocks or sequence collisions."""


class RebuildInProgressError(LedgerError):
    """Raised when another balance rebuild already holds the rebuild lock."""
