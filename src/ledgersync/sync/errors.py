"""Errors raised by the sync engine itself (not by the ledger)."""


class SyncError(RuntimeError):
    """Base class for sync engine errors."""


class UnknownEntityTypeError(SyncError, ValueError):
    """The requested entity type is not one of the syncable types."""

    def __init__(self, entity_type: str):
        super().__init__(f"Unknown sync type: {entity_type}")
        self.entity_type = entity_type


class UnsupportedDirectionError(SyncError, ValueError):
    """The entity type cannot be synced in the requested direction."""


class ConflictNotFoundError(SyncError, LookupError):
    """No conflict with the given id."""


class ConflictAlreadyResolvedError(SyncError):
    """The conflict was already resolved; nothing was applied."""


class SyncLogNotFoundError(SyncError, LookupError):
    """No sync log entry with the given id."""


class LogAlreadyFinalizedError(SyncError):
    """A sync log entry can move to a terminal status only once."""


class NotRetryableError(SyncError):
    """The sync log entry has nothing to retry."""


class RecordSyncError(SyncError):
    """
    A single record could not be synced. Counted, never propagated past the
    executor's per-record loop.

    category is a ConflictType value naming the failure kind
    (VALIDATION_ERROR, MISSING_DEPENDENCY, PERMISSION_DENIED).
    """

    def __init__(self, category: str, message: str):
        super().__init__(message)
        self.category = category
