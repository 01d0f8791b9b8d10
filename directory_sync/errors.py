"""
Exception hierarchy for Directory Sync.

Phase-fatal errors (fetch failures, remove-limit aborts, payload decoding
failures) stop the mutations of a single sync phase. Per-entity errors are
counted and never stop sibling operations.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class FetchError(SyncError):
    """Raised when listing the directory or the registry fails."""
    pass


class RemoveLimitExceeded(SyncError):
    """Raised when too many entities would be removed in one phase."""

    def __init__(self, kind: str, count: int, limit: int, names=None):
        self.kind = kind
        self.count = count
        self.limit = limit
        self.names = list(names or [])
        super().__init__(f"Remove limit reached for {kind}: {count} candidates (limit {limit})")


class DecodeError(SyncError):
    """Raised when a stored raw payload can't be turned back into a source entity."""
    pass


class SerializationError(DecodeError):
    """Raised when a raw payload can't be encoded into its canonical form."""
    pass


class ManualManagementViolation(SyncError):
    """Raised by the registry when a mutation targets a manually managed entity."""
    pass


class PerEntityMutationError(SyncError):
    """A single create/update/remove/ban/membership call failed."""

    def __init__(self, operation: str, target: str, cause: Exception):
        self.operation = operation
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to {operation} {target}: {cause}")
