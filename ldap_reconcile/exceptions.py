"""
Exception hierarchy shared by the reconciliation modules.
"""


class ReconcileError(Exception):
    """Base exception for reconciliation errors."""
    pass


class ConfigurationError(ReconcileError):
    """Raised when configuration is invalid or missing required fields."""
    pass


class DirectoryUnavailable(ReconcileError):
    """Raised when the directory cannot be reached or a search fails."""
    pass


class StoreError(ReconcileError):
    """Raised when the local store rejects a read or write."""
    pass


class PartialImportError(ReconcileError):
    """
    Raised when importing an entry fails after some of its writes were committed.

    Attributes:
        written: DNs of the records already persisted for the entry
    """

    def __init__(self, message: str, written=None):
        super().__init__(message)
        self.written = list(written or [])
