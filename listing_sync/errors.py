"""Exceptions shared by the reconciliation engine and the enrichment state manager."""


class StoreError(Exception):
    """Base class for persistent store failures."""


class StoreUnavailableError(StoreError):
    """Raised when the store cannot be reached (connectivity or auth)."""


class RecordWriteError(StoreError):
    """Raised when the store rejects a single insert/update."""


class SyncInProgressError(RuntimeError):
    """Raised when another reconciliation pass holds the lease for a source."""


class InvalidOutcomeError(ValueError):
    """Raised when an enrichment attempt is completed with a non-terminal status."""
