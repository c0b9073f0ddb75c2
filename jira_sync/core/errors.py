"""Error taxonomy shared by the source adapter, mapper, stores and engine."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for every error raised by the synchronizer."""

    def __init__(self, message: str, *, issue_key: str | None = None):
        super().__init__(message)
        self.issue_key = issue_key


class ConfigError(SyncError):
    pass


class SourceError(SyncError):
    """Failure talking to the issue tracker (search or get)."""

    transient = False


class TransientSourceError(SourceError):
    """Timeouts, connection errors, 5xx and rate limiting. Retried with backoff."""

    transient = True


class PermanentSourceError(SourceError):
    """Authentication failures and 4xx responses other than 429."""

    def __init__(self, message: str, *, issue_key: str | None = None, status_code: int | None = None):
        super().__init__(message, issue_key=issue_key)
        self.status_code = status_code


class MappingError(SyncError):
    """A required field is absent or a custom attribute has an unexpected shape."""

    def __init__(self, message: str, *, issue_key: str | None = None, field: str | None = None):
        super().__init__(message, issue_key=issue_key)
        self.field = field


class StoreError(SyncError):
    """A store operation failed; the issue's previous rows are left untouched."""


class SyncCancelled(SyncError):
    pass
