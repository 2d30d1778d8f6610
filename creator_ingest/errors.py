from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class FetchError(RuntimeError):
    """Raised when an upstream request fails or returns a non-JSON body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        status_text: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.status_text = status_text
        self.retry_after = retry_after


class TransformError(RuntimeError):
    """Raised when a raw upstream item lacks a required field."""


class StorageError(RuntimeError):
    """Raised when reading or writing state in SQLite fails."""


class DuplicateError(StorageError):
    """Raised when a post is already a member of the target board."""


class EnrichmentError(RuntimeError):
    """Raised by background enrichment steps; logged, never surfaced."""
