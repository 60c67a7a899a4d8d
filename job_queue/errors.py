"""
Error taxonomy for the delivery queue.

Per-message errors (validation, provider failures) are captured into the
row's ``error_message`` by the dispatcher and never escape a worker loop.
``StoreError`` is the only one that reaches callers of the enqueuer.
"""
from __future__ import annotations


class QueueError(Exception):
    """Base exception for all queue operations."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)


class ValidationError(QueueError):
    """Malformed payload. Never retried; the row is dead-lettered at once."""


class TransientProviderError(QueueError):
    """Network error, timeout or 5xx from the gateway. Retried with backoff."""

    retryable = True

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class PermanentProviderError(QueueError):
    """4xx from the gateway (bad request, invalid recipient). Never retried."""

    def __init__(self, message: str = "", status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ClaimConflictError(QueueError):
    """Another worker claimed the row first. Not a failure: skip to the next row."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"message {message_id} already claimed")


class StoreError(QueueError):
    """The underlying persistence is unavailable or rejected the operation."""

    retryable = True


class NotFoundError(QueueError):
    """A queue row or dead-letter record with the given id does not exist."""
