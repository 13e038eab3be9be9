"""
Exception types raised along the webhook pipeline.

Verification and validation errors are answered with 400 before anything is
dispatched. Store errors are retried (transient) or surfaced; the dispatcher
turns whatever escapes a handler into a ProcessingError carrying the event id
and type so the provider's redelivery can be correlated.
"""
from __future__ import annotations


class WebhookError(Exception):
    """Base class for every error this service raises on purpose."""


class VerificationError(WebhookError):
    """Signature header missing, malformed, mismatched or stale."""


class EventValidationError(WebhookError):
    """Signed body is not a usable event (bad JSON, missing required fields)."""


class StoreError(WebhookError):
    """A persistence operation failed."""

    def __init__(self, message: str, *, table: str | None = None):
        super().__init__(message)
        self.table = table


class TransientStoreError(StoreError):
    """Connection or operational failure worth retrying."""


class DuplicateRecordError(StoreError):
    """Insert rejected by a unique-key constraint."""


class FinalError(WebhookError):
    """Retry budget exhausted; wraps the last underlying error."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(f"{operation} failed after {attempts} attempts: {last_error}")
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error


class ProcessingError(WebhookError):
    def __init__(self, event_id: str, event_type: str, message: str):
        super().__init__(message)
        self.event_id = event_id
        self.event_type = event_type
        self.message = message
