"""
Custom exception classes for better error handling.
Provides specific error types instead of generic exceptions.

These are raised inside the store and collaborator layers. The booking
lifecycle converts them into typed outcomes (see models.outcomes) before
anything reaches a caller.
"""


class DatabaseError(Exception):
    """Base exception for backing store operations."""

    pass


class BackingStoreUnavailableError(DatabaseError):
    """Raised on transient infrastructure failures (timeouts, connection errors)."""

    pass


class WebhookVerificationError(Exception):
    """Raised when webhook signature verification fails."""

    pass


class ValidationError(Exception):
    """Raised when input validation fails."""

    pass
