"""Custom exceptions for the mailbox sync service."""

from typing import Optional


class MailhubError(Exception):
    """Base exception for all mailhub errors."""

    status_code = 500


class NotFoundError(MailhubError):
    """Raised when a mailbox, thread or notification does not exist."""

    status_code = 404


class ValidationError(MailhubError):
    """Raised for malformed webhook payloads or shared-secret mismatches."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class ConflictError(MailhubError):
    """Raised when a unique mailbox address or subscription already exists."""

    status_code = 409


class ConfigurationError(MailhubError):
    """Raised when required provider credentials are missing."""

    status_code = 500


class ProviderError(MailhubError):
    """Raised when a call to the external mail provider fails."""

    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class DeltaExpiredError(ProviderError):
    """Raised when the provider no longer accepts a stored delta link."""


class TransportError(MailhubError):
    """Raised when a realtime connection drops or a frame cannot be delivered."""
