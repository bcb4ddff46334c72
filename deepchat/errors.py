"""Exception hierarchy for deepchat.

Provider failures, store failures and access-control denials each get a
distinct type so the chat layer can decide how to recover.
"""

from __future__ import annotations


class DeepchatError(Exception):
    """Base exception for all application-specific errors."""


class CredentialError(DeepchatError):
    """Raised when the API key is missing or rejected by the provider."""


class StreamOpenError(DeepchatError):
    """Raised when a streaming request could not be opened."""

    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(DeepchatError):
    """Raised when a durable store operation fails."""


class StorageQuotaExceededError(StorageError):
    """Raised when the database has hit its configured page quota."""


class PermissionDeniedError(StorageError):
    """Raised when a user touches a thread they do not own."""


class NotFoundError(StorageError):
    """Raised when a thread or message does not exist."""
