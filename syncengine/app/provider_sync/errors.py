"""
Sync Engine Exceptions

Exception hierarchy for provider synchronization. Every exception carries
structured context for logging and a sanitized user-facing message that is
safe to show in the UI (raw provider bodies never end up there).

Exception Hierarchy:
    SyncEngineError (base)
    ├── CredentialError
    │   ├── CredentialExpiredError
    │   └── CredentialNotFoundError
    ├── ProviderError
    │   ├── ProviderTransientError
    │   └── ProviderPermanentError
    ├── ProviderNotFoundError
    ├── ValidationError
    ├── PersistenceError
    ├── InvalidOAuthStateError
    └── JobAlreadyFinalizedError
"""

import secrets
from typing import Optional, Dict, Any

from syncengine.app.models import utcnow


class SyncEngineError(Exception):
    """
    Base exception for all sync engine errors.

    Attributes:
        message: Internal error message (may contain provider detail)
        context: Additional context (connection_id, provider_id, ...)
        original_exception: The exception that was caught, if any
        user_message: Sanitized message safe to show to end users
    """

    user_message = "Something went wrong while syncing. Please try again later."

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = utcnow()
        if user_message:
            self.user_message = user_message

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Credential Errors
# ============================================================================

class CredentialError(SyncEngineError):
    """Base exception for credential resolution failures."""
    user_message = "Your bank connection needs attention. Please reconnect."


class CredentialExpiredError(CredentialError):
    """
    Access token expired and no refresh token is available.

    Terminal: the user has to go through the OAuth flow again.
    """
    user_message = "Your bank connection has expired. Please reconnect to continue syncing."


class CredentialNotFoundError(CredentialError):
    """No stored credential for the (connection, provider) pair."""
    user_message = "No credentials found for this connection. Please reconnect."


# ============================================================================
# Provider Errors
# ============================================================================

class ProviderError(SyncEngineError):
    """Base exception for provider API failures."""
    retryable = False


class ProviderTransientError(ProviderError):
    """
    Network failure, rate limiting or a 5xx from the provider.

    Retryable by the caller or scheduler; never retried inside a sync.
    """
    retryable = True
    user_message = "The bank is temporarily unavailable. Please try again later."

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after  # Seconds to wait before retry
        if retry_after:
            self.context["retry_after"] = retry_after


class ProviderPermanentError(ProviderError):
    """Revoked consent, invalid scope or rejected credentials."""
    user_message = "The bank rejected access to your accounts. Please reconnect."


class ProviderNotFoundError(SyncEngineError):
    """Provider is unknown, not configured or not active."""
    user_message = "This banking provider is not available."


# ============================================================================
# Record / Persistence Errors
# ============================================================================

class ValidationError(SyncEngineError):
    """
    Malformed provider payload for a single record.

    Record-level: isolated to the account/transaction it belongs to.
    """
    user_message = "Some records from the bank could not be read."


class PersistenceError(SyncEngineError):
    """Database write failure."""
    user_message = "Some records could not be saved. Please try again later."


# ============================================================================
# Flow Errors
# ============================================================================

class InvalidOAuthStateError(SyncEngineError):
    """OAuth state is unknown, expired or already consumed."""
    error_code = "invalid_state"
    user_message = "Invalid OAuth state. Please try again."


class JobAlreadyFinalizedError(SyncEngineError):
    """An ingestion job may be finalized exactly once."""


def new_error_tracking_id() -> str:
    """Short random id that links a user-facing error to the server logs."""
    return secrets.token_hex(6)


def sanitize_error(error: Exception) -> str:
    """Return a message that is safe to show to end users."""
    if isinstance(error, SyncEngineError):
        return error.user_message
    return SyncEngineError.user_message
