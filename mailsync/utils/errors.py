"""
Centralized error hierarchy for the mail sync engine.

Every error raised by the engine derives from MailSyncError. The taxonomy
decides how a failure is handled:

- TransportError: connect/TLS/timeout. Always retried with backoff.
- AuthError: never retried silently with the same credential; surfaced
  to the user as a re-authenticate prompt.
- ProtocolError: the server answered unexpectedly. The current operation
  is aborted, the connection stays usable.
- CacheError: local storage failure. Fatal for the affected operation only.
- ConfigError: malformed account or missing folder mapping.
"""
from typing import Union


class MailSyncError(Exception):
    """
    Base exception class for all mail sync errors.

    All engine exceptions inherit from this class to enable centralized
    error handling and user-friendly message mapping.
    """
    pass


class TransportError(MailSyncError):
    """Raised when a network operation fails (connect, TLS, timeout, broken pipe)."""
    pass


class AuthError(MailSyncError):
    """Raised when authentication fails. Never retried with the same credential."""
    pass


class InvalidCredentialsError(AuthError):
    """Raised when the server rejects a username/password or access token."""
    pass


class ReauthRequiredError(AuthError):
    """Raised when no usable token can be produced without user interaction."""
    pass


class TokenExchangeFailedError(AuthError):
    """Raised when the OAuth2 token endpoint rejects a code exchange or refresh."""
    pass


class OAuthStateMismatchError(AuthError):
    """Raised when the OAuth2 callback carries a state that was not issued."""
    pass


class ProtocolError(MailSyncError):
    """Raised when the server returns an unexpected or erroneous response."""
    pass


class MessageNotFoundError(ProtocolError):
    """Raised when an operation targets a UID the server no longer has."""
    pass


class CacheError(MailSyncError):
    """Raised when the local cache cannot be read or written."""
    pass


class DecryptionError(CacheError):
    """Raised when encrypted cache data cannot be decrypted."""
    pass


class ConfigError(MailSyncError):
    """Raised when an account or app configuration is malformed."""
    pass


class FolderNotConfiguredError(ConfigError):
    """Raised when an operation targets a canonical folder role with no mapping."""
    pass


def is_retryable(exc: BaseException) -> bool:
    """Return True if the failure should be retried with backoff."""
    return isinstance(exc, TransportError)


def human_friendly_message(exc: Union[MailSyncError, Exception]) -> str:
    """
    Convert technical error exceptions to user-friendly messages.

    Args:
        exc: The exception to convert.

    Returns:
        A user-friendly error message string.
    """
    error_msg = str(exc) if str(exc) else ""

    if isinstance(exc, ReauthRequiredError):
        return (
            "Your account session has expired. Please sign in again.\n\n"
            "You'll need to re-authenticate to continue syncing this account."
        )
    if isinstance(exc, OAuthStateMismatchError):
        return (
            "The sign-in response did not match the request that was sent. "
            "Please start the sign-in again."
        )
    if isinstance(exc, TokenExchangeFailedError):
        return (
            "The mail provider refused the sign-in. Please try signing in again."
        )
    if isinstance(exc, InvalidCredentialsError):
        return (
            "Could not sign in to your email account. Please check:\n\n"
            "• Your username and password are correct\n"
            "• The authentication method configured for this account"
        )
    if isinstance(exc, AuthError):
        return "An authentication error occurred. Please sign in again."
    if isinstance(exc, TransportError):
        if "timed out" in error_msg.lower() or "timeout" in error_msg.lower():
            return (
                "The email server took too long to respond. "
                "The connection will be retried automatically."
            )
        return (
            "Could not connect to the email server. Please check:\n\n"
            "• Your internet connection\n"
            "• The server settings for this account\n\n"
            "The connection will be retried automatically."
        )
    if isinstance(exc, MessageNotFoundError):
        return "The message no longer exists on the server."
    if isinstance(exc, ProtocolError):
        return "The email server returned an unexpected response. Please try again."
    if isinstance(exc, DecryptionError):
        return (
            "Some locally stored data could not be decrypted. "
            "It will be downloaded again on the next sync."
        )
    if isinstance(exc, CacheError):
        return "The local mail cache could not be updated. Please try again."
    if isinstance(exc, FolderNotConfiguredError):
        return (
            f"This folder is not available for the account. {error_msg}"
        ).strip()
    if isinstance(exc, ConfigError):
        return f"The account configuration is incomplete: {error_msg}"
    if isinstance(exc, MailSyncError):
        return "An unexpected error occurred. Please try again."

    if isinstance(exc, (ConnectionError, TimeoutError)):
        return (
            "A network error occurred. Please check your internet connection "
            "and try again."
        )
    return "An unexpected error occurred. Please try again."
