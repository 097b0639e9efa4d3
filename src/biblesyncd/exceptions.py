class SyncError(Exception):
    """Base class for every error raised by the sync layer."""


class ProtocolError(SyncError):
    """A request or response does not follow the sync wire contract."""


class StoreError(SyncError):
    """The durable store failed; the surrounding transaction was rolled back."""


class TranslationNotFound(SyncError):
    """The uploaded translation does not exist or belongs to someone else."""


class AuthenticationError(SyncError):
    """Credentials or bearer token were rejected."""


class NotAuthenticated(AuthenticationError):
    """The client has no session to sync with."""


class SessionExpired(AuthenticationError):
    """The access token expired and refreshing it failed; sign in again."""


class RateLimited(SyncError):
    """The server rejected the request because of its per-user rate limit."""


class TransportError(SyncError):
    """Network failure or unexpected HTTP status. Safe to retry."""

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


# AWS Cognito Authentication Exceptions
class CognitoAuthenticationException(AuthenticationError):
    """Base exception for Cognito authentication errors."""
    def __init__(self, message, error_code=None):
        super().__init__(message)
        self.error_code = error_code


class CognitoInvalidCredentialsException(CognitoAuthenticationException):
    """User provided invalid credentials."""
    pass


class CognitoUserNotConfirmedException(CognitoAuthenticationException):
    """User account is not confirmed (email/phone verification required)."""
    pass


class CognitoPasswordResetRequiredException(CognitoAuthenticationException):
    """User needs to reset their password."""
    pass
