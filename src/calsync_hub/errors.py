"""Exception hierarchy for the sync engine."""


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class TransientNetworkError(SyncError):
    """Network or server error that the next poll tick or reconnect retries."""
    pass


class ProviderRequestError(SyncError):
    """Provider answered a request with a non-retryable HTTP error."""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationError(SyncError):
    """Authentication-related errors."""
    pass


class TokenExpiredError(AuthenticationError):
    """Provider rejected the access token (HTTP 401)."""
    pass


class ReauthenticationRequired(AuthenticationError):
    """Token refresh did not help; the user has to sign in again."""

    def __init__(self, provider: str, message: str = ""):
        self.provider = provider
        super().__init__(message or f"Reauthentication required for {provider}")


class MalformedEventError(SyncError):
    """A provider item could not be mapped to a canonical event."""
    pass


class UnknownProviderError(SyncError):
    """Unknown provider tag without a custom endpoint to fall back to."""
    pass


class ChannelError(SyncError):
    """Realtime channel protocol or transport errors."""
    pass


class DeadLetterError(SyncError):
    """An operation exhausted its retries and was moved to the dead letters."""

    def __init__(self, notice):
        self.notice = notice
        super().__init__(str(notice))
