from typing import Optional


class ArenaClientError(Exception):
    """Base class for every error raised by the session engine."""


class DuplicateMessageError(ArenaClientError):
    def __init__(self, session_id: str, message_id: str):
        super().__init__(f"Message {message_id} already exists in session {session_id}")
        self.session_id = session_id
        self.message_id = message_id


class UnknownMessageError(ArenaClientError, KeyError):
    def __init__(self, session_id: str, message_id: str):
        super().__init__(f"No message {message_id} in session {session_id}")
        self.session_id = session_id
        self.message_id = message_id

    def __str__(self) -> str:
        return str(self.args[0])


class UnknownSessionError(ArenaClientError, KeyError):
    def __init__(self, session_id: str):
        super().__init__(f"Unknown session {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return str(self.args[0])


class InvalidRegenerationTarget(ArenaClientError, ValueError):
    """Only finalized assistant messages can be regenerated."""


class SessionBusyError(ArenaClientError):
    """A regeneration is outstanding for the session."""


class StreamFailedError(ArenaClientError):
    """The stream request failed or ended before every channel settled."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RegenerationFailedError(StreamFailedError):
    pass


class StreamCancelledError(ArenaClientError):
    """Raised inside a stream read loop once its cancellation token fires."""


class AuthError(ArenaClientError):
    pass


class SessionExpiredError(AuthError):
    def __init__(self, message: str = "Session expired. Please sign in again."):
        super().__init__(message)


class AuthExhaustedError(AuthError):
    def __init__(self, message: str = "Authentication failed. Please refresh the page."):
        super().__init__(message)


class RefreshTimeoutError(AuthError):
    def __init__(self, message: str = "Token refresh timeout"):
        super().__init__(message)


class NoRefreshTokenError(AuthError):
    def __init__(self, message: str = "No refresh token available"):
        super().__init__(message)
