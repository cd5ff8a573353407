"""Error taxonomy shared by the token manager, sync loop and dispatcher.

Transient transport failures are recovered locally with backoff; auth and
persistence failures surface to the process boundary; handler failures are
logged and contained.
"""

from __future__ import annotations


class HelloBotError(Exception):
    """Base class for every error raised by hellobot."""


class AuthError(HelloBotError):
    """The homeserver rejected the access token (401-class).

    Recoverable when the token manager can refresh the credential.
    """


class InvalidCredentials(AuthError):
    """The credential exchange itself failed. Retrying will not help."""


class NetworkUnavailable(HelloBotError):
    """Connection failure, timeout, 5xx or rate limit. Retry with backoff."""

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ServerRejected(HelloBotError):
    """The server refused a request for a non-auth reason. Needs an operator."""

    def __init__(
        self, message: str = "", status: int | None = None, errcode: str | None = None
    ) -> None:
        super().__init__(message)
        self.status = status
        self.errcode = errcode


class HandlerError(HelloBotError):
    """A handler predicate or action failed or timed out."""

    def __init__(self, handler: str, event_id: str, cause: BaseException | None = None) -> None:
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"handler {handler!r} failed on {event_id}{detail}")
        self.handler = handler
        self.event_id = event_id
        self.cause = cause


class PersistenceError(HelloBotError):
    """Cursor or credential state could not be read or written."""
