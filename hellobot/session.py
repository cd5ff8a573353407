from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, TypeVar

from .errors import AuthError
from .tokens import TokenManager
from .transport import MatrixTransport

log = logging.getLogger(__name__)

T = TypeVar("T")


class Session:
    """Authenticated calls against the homeserver.

    Each call uses the live token; a 401 invalidates that token, refreshes
    once and retries once.
    """

    def __init__(self, transport: MatrixTransport, tokens: TokenManager) -> None:
        self.transport = transport
        self.tokens = tokens

    @property
    def user_id(self) -> str:
        return self.tokens.user_id

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        credential = await self.tokens.get_token()
        try:
            return await fn(*args, token=credential.token, **kwargs)
        except AuthError:
            log.warning("%s rejected the access token, refreshing", getattr(fn, "__name__", fn))
            credential = await self.tokens.handle_auth_failure(credential.token)
            return await fn(*args, token=credential.token, **kwargs)

    async def send_message(self, room_id: str, content: dict) -> str:
        return await self.call(self.transport.send_message, room_id, content)

    async def join_room(self, room_id: str) -> str:
        return await self.call(self.transport.join_room, room_id)
