"""Homeserver transport built on mautrix's HTTP API.

Only the calls the bot needs are exposed: login, refresh, whoami, sync,
send and join. Every SDK or aiohttp failure is translated into the
``hellobot.errors`` taxonomy before it leaves this module.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import aiohttp
from mautrix.api import HTTPAPI, Method, Path
from mautrix.client import ClientAPI
from mautrix.errors import MatrixConnectionError, MatrixRequestError, MatrixResponseError
from mautrix.types import EventType, RoomID

from .errors import (
    AuthError,
    HelloBotError,
    InvalidCredentials,
    NetworkUnavailable,
    ServerRejected,
)
from .tokens import Credential

log = logging.getLogger(__name__)

_AUTH_ERRCODES = {"M_UNKNOWN_TOKEN", "M_MISSING_TOKEN"}


def classify_error(exc: BaseException) -> HelloBotError | None:
    """Map an SDK/network exception onto the bot's error taxonomy.

    Returns ``None`` for exceptions that are not transport failures.
    """
    if isinstance(exc, HelloBotError):
        return exc
    if isinstance(exc, MatrixRequestError):
        status = getattr(exc, "http_status", 0) or 0
        errcode = getattr(exc, "errcode", None)
        message = getattr(exc, "message", None) or str(exc)
        if status == 401 or errcode in _AUTH_ERRCODES:
            return AuthError(f"{errcode or status}: {message}")
        if status == 429 or errcode == "M_LIMIT_EXCEEDED":
            retry_after_ms = getattr(exc, "retry_after_ms", None)
            retry_after = retry_after_ms / 1000 if retry_after_ms else None
            return NetworkUnavailable(f"rate limited: {message}", retry_after=retry_after)
        if status >= 500:
            return NetworkUnavailable(f"server error {status}: {message}")
        return ServerRejected(message, status=status or None, errcode=errcode)
    if isinstance(
        exc,
        (
            MatrixConnectionError,
            MatrixResponseError,
            aiohttp.ClientError,
            asyncio.TimeoutError,
            ConnectionError,
        ),
    ):
        return NetworkUnavailable(f"{type(exc).__name__}: {exc}")
    return None


def credential_from_response(
    data: dict[str, Any], user_id: str | None = None, device_id: str | None = None
) -> Credential:
    """Build a :class:`Credential` from a login or refresh response body."""
    token = data.get("access_token")
    if not token:
        raise ServerRejected("No access token received from server")
    now = time.time()
    expires_in_ms = data.get("expires_in_ms")
    return Credential(
        token=token,
        user_id=data.get("user_id") or user_id or "",
        issued_at=now,
        device_id=data.get("device_id") or device_id,
        refresh_token=data.get("refresh_token"),
        expires_at=now + expires_in_ms / 1000 if expires_in_ms else None,
    )


class MatrixTransport:
    """Thin async wrapper around ``mautrix`` for one homeserver."""

    def __init__(
        self,
        homeserver: str,
        request_timeout: float = 90.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.homeserver = homeserver.rstrip("/")
        self._owns_session = session is None
        self.session = session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=request_timeout)
        )
        # Login and refresh must never carry a stale Authorization header.
        self._anon_api = HTTPAPI(base_url=self.homeserver, client_session=self.session)
        self.api = HTTPAPI(base_url=self.homeserver, client_session=self.session)
        self.client = ClientAPI(api=self.api)

    async def _call(self, coro: Any) -> Any:
        try:
            return await coro
        except Exception as exc:
            mapped = classify_error(exc)
            if mapped is None or mapped is exc:
                raise
            raise mapped from exc

    def _use(self, token: str) -> None:
        self.api.token = token

    # ── auth ─────────────────────────────────────────────────────────

    async def login(
        self,
        username: str,
        password: str,
        device_id: str | None = None,
        device_name: str = "hellobot",
    ) -> Credential:
        """Password login. Bad credentials raise :class:`InvalidCredentials`."""
        content: dict[str, Any] = {
            "type": "m.login.password",
            "identifier": {"type": "m.id.user", "user": username},
            "password": password,
            "initial_device_display_name": device_name,
            "refresh_token": True,
        }
        if device_id:
            content["device_id"] = device_id
        try:
            data = await self._call(
                self._anon_api.request(Method.POST, Path.v3.login, content, retry_count=0)
            )
        except AuthError as exc:
            raise InvalidCredentials(f"Login rejected for {username}: {exc}") from exc
        except ServerRejected as exc:
            if exc.status == 403:
                raise InvalidCredentials(f"Login rejected for {username}: {exc}") from exc
            raise
        return credential_from_response(data)

    async def refresh(self, credential: Credential) -> Credential:
        """Exchange ``credential.refresh_token`` for a new access token."""
        if not credential.refresh_token:
            raise InvalidCredentials("No refresh token available")
        try:
            data = await self._call(
                self._anon_api.request(
                    Method.POST,
                    Path.v3.refresh,
                    {"refresh_token": credential.refresh_token},
                    retry_count=0,
                )
            )
        except AuthError as exc:
            raise InvalidCredentials(f"Refresh token rejected: {exc}") from exc
        refreshed = credential_from_response(
            data, user_id=credential.user_id, device_id=credential.device_id
        )
        if not refreshed.refresh_token:
            # Servers may keep the previous refresh token valid.
            refreshed = refreshed.replace(refresh_token=credential.refresh_token)
        return refreshed

    async def whoami(self, token: str) -> str:
        self._use(token)
        data = await self._call(
            self.api.request(Method.GET, Path.v3.account.whoami, retry_count=0)
        )
        user_id = data.get("user_id") if isinstance(data, dict) else None
        if not user_id:
            raise ServerRejected("whoami response did not include a user_id")
        return user_id

    # ── sync & send ──────────────────────────────────────────────────

    async def sync(self, cursor: str | None, token: str, timeout_ms: int = 30000) -> dict:
        """One long-poll ``/sync``; returns the raw response body."""
        query = {"timeout": str(timeout_ms)}
        if cursor:
            query["since"] = cursor
        self._use(token)
        data = await self._call(
            self.api.request(Method.GET, Path.v3.sync, query_params=query, retry_count=0)
        )
        if not isinstance(data, dict):
            raise NetworkUnavailable("sync returned a non-object body")
        return data

    async def send_message(self, room_id: str, content: dict, token: str) -> str:
        self._use(token)
        event_id = await self._call(
            self.client.send_message_event(RoomID(room_id), EventType.ROOM_MESSAGE, content)
        )
        return str(event_id)

    async def join_room(self, room_id: str, token: str) -> str:
        self._use(token)
        joined = await self._call(self.client.join_room_by_id(RoomID(room_id)))
        return str(joined)

    async def close(self) -> None:
        if self._owns_session and not self.session.closed:
            await self.session.close()
