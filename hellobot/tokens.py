"""Ownership of the single live access credential.

The manager hands out the current credential, refreshes it through a
refresh-token exchange or a password login, and persists every new
credential before anyone can use it. Concurrent refresh triggers share
one in-flight exchange.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from .errors import AuthError, InvalidCredentials
from .utils import mask_token

if TYPE_CHECKING:
    from .config import Settings
    from .store import JsonSessionStore
    from .transport import MatrixTransport

log = logging.getLogger(__name__)

# Refresh this many seconds before a server-announced expiry.
EXPIRY_MARGIN = 30.0


@dataclass(frozen=True)
class Credential:
    token: str
    user_id: str
    issued_at: float
    device_id: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None

    def is_expired(self, now: float | None = None, margin: float = EXPIRY_MARGIN) -> bool:
        if self.expires_at is None:
            return False
        now = time.time() if now is None else now
        return now >= self.expires_at - margin

    def replace(self, **changes: Any) -> "Credential":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        return cls(
            token=data["token"],
            user_id=data.get("user_id") or "",
            issued_at=float(data.get("issued_at") or 0.0),
            device_id=data.get("device_id"),
            refresh_token=data.get("refresh_token"),
            expires_at=data.get("expires_at"),
        )

    def __repr__(self) -> str:
        return (
            f"Credential(user_id={self.user_id!r}, token={mask_token(self.token)!r}, "
            f"device_id={self.device_id!r})"
        )


class TokenManager:
    def __init__(
        self,
        settings: "Settings",
        transport: "MatrixTransport",
        store: "JsonSessionStore",
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.store = store
        self._credential: Credential | None = None
        self._invalid = True
        self._lock = asyncio.Lock()
        self._refresh_task: asyncio.Task | None = None
        self.exchanges = 0

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def user_id(self) -> str:
        if self._credential and self._credential.user_id:
            return self._credential.user_id
        return self.settings.user_id

    # ── public contract ──────────────────────────────────────────────

    async def get_token(self) -> Credential:
        """Return a usable credential, refreshing at most once to get it."""
        current = self._credential
        if current is not None and not self._invalid and not current.is_expired():
            return current
        return await self.refresh()

    async def refresh(self) -> Credential:
        """Exchange for a new credential; concurrent callers share one exchange."""
        async with self._lock:
            task = self._refresh_task
            if task is None or task.done():
                task = asyncio.ensure_future(self._exchange())
                self._refresh_task = task
        # A cancelled waiter must not cancel the shared exchange.
        return await asyncio.shield(task)

    def invalidate(self, token: str | None = None) -> None:
        """Mark the live credential unusable.

        When ``token`` is given and is no longer the live token, another
        caller already replaced it and nothing happens.
        """
        current = self._credential
        if token is not None and current is not None and current.token != token:
            return
        if not self._invalid:
            log.warning("Access token for %s invalidated", self.user_id or "<unknown>")
        self._invalid = True

    async def handle_auth_failure(self, token: str | None) -> Credential:
        self.invalidate(token)
        return await self.get_token()

    async def validate(self) -> Credential:
        """Resolve and verify the starting credential.

        Order: stored credential, configured access token, password login.
        A 401 on verification triggers one refresh; anything else propagates.
        """
        stored = self.store.load_credential()
        if stored is not None:
            log.info("Restored credential for %s from %s", stored.user_id, self.store.path)
            self._install(stored)
        elif self.settings.access_token:
            self._install(
                Credential(
                    token=self.settings.access_token,
                    user_id=self.settings.user_id,
                    issued_at=time.time(),
                )
            )
        credential = await self.get_token()
        try:
            user_id = await self.transport.whoami(credential.token)
        except AuthError:
            if not self._can_exchange(credential):
                raise InvalidCredentials("Access token rejected and no way to refresh it")
            log.warning("Stored access token rejected, refreshing")
            credential = await self.handle_auth_failure(credential.token)
            user_id = await self.transport.whoami(credential.token)
        if self.settings.user_id and user_id != self.settings.user_id:
            log.warning(
                "Configured BOT_USER_ID %s does not match token owner %s",
                self.settings.user_id,
                user_id,
            )
        if credential.user_id != user_id:
            credential = credential.replace(user_id=user_id)
            self.store.save_credential(credential)
            self._install(credential)
        log.info("Token valid for %s", user_id)
        return credential

    # ── internals ────────────────────────────────────────────────────

    def _install(self, credential: Credential) -> None:
        self._credential = credential
        self._invalid = False

    def _can_exchange(self, credential: Credential | None) -> bool:
        return bool((credential and credential.refresh_token) or self.settings.can_login)

    async def _exchange(self) -> Credential:
        previous = self._credential
        if not self._can_exchange(previous):
            raise InvalidCredentials(
                "No refresh token and no BOT_USERNAME/BOT_PASSWORD to log in with"
            )
        self.exchanges += 1
        credential: Credential | None = None
        if previous is not None and previous.refresh_token:
            try:
                credential = await self.transport.refresh(previous)
                log.info("Access token refreshed via refresh token")
            except InvalidCredentials:
                if not self.settings.can_login:
                    raise
                log.warning("Refresh token rejected, falling back to password login")
        if credential is None:
            credential = await self.transport.login(
                self.settings.username,
                self.settings.password,
                device_id=previous.device_id if previous else None,
                device_name=self.settings.device_name,
            )
            log.info(
                "Logged in as %s (device %s)", credential.user_id, credential.device_id
            )
        # Durable before it becomes live.
        self.store.save_credential(credential)
        self._install(credential)
        log.debug("New access token %s", mask_token(credential.token))
        return credential
