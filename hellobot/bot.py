"""The ``!hello`` Matrix bot.

Wires the token manager, sync loop and dispatcher together and registers
the built-in handlers:
  - ``!hello`` command replying with a notice
  - auto-join on invite
  - debug logging of every received event
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

from .commands import CommandMatcher
from .config import Settings
from .dispatcher import EventDispatcher
from .events import ROOM_MEMBER, Event
from .session import Session
from .store import JsonSessionStore
from .sync import Backoff, SyncLoop
from .tokens import TokenManager
from .transport import MatrixTransport

log = logging.getLogger(__name__)


def is_invite_for(user_id: str | Callable[[], str]) -> Callable[[Event], bool]:
    """Predicate matching an invite of *user_id* into a room."""

    def predicate(event: Event) -> bool:
        own = user_id() if callable(user_id) else user_id
        return (
            event.type == ROOM_MEMBER
            and event.membership == "invite"
            and event.state_key == own
        )

    return predicate


def log_event(event: Event) -> None:
    log.debug(
        "[%s] %s from %s (%s)", event.room_id, event.type, event.sender, event.event_id
    )


class HelloBot:
    # Populated by run()
    transport: MatrixTransport
    tokens: TokenManager
    session: Session
    sync_loop: SyncLoop

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.store = JsonSessionStore(settings.store_path)
        self.dispatcher = EventDispatcher(handler_timeout=settings.handler_timeout)
        self._stop_requested = False

    # ── wiring ───────────────────────────────────────────────────────

    def _build(self, transport: MatrixTransport | None = None) -> None:
        settings = self.settings
        self.transport = transport or MatrixTransport(
            settings.homeserver,
            request_timeout=settings.sync_timeout_ms / 1000 + 30,
        )
        self.tokens = TokenManager(settings, self.transport, self.store)
        self.session = Session(self.transport, self.tokens)
        self.sync_loop = SyncLoop(
            self.transport,
            self.tokens,
            self.store,
            self.dispatcher,
            timeout_ms=settings.sync_timeout_ms,
            backoff=Backoff(
                settings.backoff_initial, settings.backoff_max, settings.backoff_multiplier
            ),
            dedupe_window=settings.dedupe_window,
            skip_initial_timeline=settings.skip_initial_timeline,
            drain_timeout=settings.handler_timeout,
        )
        self.register_handlers()

    def register_handlers(self) -> None:
        self.dispatcher.register(lambda _evt: True, log_event, name="log_event")

        if self.settings.auto_join:
            self.dispatcher.register(
                is_invite_for(lambda: self.tokens.user_id), self._join, name="auto_join"
            )

        command = CommandMatcher(
            reply=self.session.send_message,
            own_user_id=lambda: self.tokens.user_id,
            prefix=self.settings.command_prefix,
            reply_text=self.settings.reply_text,
        )
        self.dispatcher.register(command.predicate, command.action, name=f"command {command.prefix}")

    async def _join(self, event: Event) -> None:
        await self.session.join_room(event.room_id)
        log.info("Joined room %s after invite from %s", event.room_id, event.sender)

    # ── lifecycle ────────────────────────────────────────────────────

    async def run(self, transport: MatrixTransport | None = None) -> None:
        """Validate the credential, then sync until :meth:`stop` is called."""
        self._build(transport)
        try:
            if self._stop_requested:
                return
            await self.tokens.validate()
            log.info("Bot started as %s, syncing", self.tokens.user_id)
            if self._stop_requested:
                return
            await self.sync_loop.run()
        finally:
            await self.transport.close()

    def stop(self) -> None:
        self._stop_requested = True
        loop = getattr(self, "sync_loop", None)
        if loop is not None:
            loop.stop()


def install_signal_handlers(bot: HelloBot) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, bot.stop)
        except (NotImplementedError, RuntimeError):
            log.debug("Signal handlers not supported on this platform")
