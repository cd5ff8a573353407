"""The long-poll ``/sync`` loop.

One poll is in flight at a time. A successful poll's cursor is persisted
before its events reach the dispatcher, so after a crash events may be
redelivered but never skipped. Transient failures back off exponentially
forever; an auth failure refreshes the credential and only a failed
refresh stops the loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter, deque
from typing import Optional

from .dispatcher import EventDispatcher
from .errors import (
    AuthError,
    HelloBotError,
    InvalidCredentials,
    NetworkUnavailable,
    PersistenceError,
)
from .events import SyncBatch, parse_sync_response
from .store import JsonSessionStore
from .tokens import TokenManager
from .transport import MatrixTransport

log = logging.getLogger(__name__)


class SyncState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    BACKOFF = "backoff"
    STOPPED = "stopped"


class Backoff:
    """Exponential retry delays, capped at ``maximum``.

    Delays never decrease until :meth:`reset`, and never exceed ``maximum``.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 60.0, multiplier: float = 2.0) -> None:
        if initial <= 0 or maximum < initial or multiplier < 1:
            raise ValueError("Backoff needs 0 < initial <= maximum and multiplier >= 1")
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.current = initial

    def next(self, at_least: float = 0.0) -> float:
        """Next delay; ``at_least`` (a server retry hint) raises it up to the cap."""
        delay = min(max(self.current, at_least), self.maximum)
        self.current = min(delay * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


class SeenEvents:
    """Bounded FIFO set of event ids."""

    def __init__(self, maxlen: int = 1000) -> None:
        if maxlen <= 0:
            raise ValueError("maxlen must be positive")
        self._order: deque[str] = deque()
        self._ids: set[str] = set()
        self.maxlen = maxlen

    def add(self, event_id: str) -> bool:
        """Record ``event_id``; False if it was already in the window."""
        if event_id in self._ids:
            return False
        self._order.append(event_id)
        self._ids.add(event_id)
        while len(self._order) > self.maxlen:
            self._ids.discard(self._order.popleft())
        return True

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._ids

    def __len__(self) -> int:
        return len(self._order)


class SyncLoop:
    def __init__(
        self,
        transport: MatrixTransport,
        tokens: TokenManager,
        store: JsonSessionStore,
        dispatcher: EventDispatcher,
        *,
        timeout_ms: int = 30000,
        backoff: Backoff | None = None,
        dedupe_window: int = 1000,
        skip_initial_timeline: bool = True,
        drain_timeout: float | None = None,
    ) -> None:
        self.transport = transport
        self.tokens = tokens
        self.store = store
        self.dispatcher = dispatcher
        self.timeout_ms = timeout_ms
        self.backoff = backoff or Backoff()
        self.seen = SeenEvents(dedupe_window)
        self.skip_initial_timeline = skip_initial_timeline
        self.drain_timeout = drain_timeout

        self.cursor: Optional[str] = None
        self.state = SyncState.IDLE
        self.stats: Counter = Counter()
        self.last_delay: float | None = None
        self._token: str | None = None
        self._stop = asyncio.Event()
        self._running = False

    def _set_state(self, state: SyncState) -> None:
        if state is not self.state:
            log.debug("Sync state %s -> %s", self.state.value, state.value)
            self.state = state

    # ── polling ──────────────────────────────────────────────────────

    async def poll(self, cursor: str | None) -> SyncBatch:
        """One long-poll request. An empty batch is a heartbeat."""
        credential = await self.tokens.get_token()
        self._token = credential.token
        data = await self.transport.sync(cursor, credential.token, timeout_ms=self.timeout_ms)
        self.stats["polls"] += 1
        return parse_sync_response(data)

    async def _poll_unless_stopped(self) -> SyncBatch | None:
        poll_task = asyncio.ensure_future(self.poll(self.cursor))
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            done, _pending = await asyncio.wait(
                {poll_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if poll_task in done:
                return poll_task.result()
            # No cursor came out of the abandoned request.
            log.info("Stop requested, abandoning in-flight sync")
            return None
        finally:
            for task in (poll_task, stop_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(poll_task, stop_task, return_exceptions=True)

    async def _wait_backoff(self, exc: HelloBotError) -> None:
        self._set_state(SyncState.BACKOFF)
        self.stats["failures"] += 1
        delay = self.backoff.next(at_least=getattr(exc, "retry_after", None) or 0.0)
        self.last_delay = delay
        log.warning("Sync failed (%s), retrying in %.1f s", exc, delay)
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    # ── processing ───────────────────────────────────────────────────

    def process(self, batch: SyncBatch, initial: bool = False) -> list:
        """Dedupe, persist the cursor, then hand events to the dispatcher."""
        timeline = [e for e in batch.timeline if self.seen.add(e.event_id)]
        # Invites repeat on purpose: a re-invite or a failed join needs another go.
        invites = list(batch.invites)
        duplicates = len(batch.timeline) - len(timeline)
        if duplicates:
            self.stats["duplicates"] += duplicates
            log.debug("Dropped %d duplicate event(s)", duplicates)

        if batch.next_batch and batch.next_batch != self.cursor:
            self.store.save_cursor(batch.next_batch)
            self.cursor = batch.next_batch

        if initial and self.skip_initial_timeline and timeline:
            log.info("Skipping %d event(s) from the initial sync", len(timeline))
            timeline = []

        events = timeline + invites
        if not events:
            return []
        self.stats["events"] += len(events)
        return self.dispatcher.dispatch_batch(events)

    # ── lifecycle ────────────────────────────────────────────────────

    def stop(self) -> None:
        """Stop at the next poll boundary."""
        if not self._stop.is_set():
            log.info("Stopping sync loop")
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        if self._running:
            raise RuntimeError("Sync loop is already running")
        if self.state is SyncState.STOPPED:
            raise RuntimeError("Sync loop has been stopped")
        self._running = True
        self.cursor = self.store.load_cursor()
        initial = self.cursor is None
        refreshed_token: str | None = None
        error: BaseException | None = None
        log.info("Starting sync loop (cursor %s)", self.cursor or "<none>")
        try:
            while not self._stop.is_set():
                self._set_state(SyncState.POLLING)
                try:
                    batch = await self._poll_unless_stopped()
                except NetworkUnavailable as exc:
                    await self._wait_backoff(exc)
                    continue
                except InvalidCredentials:
                    log.error("No usable credential, stopping sync")
                    raise
                except AuthError as exc:
                    log.warning("Sync rejected the access token: %s", exc)
                    if self._token is not None and self._token == refreshed_token:
                        # The freshly exchanged token was rejected too.
                        await self._wait_backoff(exc)
                        if self._stop.is_set():
                            break
                    try:
                        credential = await self.tokens.handle_auth_failure(self._token)
                        refreshed_token = credential.token
                    except NetworkUnavailable as refresh_exc:
                        await self._wait_backoff(refresh_exc)
                    except Exception:
                        log.error("Token refresh failed, stopping sync")
                        raise
                    continue
                if batch is None:
                    break
                refreshed_token = None
                self.backoff.reset()
                self._set_state(SyncState.PROCESSING)
                self.process(batch, initial=initial)
                initial = False
                self._set_state(SyncState.IDLE)
        except BaseException as exc:
            error = exc
            raise
        finally:
            self._running = False
            await self.dispatcher.drain(timeout=self.drain_timeout)
            self._set_state(SyncState.STOPPED)
            try:
                self.store.flush()
            except PersistenceError as flush_exc:
                if error is None:
                    raise
                log.error("Failed to flush session store on shutdown: %s", flush_exc)
            log.info("Sync loop stopped (cursor %s)", self.cursor or "<none>")
