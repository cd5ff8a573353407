"""Fan-out of decoded events to registered handlers.

Every handler whose predicate matches gets the event. Actions are isolated
from each other: a raised exception or a timeout becomes a logged
``HandlerError`` and the remaining handlers still run. Each room's events
are handled strictly in arrival order on a per-room task chain, while
different rooms proceed independently of each other and of the sync loop.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Union

from .errors import HandlerError
from .events import Event

log = logging.getLogger(__name__)

Predicate = Callable[[Event], bool]
Action = Callable[[Event], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class Handler:
    predicate: Predicate
    action: Action
    name: str


class EventDispatcher:
    def __init__(self, handler_timeout: float | None = 10.0) -> None:
        self.handler_timeout = handler_timeout
        self.handlers: list[Handler] = []
        self.stats: Counter = Counter()
        self._room_tasks: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    # ── registration ─────────────────────────────────────────────────

    def register(self, predicate: Predicate, action: Action, name: str | None = None) -> Handler:
        handler = Handler(
            predicate=predicate,
            action=action,
            name=name or getattr(action, "__qualname__", None) or repr(action),
        )
        self.handlers.append(handler)
        log.debug("Registered handler %s", handler.name)
        return handler

    def on(self, predicate: Predicate, name: str | None = None) -> Callable[[Action], Action]:
        """Decorator form of :meth:`register`."""

        def decorator(action: Action) -> Action:
            self.register(predicate, action, name=name)
            return action

        return decorator

    # ── dispatch ─────────────────────────────────────────────────────

    async def dispatch(self, event: Event) -> list[HandlerError]:
        """Run every matching handler on ``event`` and return their failures."""
        self.stats["dispatched"] += 1
        errors: list[HandlerError] = []
        matched: list[Handler] = []
        for handler in list(self.handlers):
            try:
                if handler.predicate(event):
                    matched.append(handler)
            except Exception as exc:
                errors.append(self._failed(handler, event, exc))

        if matched:
            results = await asyncio.gather(*(self._run(h, event) for h in matched))
            errors.extend(err for err in results if err is not None)
        return errors

    async def _run(self, handler: Handler, event: Event) -> HandlerError | None:
        try:
            result = handler.action(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.handler_timeout)
        except asyncio.TimeoutError as exc:
            self.stats["handler_timeouts"] += 1
            return self._failed(handler, event, exc)
        except Exception as exc:
            return self._failed(handler, event, exc)
        self.stats["handled"] += 1
        return None

    def _failed(self, handler: Handler, event: Event, exc: BaseException) -> HandlerError:
        self.stats["handler_errors"] += 1
        error = HandlerError(handler.name, event.event_id, exc)
        log.error(
            "[%s] Handler %s failed on %s: %r",
            event.room_id,
            handler.name,
            event.event_id,
            exc,
            exc_info=exc,
        )
        return error

    # ── per-room scheduling ──────────────────────────────────────────

    def dispatch_batch(self, events: Iterable[Event]) -> list[asyncio.Task]:
        """Schedule a batch without waiting for it.

        A room's new work starts only after its previous work finished.
        """
        by_room: dict[str, list[Event]] = {}
        for event in events:
            by_room.setdefault(event.room_id, []).append(event)

        tasks: list[asyncio.Task] = []
        for room_id, room_events in by_room.items():
            previous = self._room_tasks.get(room_id)
            task = asyncio.create_task(self._process_room(room_id, room_events, previous))
            self._room_tasks[room_id] = task
            self._tasks.add(task)
            task.add_done_callback(partial(self._forget_room_task, room_id))
            tasks.append(task)
        return tasks

    async def _process_room(
        self, room_id: str, events: list[Event], previous: asyncio.Task | None
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        for event in events:
            await self.dispatch(event)

    def _forget_room_task(self, room_id: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._room_tasks.get(room_id) is task:
            del self._room_tasks[room_id]
        if not task.cancelled() and task.exception() is not None:
            log.error("[%s] Room dispatch crashed", room_id, exc_info=task.exception())

    @property
    def inflight_rooms(self) -> set[str]:
        return set(self._room_tasks)

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for scheduled room work; cancel whatever is left after ``timeout``."""
        tasks = list(self._tasks)
        if not tasks:
            return True
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            log.warning("Cancelling %d room dispatch task(s) still running", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        return not pending
