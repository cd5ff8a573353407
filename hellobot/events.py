"""Decoded room events and the ``/sync`` response walker."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

log = logging.getLogger(__name__)

ROOM_MESSAGE = "m.room.message"
ROOM_MEMBER = "m.room.member"


@dataclass(frozen=True)
class Event:
    event_id: str
    room_id: str
    sender: str
    type: str
    content: Mapping[str, Any] = field(default_factory=dict, hash=False)
    timestamp: int = 0
    state_key: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.content, MappingProxyType):
            object.__setattr__(self, "content", MappingProxyType(dict(self.content)))

    @property
    def msgtype(self) -> Optional[str]:
        value = self.content.get("msgtype")
        return value if isinstance(value, str) else None

    @property
    def body(self) -> Optional[str]:
        value = self.content.get("body")
        return value if isinstance(value, str) else None

    @property
    def membership(self) -> Optional[str]:
        value = self.content.get("membership")
        return value if isinstance(value, str) else None

    @classmethod
    def from_raw(cls, room_id: str, raw: Mapping[str, Any]) -> "Event":
        return cls(
            event_id=str(raw["event_id"]),
            room_id=room_id,
            sender=str(raw.get("sender", "")),
            type=str(raw.get("type", "")),
            content=raw.get("content") or {},
            timestamp=int(raw.get("origin_server_ts") or 0),
            state_key=raw.get("state_key"),
        )


@dataclass(frozen=True)
class SyncBatch:
    timeline: tuple[Event, ...] = ()
    invites: tuple[Event, ...] = ()
    next_batch: Optional[str] = None

    @property
    def events(self) -> tuple[Event, ...]:
        return self.timeline + self.invites

    def __len__(self) -> int:
        return len(self.timeline) + len(self.invites)


def _invite_event_id(room_id: str, raw: Mapping[str, Any], next_batch: Optional[str]) -> str:
    # Stripped invite state carries no event id or timestamp; key on the batch.
    return "invite:{}:{}:{}".format(room_id, raw.get("state_key", ""), next_batch or "")


def parse_sync_response(data: Mapping[str, Any]) -> SyncBatch:
    """Flatten a ``/sync`` body into arrival-ordered events.

    Joined room timelines keep server order per room; invites follow. From the
    stripped invite state only ``m.room.member`` invites are kept, with an id
    naming the batch they arrived in.
    """
    next_batch = data.get("next_batch") or None
    timeline: list[Event] = []
    invites: list[Event] = []
    rooms = data.get("rooms") or {}

    for room_id, room in (rooms.get("join") or {}).items():
        room_timeline = (room or {}).get("timeline") or {}
        for raw in room_timeline.get("events") or []:
            if not isinstance(raw, dict) or not raw.get("event_id"):
                log.debug("[%s] Skipping timeline entry without event_id", room_id)
                continue
            timeline.append(Event.from_raw(room_id, raw))

    for room_id, room in (rooms.get("invite") or {}).items():
        invite_state = (room or {}).get("invite_state") or {}
        for raw in invite_state.get("events") or []:
            if not isinstance(raw, dict) or raw.get("type") != ROOM_MEMBER:
                continue
            if (raw.get("content") or {}).get("membership") != "invite":
                continue
            event_id = _invite_event_id(room_id, raw, next_batch)
            invites.append(Event.from_raw(room_id, {**raw, "event_id": event_id}))

    return SyncBatch(
        timeline=tuple(timeline),
        invites=tuple(invites),
        next_batch=next_batch,
    )
