"""Prefix commands as pure predicate + action pairs."""

from __future__ import annotations

import html
import logging
from typing import Any, Awaitable, Callable

from .events import ROOM_MESSAGE, Event

log = logging.getLogger(__name__)

ReplySender = Callable[[str, dict], Awaitable[Any]]


def _quote_fallback(body: str, sender: str) -> str:
    lines = body.splitlines() or [""]
    quoted = [f"> <{sender}> {lines[0]}"] + [f"> {line}" for line in lines[1:]]
    return "\n".join(quoted)


def build_reply_content(event: Event, text: str, msgtype: str = "m.notice") -> dict:
    """Content for a reply to *event*, with the plain and HTML reply fallbacks."""
    original = event.body or ""
    reply_link = html.escape(f"https://matrix.to/#/{event.room_id}/{event.event_id}")
    sender_link = html.escape(f"https://matrix.to/#/{event.sender}")
    formatted = (
        "<mx-reply><blockquote>"
        f'<a href="{reply_link}">In reply to</a> '
        f'<a href="{sender_link}">{html.escape(event.sender)}</a>'
        f"<br />{html.escape(original)}"
        "</blockquote></mx-reply>"
        f"{html.escape(text)}"
    )
    return {
        "msgtype": msgtype,
        "body": f"{_quote_fallback(original, event.sender)}\n\n{text}",
        "format": "org.matrix.custom.html",
        "formatted_body": formatted,
        "m.relates_to": {"m.in_reply_to": {"event_id": event.event_id}},
    }


class CommandMatcher:
    """Replies ``reply_text`` to text messages that start with ``prefix``.

    Messages from ``own_user_id`` are never acted upon.
    """

    def __init__(
        self,
        reply: ReplySender,
        own_user_id: str | Callable[[], str],
        prefix: str = "!hello",
        reply_text: str = "Hello world!",
    ) -> None:
        if not prefix:
            raise ValueError("Command prefix must not be empty")
        self.reply = reply
        self._own_user_id = own_user_id
        self.prefix = prefix
        self.reply_text = reply_text

    @property
    def own_user_id(self) -> str:
        if callable(self._own_user_id):
            return self._own_user_id()
        return self._own_user_id

    def predicate(self, event: Event) -> bool:
        if event.type != ROOM_MESSAGE or event.msgtype != "m.text":
            return False
        if event.sender == self.own_user_id:
            return False
        body = event.body
        return bool(body) and body.startswith(self.prefix)

    async def action(self, event: Event) -> Any:
        log.info("[%s] %s ran %s", event.room_id, event.sender, self.prefix)
        content = build_reply_content(event, self.reply_text)
        return await self.reply(event.room_id, content)
