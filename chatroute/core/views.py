from __future__ import annotations

from typing import Iterable, List, Optional

from .proto import Message


def conversation_view(messages: Iterable[Message], me: str, peer: Optional[str] = None) -> List[Message]:
    """Filter replayed history down to what one screen shows.

    Without ``peer`` only public messages are kept. With ``peer`` only private
    messages exchanged between ``me`` and ``peer`` (either direction) are kept.
    """
    if peer is None:
        return [m for m in messages if m.type == "public"]
    return [
        m
        for m in messages
        if m.type == "private"
        and (
            (m.sender_id == me and m.recipient_id == peer)
            or (m.sender_id == peer and m.recipient_id == me)
        )
    ]


def format_message(message: Message) -> str:
    clock = (message.timestamp or "")[11:16]
    if message.type == "public":
        return f"{clock} [all:{message.sender_id}] {message.text}"
    return f"{clock} [{message.sender_id} -> {message.recipient_id}] {message.text}"
