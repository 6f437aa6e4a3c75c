from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from .proto import Message, now_iso

log = logging.getLogger("chatroute.store")

ClockFn = Callable[[], str]


class MessageStore:
    """Ordered, append-only history of every message accepted this process.

    With ``limit=None`` the history grows without bound. A positive ``limit``
    keeps only the most recent ``limit`` messages.
    """

    def __init__(self, limit: Optional[int] = None, now: ClockFn = now_iso) -> None:
        if limit is not None and limit <= 0:
            raise ValueError("history limit must be positive")
        self.limit = limit
        self.now = now
        self._messages: Deque[Message] = deque(maxlen=limit)

    def append(self, message: Message) -> Message:
        stored = message.model_copy(update={"timestamp": self.now()})
        if self.limit is not None and len(self._messages) == self.limit:
            log.debug("History full (%d); dropping oldest message", self.limit)
        self._messages.append(stored)
        return stored

    def snapshot(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)
