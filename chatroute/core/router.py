from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from .proto import (
    CHAT_HISTORY,
    PRIVATE_DELIVER,
    PUBLIC_DELIVER,
    SYSTEM_SENDER,
    Message,
    ProtocolError,
    build_frame,
)
from .registry import ConnectionRegistry
from .store import MessageStore

log = logging.getLogger("chatroute.router")

DeliverFn = Callable[[Any, Dict[str, Any]], Awaitable[None]]
Delivery = Tuple[Hashable, Dict[str, Any]]


def offline_notice_text(recipient: str) -> str:
    return f"{recipient} is currently offline or does not exist."


class Router:
    """Decides who receives each message and hands frames to ``deliver``.

    Every registry/store mutation and the full delivery plan are computed
    before the first await, so concurrent handlers on the event loop never
    observe a half-routed message.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        store: MessageStore,
        deliver: DeliverFn,
        *,
        server_id: str = "server",
    ) -> None:
        self.registry = registry
        self.store = store
        self.deliver = deliver
        self.server_id = server_id

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def join(self, handle: Hashable, identity: Any) -> List[Message]:
        identity = self._check_identity(identity)
        self.registry.register(identity, handle)
        history = self.store.snapshot()
        log.info("User %s joined (%d message(s) replayed)", identity, len(history))

        payload = {"messages": [m.to_wire() for m in history]}
        await self._flush([(handle, build_frame(CHAT_HISTORY, self.server_id, identity, payload))])
        return history

    def leave(self, handle: Hashable) -> Optional[str]:
        identity = self.registry.unregister_by_handle(handle)
        if identity is not None:
            log.info("User %s left", identity)
        return identity

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    async def send_public(self, handle: Hashable, text: Any) -> Message:
        stored, deliveries = self.plan_public(handle, text)
        await self._flush(deliveries)
        return stored

    async def send_private(self, handle: Hashable, text: Any, recipient: Any) -> Message:
        stored, deliveries = self.plan_private(handle, text, recipient)
        await self._flush(deliveries)
        return stored

    def plan_public(self, handle: Hashable, text: Any) -> Tuple[Message, List[Delivery]]:
        sender = self._sender_of(handle)
        text = self._check_text(text)

        stored = self.store.append(Message(senderId=sender, text=text, type="public"))
        log.debug("Public message from %s: %r", sender, text)

        deliveries: List[Delivery] = []
        for target in self.registry.handles():
            identity = self.registry.identity_of(target) or "*"
            deliveries.append((target, build_frame(PUBLIC_DELIVER, self.server_id, identity, stored.to_wire())))
        return stored, deliveries

    def plan_private(
        self, handle: Hashable, text: Any, recipient: Any
    ) -> Tuple[Message, List[Delivery]]:
        sender = self._sender_of(handle)
        text = self._check_text(text)
        if not isinstance(recipient, str) or not recipient.strip():
            raise ProtocolError("BAD_MESSAGE", "private message requires a recipient")
        recipient = recipient.strip()

        stored = self.store.append(
            Message(senderId=sender, text=text, type="private", recipientId=recipient)
        )
        log.debug("Private message from %s to %s", sender, recipient)

        deliveries: List[Delivery] = []
        target = self.registry.resolve(recipient)
        if target is not None:
            deliveries.append((target, build_frame(PRIVATE_DELIVER, self.server_id, recipient, stored.to_wire())))
        else:
            log.info("Recipient %s not found or offline", recipient)
            # delivered to the sender only, never stored
            notice = Message(
                senderId=SYSTEM_SENDER,
                text=offline_notice_text(recipient),
                type="private",
                recipientId=sender,
                timestamp=self.store.now(),
            )
            deliveries.append((handle, build_frame(PRIVATE_DELIVER, self.server_id, sender, notice.to_wire())))

        if target is not handle:
            deliveries.append((handle, build_frame(PRIVATE_DELIVER, self.server_id, sender, stored.to_wire())))
        return stored, deliveries

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _flush(self, deliveries: List[Delivery]) -> None:
        for target, frame in deliveries:
            await self.deliver(target, frame)

    def _sender_of(self, handle: Hashable) -> str:
        sender = self.registry.identity_of(handle)
        if sender is None:
            raise ProtocolError("NOT_JOINED", "send USER_JOIN before messaging")
        return sender

    @staticmethod
    def _check_identity(identity: Any) -> str:
        if not isinstance(identity, str) or not identity.strip():
            raise ProtocolError("BAD_IDENTITY", "identity must be a non-empty string")
        identity = identity.strip()
        if identity == SYSTEM_SENDER:
            raise ProtocolError("BAD_IDENTITY", f"identity {SYSTEM_SENDER!r} is reserved")
        return identity

    @staticmethod
    def _check_text(text: Any) -> str:
        if not isinstance(text, str) or not text.strip():
            raise ProtocolError("EMPTY_TEXT", "message text must not be empty")
        return text


__all__ = ["Router", "offline_notice_text"]
