from __future__ import annotations

import logging
from typing import Dict, Generic, Hashable, List, Optional, TypeVar

"""
Connection Registry
-------------------
Maps a user identity (client-chosen name) to the live connection handle that
currently speaks for it. Handles are opaque to the registry; it only needs them
to be hashable by identity.

Rules
=====
- register() is last-write-wins: a second connection claiming an identity
  silently takes it over.
- A handle carries at most one identity; re-joining under a new name releases
  the old one.
- unregister_by_handle() is guarded: the entry is removed only if the identity
  recorded for the handle still points at that exact handle. A stale disconnect
  from a replaced connection never wipes the newer mapping.
"""

log = logging.getLogger("chatroute.registry")

H = TypeVar("H", bound=Hashable)


class ConnectionRegistry(Generic[H]):
    def __init__(self) -> None:
        self._by_identity: Dict[str, H] = {}
        self._by_handle: Dict[H, str] = {}

    def register(self, identity: str, handle: H) -> None:
        previous_identity = self._by_handle.get(handle)
        if previous_identity is not None and previous_identity != identity:
            if self._by_identity.get(previous_identity) is handle:
                del self._by_identity[previous_identity]

        displaced = self._by_identity.get(identity)
        if displaced is not None and displaced is not handle:
            # the displaced handle stays open but no longer speaks for identity
            self._by_handle.pop(displaced, None)
            log.info("Identity %s taken over by a new connection", identity)

        self._by_identity[identity] = handle
        self._by_handle[handle] = identity

    def resolve(self, identity: str) -> Optional[H]:
        return self._by_identity.get(identity)

    def identity_of(self, handle: H) -> Optional[str]:
        return self._by_handle.get(handle)

    def unregister_by_handle(self, handle: H) -> Optional[str]:
        """Drop the handle; returns the identity it released, if any."""
        identity = self._by_handle.pop(handle, None)
        if identity is None:
            return None
        if self._by_identity.get(identity) is handle:
            del self._by_identity[identity]
            return identity
        log.debug("Ignored stale deregistration for %s", identity)
        return None

    def handles(self) -> List[H]:
        return list(self._by_identity.values())

    def identities(self) -> List[str]:
        return sorted(self._by_identity)

    def __len__(self) -> int:
        return len(self._by_identity)

    def __contains__(self, identity: object) -> bool:
        return identity in self._by_identity
