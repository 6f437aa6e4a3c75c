import itertools

import pytest

from chatroute.core.registry import ConnectionRegistry
from chatroute.core.router import Router
from chatroute.core.store import MessageStore


class FakeConn:
    """Stand-in for a live connection; records every frame delivered to it."""

    def __init__(self, name: str):
        self.name = name
        self.frames = []

    def payloads(self, type_=None):
        return [f["payload"] for f in self.frames if type_ is None or f["type"] == type_]

    def __repr__(self):
        return f"FakeConn({self.name!r})"


@pytest.fixture
def clock():
    """Deterministic, strictly increasing ISO timestamps."""
    counter = itertools.count()
    return lambda: f"2024-01-01T00:00:{next(counter):02d}.000Z"


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def store(clock):
    return MessageStore(now=clock)


@pytest.fixture
def router(registry, store):
    async def deliver(conn, frame):
        conn.frames.append(frame)

    return Router(registry, store, deliver, server_id="srv")


@pytest.fixture
def conn():
    return FakeConn
