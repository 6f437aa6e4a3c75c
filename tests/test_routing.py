import pytest

from chatroute.core import proto
from chatroute.core.router import offline_notice_text


async def _joined(router, conn, *names):
    conns = {}
    for name in names:
        c = conn(name)
        await router.join(c, name)
        c.frames.clear()
        conns[name] = c
    return conns


@pytest.mark.asyncio
async def test_public_message_reaches_everyone_once(router, store, conn):
    c = await _joined(router, conn, "alice", "bob", "carol")

    stored = await router.send_public(c["alice"], "hi")

    for name in ("alice", "bob", "carol"):
        assert c[name].payloads(proto.PUBLIC_DELIVER) == [stored.to_wire()]
    assert len(store) == 1
    assert stored.sender_id == "alice"
    assert stored.timestamp is not None


@pytest.mark.asyncio
async def test_private_message_reaches_sender_and_recipient_only(router, store, conn):
    c = await _joined(router, conn, "alice", "bob", "carol")

    stored = await router.send_private(c["alice"], "secret", "bob")

    assert c["bob"].payloads(proto.PRIVATE_DELIVER) == [stored.to_wire()]
    assert c["alice"].payloads(proto.PRIVATE_DELIVER) == [stored.to_wire()]
    assert c["carol"].frames == []
    assert store.snapshot() == [stored]


@pytest.mark.asyncio
async def test_private_message_to_self_delivered_once(router, conn):
    c = await _joined(router, conn, "alice")

    await router.send_private(c["alice"], "note to self", "alice")

    assert len(c["alice"].payloads(proto.PRIVATE_DELIVER)) == 1


@pytest.mark.asyncio
async def test_unreachable_recipient_gets_system_notice(router, store, conn):
    c = await _joined(router, conn, "alice", "bob")

    stored = await router.send_private(c["alice"], "lost", "carol")

    delivered = c["alice"].payloads(proto.PRIVATE_DELIVER)
    notice, echo = delivered
    assert notice["senderId"] == proto.SYSTEM_SENDER
    assert notice["text"] == "carol is currently offline or does not exist."
    assert notice["recipientId"] == "alice"
    assert notice["type"] == "private"
    assert echo == stored.to_wire()
    assert c["bob"].frames == []
    # the real message is stored, the notice is not
    assert store.snapshot() == [stored]


@pytest.mark.asyncio
async def test_join_replays_history_in_send_order(router, conn):
    c = await _joined(router, conn, "alice")
    sent = [
        await router.send_public(c["alice"], "one"),
        await router.send_private(c["alice"], "two", "nobody"),
        await router.send_public(c["alice"], "three"),
    ]

    late = conn("late")
    history = await router.join(late, "late")

    assert history == sent
    (payload,) = late.payloads(proto.CHAT_HISTORY)
    assert payload["messages"] == [m.to_wire() for m in sent]


@pytest.mark.asyncio
async def test_leave_makes_identity_unresolvable(router, registry, conn):
    c = await _joined(router, conn, "alice", "bob")

    assert router.leave(c["bob"]) == "bob"
    assert registry.resolve("bob") is None

    await router.send_private(c["alice"], "still there?", "bob")
    notice = c["alice"].payloads(proto.PRIVATE_DELIVER)[0]
    assert notice["text"] == offline_notice_text("bob")


@pytest.mark.asyncio
async def test_reconnect_then_stale_leave_keeps_new_connection(router, registry, conn):
    old = conn("old")
    new = conn("new")
    await router.join(old, "alice")
    await router.join(new, "alice")

    assert router.leave(old) is None
    assert registry.resolve("alice") is new


@pytest.mark.asyncio
async def test_public_broadcast_skips_displaced_connection(router, conn):
    old = conn("old")
    new = conn("new")
    await router.join(old, "alice")
    await router.join(new, "alice")
    old.frames.clear()
    new.frames.clear()

    await router.send_public(new, "hello")

    assert len(new.payloads(proto.PUBLIC_DELIVER)) == 1
    assert old.frames == []


@pytest.mark.asyncio
async def test_example_scenario(router, store, conn):
    c = await _joined(router, conn, "Alice", "Bob")

    await router.send_public(c["Alice"], "hi")
    assert [p["text"] for p in c["Alice"].payloads()] == ["hi"]
    assert [p["text"] for p in c["Bob"].payloads()] == ["hi"]
    assert len(store) == 1

    await router.send_private(c["Alice"], "secret", "Bob")
    assert [p["text"] for p in c["Alice"].payloads()] == ["hi", "secret"]
    assert [p["text"] for p in c["Bob"].payloads()] == ["hi", "secret"]
    assert len(store) == 2

    c["Alice"].frames.clear()
    c["Bob"].frames.clear()
    await router.send_private(c["Alice"], "lost", "Carol")
    assert "Carol is currently offline or does not exist." in [p["text"] for p in c["Alice"].payloads()]
    assert c["Bob"].frames == []
    assert len(store) == 3
    assert [m.text for m in store.snapshot()] == ["hi", "secret", "lost"]


# -----------------------------
# Rejected input
# -----------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("identity", ["", "   ", None, 42, "System"])
async def test_join_rejects_bad_identity(router, registry, conn, identity):
    with pytest.raises(proto.ProtocolError) as exc:
        await router.join(conn("x"), identity)
    assert exc.value.code == "BAD_IDENTITY"
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_join_strips_identity(router, registry, conn):
    c = conn("x")
    await router.join(c, "  alice ")
    assert registry.resolve("alice") is c


@pytest.mark.asyncio
async def test_send_before_join_rejected(router, store, conn):
    with pytest.raises(proto.ProtocolError) as exc:
        await router.send_public(conn("x"), "hi")
    assert exc.value.code == "NOT_JOINED"
    assert len(store) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "  \n", None])
async def test_blank_text_rejected(router, store, conn, text):
    c = await _joined(router, conn, "alice")
    with pytest.raises(proto.ProtocolError) as exc:
        await router.send_public(c["alice"], text)
    assert exc.value.code == "EMPTY_TEXT"
    assert len(store) == 0


@pytest.mark.asyncio
async def test_private_without_recipient_rejected(router, store, conn):
    c = await _joined(router, conn, "alice")
    with pytest.raises(proto.ProtocolError) as exc:
        await router.send_private(c["alice"], "hi", "")
    assert exc.value.code == "BAD_MESSAGE"
    assert len(store) == 0
