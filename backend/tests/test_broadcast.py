"""Tests for BroadcastRouter fan-out, ordering and failure isolation."""
import asyncio

import pytest

from roomwire.chat.errors import PersistenceError, RecipientOfflineError, RoomStateError
from roomwire.chat.schemas import ChatMessage, MessageType

from conftest import FakeTransport, drain


async def _room(hub, *connections, room="general"):
    for connection in connections:
        await hub.presence.join(connection, room)
    await drain(*connections)
    for connection in connections:
        connection.transport.sent.clear()


class TestPublish:
    """Tests for room message publication."""

    @pytest.mark.asyncio
    async def test_sender_and_members_receive_message(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        outsider = connect("carol")
        await _room(hub, alice, bob)

        result = await hub.send_text(alice, "general", "hello")
        await drain(alice, bob, outsider)

        assert result.delivered == 2
        assert result.persisted is True
        assert alice.transport.texts() == ["hello"]
        assert bob.transport.texts() == ["hello"]
        assert outsider.transport.sent == []
        message = bob.transport.of_type("message")[0]["message"]
        assert message["userId"] == "alice"
        assert message["displayName"] == "Alice"
        assert message["roomId"] == "general"

    @pytest.mark.asyncio
    async def test_per_sender_order_preserved(self, hub, connect):
        """m1, m2, m3 from one connection arrive in order everywhere."""
        alice, bob, carol = connect("alice"), connect("bob"), connect("carol")
        await _room(hub, alice, bob, carol)

        for text in ("m1", "m2", "m3"):
            await hub.send_text(alice, None, text)
        await drain(alice, bob, carol)

        for connection in (alice, bob, carol):
            assert connection.transport.texts() == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_message_logged_in_order(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        for text in ("m1", "m2", "m3"):
            await hub.send_text(alice, "general", text)

        history = hub.history("general")
        assert [m.content for m in history][-3:] == ["m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_log_failure_still_delivers(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)

        def broken_append(message):
            raise PersistenceError("disk full")

        hub.log.append = broken_append
        result = await hub.send_text(alice, "general", "still here")
        await drain(bob)

        assert result.persisted is False
        assert bob.transport.texts() == ["still here"]

    @pytest.mark.asyncio
    async def test_id_collision_raises(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        message = ChatMessage(roomId="general", userId="alice", content="one")
        await hub.router.publish(message)

        duplicate = ChatMessage(id=message.id, roomId="general", userId="alice", content="two")
        with pytest.raises(RoomStateError):
            await hub.router.publish(duplicate)

    def test_cache_is_bounded(self, hub):
        hub.router.cache_size = 3
        messages = [ChatMessage(roomId="general", userId="a", content=str(i)) for i in range(5)]
        for message in messages:
            hub.router.register(message)
        cached = hub.router._recent["general"]
        assert list(cached) == [m.id for m in messages[2:]]


class TestFailureIsolation:
    """A slow or broken recipient never affects the others."""

    @pytest.mark.asyncio
    async def test_overflowing_connection_is_dropped(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        slow = connect("slow", transport=FakeTransport(delay=10), queue_size=2)
        await hub.presence.join(alice, "general")
        await hub.presence.join(bob, "general")
        await hub.presence.join(slow, "general")
        await drain(alice, bob)

        for i in range(5):
            await hub.send_text(alice, "general", f"m{i}")
        # Let the scheduled release run
        await asyncio.sleep(0.05)
        await drain(alice, bob)

        assert slow.dead is True
        assert bob.transport.texts()[-6:] == ["m0", "m1", "m2", "m3", "m4", "Slow left the chat"]
        assert not hub.registry.is_present("slow", "general")
        assert slow.transport.closed_with == 1011

    @pytest.mark.asyncio
    async def test_send_failure_marks_dead_once(self, hub, connect):
        alice = connect("alice")
        broken = connect("broken", transport=FakeTransport(fail=True))
        await hub.presence.join(alice, "general")
        await hub.presence.join(broken, "general")
        await drain(broken)

        await asyncio.sleep(0.05)
        assert broken.dead is True
        assert broken.enqueue({"type": "noop"}) is False

        await hub.send_text(alice, "general", "after")
        await drain(alice)
        assert alice.transport.texts()[-1] == "after"
        assert not hub.registry.is_member(broken, "general")

    @pytest.mark.asyncio
    async def test_send_timeout_marks_dead(self, hub, connect):
        stuck = connect("stuck", transport=FakeTransport(delay=10), send_timeout=0.05)
        stuck.enqueue({"type": "ping"})
        await drain(stuck)
        assert stuck.dead is True


class TestPrivateMessages:
    """Tests for direct participant delivery."""

    @pytest.mark.asyncio
    async def test_all_tabs_of_both_parties_receive(self, hub, connect):
        alice1, alice2 = connect("alice"), connect("alice")
        bob = connect("bob")
        carol = connect("carol")

        message = await hub.send_private(bob, "alice", "psst")
        await drain(alice1, alice2, bob, carol)

        assert message.type == MessageType.PRIVATE
        for connection in (alice1, alice2, bob):
            assert connection.transport.texts() == ["psst"]
        assert carol.transport.sent == []

    @pytest.mark.asyncio
    async def test_private_messages_not_logged(self, hub, connect):
        connect("alice")
        bob = connect("bob")
        await hub.send_private(bob, "alice", "psst")
        assert hub.log.count() == 0

    @pytest.mark.asyncio
    async def test_offline_recipient(self, hub, connect):
        bob = connect("bob")
        with pytest.raises(RecipientOfflineError):
            await hub.send_private(bob, "nobody", "hello?")
        await drain(bob)
        assert bob.transport.sent == []

    @pytest.mark.asyncio
    async def test_to_self_delivered_once(self, hub, connect):
        alice = connect("alice")
        await hub.send_private(alice, "alice", "note to self")
        await drain(alice)
        assert alice.transport.texts() == ["note to self"]


class _CancelAbsorbingTransport(FakeTransport):
    """Finishes its send even when the writer is cancelled mid-write."""

    async def send_json(self, payload):
        try:
            await asyncio.sleep(0.05)
        except asyncio.CancelledError:
            pass
        self.sent.append(payload)


class TestConnectionClose:
    """Closing a connection always stops its writer and closes the transport."""

    @pytest.mark.asyncio
    async def test_close_right_after_enqueue(self, connect):
        alice = connect("alice")
        alice.enqueue({"type": "x"})
        await asyncio.sleep(0)

        await asyncio.wait_for(alice.close(), timeout=2)

        assert alice.transport.closed_with == 1000
        assert alice.enqueue({"type": "y"}) is False

    @pytest.mark.asyncio
    async def test_close_when_send_absorbs_cancel(self, connect):
        alice = connect("alice", transport=_CancelAbsorbingTransport())
        alice.enqueue({"type": "x"})
        await asyncio.sleep(0.01)

        await asyncio.wait_for(alice.close(), timeout=2)

        assert alice.transport.closed_with == 1000
        await asyncio.wait_for(alice.flush(), timeout=1)

    @pytest.mark.asyncio
    async def test_release_of_busy_connection_finishes(self, hub, connect):
        alice, bob = connect("alice"), connect("bob", transport=_CancelAbsorbingTransport())
        await hub.presence.join(alice, "general")
        await hub.presence.join(bob, "general")
        await asyncio.sleep(0.01)

        await asyncio.wait_for(hub.release(bob), timeout=2)
        await drain(alice)

        assert bob.transport.closed_with == 1000
        assert alice.transport.texts()[-1] == "Bob left the chat"
