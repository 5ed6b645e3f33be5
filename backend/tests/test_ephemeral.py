"""Tests for typing indicators and reactions."""
import asyncio

import pytest

from roomwire.chat.errors import RoomAccessError, UnknownMessageError

from conftest import drain


async def _room(hub, *connections, room="general"):
    for connection in connections:
        await hub.presence.join(connection, room)
    await drain(*connections)
    for connection in connections:
        connection.transport.sent.clear()


def _typing(connection):
    return [(u["participantId"], u["isTyping"]) for u in connection.transport.of_type("typingUpdate")]


class TestTypingTracker:
    """Tests for TypingTracker."""

    @pytest.mark.asyncio
    async def test_start_and_stop_notify_others(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)

        assert hub.typing.set_typing(alice, "general", True) is True
        assert hub.typing.set_typing(alice, "general", False) is True
        await drain(alice, bob)

        assert _typing(bob) == [("alice", True), ("alice", False)]
        assert _typing(alice) == []

    @pytest.mark.asyncio
    async def test_repeated_start_is_not_rebroadcast(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)

        hub.typing.set_typing(alice, "general", True)
        assert hub.typing.set_typing(alice, "general", True) is False
        await drain(bob)
        assert _typing(bob) == [("alice", True)]

    @pytest.mark.asyncio
    async def test_stop_without_start_is_silent(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)
        assert hub.typing.set_typing(alice, "general", False) is False
        await drain(bob)
        assert _typing(bob) == []

    @pytest.mark.asyncio
    async def test_typing_expires(self, hub, connect):
        """The configured 0.2s timeout broadcasts a stop by itself."""
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)

        hub.typing.set_typing(alice, "general", True)
        await asyncio.sleep(0.4)
        await drain(bob)

        assert _typing(bob) == [("alice", True), ("alice", False)]
        assert hub.typing.typing_in("general") == set()

    @pytest.mark.asyncio
    async def test_refresh_extends_expiry(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)

        hub.typing.set_typing(alice, "general", True)
        await asyncio.sleep(0.15)
        hub.typing.set_typing(alice, "general", True)
        await asyncio.sleep(0.1)
        assert hub.typing.typing_in("general") == {"alice"}

    @pytest.mark.asyncio
    async def test_requires_membership(self, hub, connect):
        alice = connect("alice")
        with pytest.raises(RoomAccessError):
            hub.typing.set_typing(alice, "general", True)


class TestReactions:
    """Tests for ReactionService."""

    @pytest.mark.asyncio
    async def test_react_broadcasts_tally(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)
        result = await hub.send_text(alice, "general", "nice")
        message_id = result.message.id

        await hub.reactions.add_reaction(bob, "general", message_id, "👍")
        await drain(alice, bob)

        for connection in (alice, bob):
            update = connection.transport.of_type("reactionUpdate")[-1]
            assert update["messageId"] == message_id
            assert update["reactions"] == {"👍": ["bob"]}

    @pytest.mark.asyncio
    async def test_react_is_idempotent(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice, bob)
        message_id = (await hub.send_text(alice, "general", "nice")).message.id

        await hub.reactions.add_reaction(bob, "general", message_id, "👍")
        message = await hub.reactions.add_reaction(bob, "general", message_id, "👍")
        await hub.reactions.add_reaction(alice, "general", message_id, "👍")

        assert message.reactions == {"👍": ["bob", "alice"]}

    @pytest.mark.asyncio
    async def test_unreact_drops_empty_emoji(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        message_id = (await hub.send_text(alice, "general", "nice")).message.id

        await hub.reactions.add_reaction(alice, "general", message_id, "🎉")
        message = await hub.reactions.remove_reaction(alice, "general", message_id, "🎉")
        again = await hub.reactions.remove_reaction(alice, "general", message_id, "🎉")

        assert message.reactions == {}
        assert again.reactions == {}

    @pytest.mark.asyncio
    async def test_reactions_persisted(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        message_id = (await hub.send_text(alice, "general", "nice")).message.id
        await hub.reactions.add_reaction(alice, "general", message_id, "👍")

        stored = hub.log.find("general", message_id)
        assert stored.reactions == {"👍": ["alice"]}

    @pytest.mark.asyncio
    async def test_react_falls_back_to_log(self, hub, connect):
        """Messages evicted from the cache are still reactable."""
        alice = connect("alice")
        await _room(hub, alice)
        message_id = (await hub.send_text(alice, "general", "old")).message.id
        hub.router.forget_room("general")

        message = await hub.reactions.add_reaction(alice, "general", message_id, "👍")
        assert message.content == "old"

    @pytest.mark.asyncio
    async def test_unknown_message(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        with pytest.raises(UnknownMessageError):
            await hub.reactions.add_reaction(alice, "general", "missing", "👍")

    @pytest.mark.asyncio
    async def test_message_of_other_room(self, hub, connect):
        alice = connect("alice")
        await _room(hub, alice)
        await _room(hub, alice, room="random")
        message_id = (await hub.send_text(alice, "random", "elsewhere")).message.id
        with pytest.raises(UnknownMessageError):
            await hub.reactions.add_reaction(alice, "general", message_id, "👍")

    @pytest.mark.asyncio
    async def test_react_requires_membership(self, hub, connect):
        alice, bob = connect("alice"), connect("bob")
        await _room(hub, alice)
        message_id = (await hub.send_text(alice, "general", "hi")).message.id
        with pytest.raises(RoomAccessError):
            await hub.reactions.add_reaction(bob, "general", message_id, "👍")
