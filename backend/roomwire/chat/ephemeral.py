"""Ephemeral features layered on room membership: typing and reactions.

Typing state is memory-only and time-boxed; it never touches the registry
and is never logged. Reactions live on the message record and are written
back to the log best-effort, so they are exactly as durable as the message.
"""
import asyncio
import logging
from typing import Dict, Optional, Set

from .broadcast import BroadcastRouter
from .connection import Connection
from .errors import RoomAccessError, UnknownMessageError
from .registry import RoomRegistry
from .schemas import ChatMessage, Participant, reaction_event, typing_event

logger = logging.getLogger(__name__)

DEFAULT_TYPING_TIMEOUT = 5.0


class _TypingEntry:
    __slots__ = ("participant", "timer")

    def __init__(self, participant: Participant, timer: Optional[asyncio.TimerHandle]) -> None:
        self.participant = participant
        self.timer = timer


class TypingTracker:
    """Per-room set of participants currently typing.

    Each entry expires ``timeout`` seconds after the last "typing" signal;
    expiry broadcasts a stop exactly like an explicit stop. Clients debounce
    their own stop signal, the timer only covers clients that never send one.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        router: BroadcastRouter,
        timeout: float = DEFAULT_TYPING_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.router = router
        self.timeout = timeout
        # room -> {participant_id -> entry}
        self._typing: Dict[str, Dict[str, _TypingEntry]] = {}

    def set_typing(self, connection: Connection, room: str, is_typing: bool) -> bool:
        """Update typing state and notify the rest of the room on change.

        Returns:
            True if the room was notified.

        Raises:
            RoomAccessError: The connection has not joined ``room``.
        """
        if not self.registry.is_member(connection, room):
            raise RoomAccessError(f"not a member of room {room}")

        participant = connection.participant
        entries = self._typing.setdefault(room, {})
        entry = entries.get(participant.participant_id)

        if is_typing:
            timer = self._schedule_expiry(room, participant.participant_id)
            if entry is not None:
                if entry.timer is not None:
                    entry.timer.cancel()
                entry.timer = timer
                return False
            entries[participant.participant_id] = _TypingEntry(participant, timer)
            self.router.to_room(room, typing_event(room, participant, True), exclude=connection)
            return True

        if entry is None:
            if not entries:
                del self._typing[room]
            return False
        self._remove(room, participant.participant_id)
        self.router.to_room(room, typing_event(room, participant, False), exclude=connection)
        return True

    def clear(self, room: str, participant_id: str) -> bool:
        """Stop a participant's typing indicator, e.g. when they leave."""
        entry = self._remove(room, participant_id)
        if entry is None:
            return False
        self.router.to_room(room, typing_event(room, entry.participant, False))
        return True

    def typing_in(self, room: str) -> Set[str]:
        """Participant ids currently typing in ``room``."""
        return set(self._typing.get(room, {}))

    def forget_room(self, room: str) -> None:
        for entry in self._typing.pop(room, {}).values():
            if entry.timer is not None:
                entry.timer.cancel()

    def _remove(self, room: str, participant_id: str) -> Optional[_TypingEntry]:
        entries = self._typing.get(room)
        if not entries:
            return None
        entry = entries.pop(participant_id, None)
        if not entries:
            del self._typing[room]
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        return entry

    def _schedule_expiry(self, room: str, participant_id: str) -> Optional[asyncio.TimerHandle]:
        if self.timeout <= 0:
            return None
        loop = asyncio.get_running_loop()
        return loop.call_later(self.timeout, self._expire, room, participant_id)

    def _expire(self, room: str, participant_id: str) -> None:
        if self.clear(room, participant_id):
            logger.debug(f"[Typing] {participant_id} stopped typing in {room} (expired)")


class ReactionService:
    """Idempotent per-(message, emoji, participant) reaction tallies."""

    def __init__(self, registry: RoomRegistry, router: BroadcastRouter) -> None:
        self.registry = registry
        self.router = router

    async def add_reaction(
        self, connection: Connection, room: str, message_id: str, emoji: str
    ) -> ChatMessage:
        return await self._update(connection, room, message_id, emoji, add=True)

    async def remove_reaction(
        self, connection: Connection, room: str, message_id: str, emoji: str
    ) -> ChatMessage:
        return await self._update(connection, room, message_id, emoji, add=False)

    async def _update(
        self, connection: Connection, room: str, message_id: str, emoji: str, add: bool
    ) -> ChatMessage:
        """Apply a reaction change under the room lock and broadcast the tally.

        Raises:
            RoomAccessError: The connection has not joined ``room``.
            UnknownMessageError: No such message in ``room``.
            PersistenceError: The log lookup failed.
        """
        if not self.registry.is_member(connection, room):
            raise RoomAccessError(f"not a member of room {room}")

        async with self.registry.lock(room):
            message = self.router.lookup(room, message_id)
            if message is None:
                raise UnknownMessageError(f"no message {message_id} in room {room}")

            pid = connection.participant_id
            if add:
                changed = message.add_reaction(emoji, pid)
            else:
                changed = message.remove_reaction(emoji, pid)
            if changed:
                self.router.save_reactions(message)
            self.router.to_room(room, reaction_event(message))
        return message
