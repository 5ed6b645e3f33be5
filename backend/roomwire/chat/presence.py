"""Presence coordinator: join/leave notification policy.

A "joined" notice fires only when a participant's reference count in a room
goes from 0 to 1, and a "left" notice only when it returns to 0. Extra tabs,
reconnect storms and rejoins on the same connection stay silent.

The registry mutation and the notifications it implies happen under the
same room lock, so two racing connections of one participant can never
produce duplicate or missing notices, nor a "left" that overtakes a "joined".
Logging a notice is best effort: a log failure is reported but never blocks
or undoes the in-memory broadcast.
"""
import logging
from typing import List, Tuple

from .broadcast import BroadcastRouter
from .connection import Connection
from .ephemeral import TypingTracker
from .errors import RoomAccessError
from .registry import RoomRegistry
from .schemas import (
    JoinOutcome,
    LeaveOutcome,
    history_event,
    message_event,
    presence_event,
    system_message,
)

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50


class PresenceCoordinator:
    """Wraps registry membership changes with join/leave notifications."""

    def __init__(
        self,
        registry: RoomRegistry,
        router: BroadcastRouter,
        typing: TypingTracker,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        self.registry = registry
        self.router = router
        self.typing = typing
        self.history_size = history_size

    async def join(self, connection: Connection, room: str) -> JoinOutcome:
        """Join ``room`` and notify as needed.

        The joining connection receives the room history and the presence
        list, never its own "joined" notice.

        Raises:
            RoomAccessError: The connection has already been released.
        """
        async with self.registry.lock(room):
            if connection.released or connection.closed:
                raise RoomAccessError(f"connection closed, cannot join room {room}")
            if self.registry.is_member(connection, room):
                return JoinOutcome(already_present=True, connection_added=False)

            history = self.router.recent(room, self.history_size)
            outcome = self.registry.join(connection, room)
            connection.enqueue(history_event(room, history))

            if outcome.already_present:
                # Another tab of a present participant: tell only this tab.
                connection.enqueue(presence_event(room, self.registry.members_of(room)))
                return outcome

            name = connection.participant.display_name
            notice = system_message(room, f"{name} joined the chat")
            self.router.register(notice)
            self.router.persist(notice)
            self.router.to_room(room, message_event(notice), exclude=connection)
            self.router.to_room(room, presence_event(room, self.registry.members_of(room)))

        logger.info(f"[Presence] {connection.participant_id} joined room {room}")
        return outcome

    async def leave(self, connection: Connection, room: str) -> LeaveOutcome:
        """Leave ``room`` explicitly. A no-op if the connection is not in it."""
        outcome = await self._leave(connection, room)
        if outcome.was_member:
            connection.enqueue({"type": "left", "room": room})
        return outcome

    async def disconnect(self, connection: Connection) -> List[Tuple[str, LeaveOutcome]]:
        """Leave every room the connection occupies and forget it.

        Idempotent: a second call finds no rooms and does nothing.
        """
        left = []
        for room in list(connection.rooms):
            outcome = await self._leave(connection, room)
            if outcome.was_member:
                left.append((room, outcome))
        self.registry.detach(connection)
        return left

    async def _leave(self, connection: Connection, room: str) -> LeaveOutcome:
        pid = connection.participant_id
        async with self.registry.lock(room):
            outcome = self.registry.leave(connection, room)
            if not outcome.was_member:
                return outcome

            self.typing.clear(room, pid)

            if not outcome.still_present:
                name = connection.participant.display_name
                notice = system_message(room, f"{name} left the chat")
                if not outcome.room_closed:
                    self.router.register(notice)
                self.router.persist(notice)
                self.router.to_room(room, message_event(notice), exclude=connection)
                self.router.to_room(room, presence_event(room, self.registry.members_of(room)))

            if outcome.room_closed:
                self.router.forget_room(room)
                self.typing.forget_room(room)

        if not outcome.still_present:
            logger.info(f"[Presence] {pid} left room {room}")
        return outcome
