"""Broadcast router: room fan-out, private delivery and message logging.

Delivery is enqueue-only. Each recipient has its own bounded queue and
writer (see ``Connection``), so one slow peer never delays the others; a
recipient whose queue overflows is marked dead and released by the hub
as if it had disconnected. Failures are isolated per recipient and never
reported back to the sender.

Ordering:
    ``publish`` holds the room lock while it logs and fans out a message, and
    each connection submits its events one at a time, so all subscribers
    observe a single connection's messages in submission order. Messages
    from different connections are not globally ordered.
"""
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Optional

from roomwire.history.service import MessageLog

from .connection import Connection
from .errors import PersistenceError, RoomStateError
from .registry import RoomRegistry
from .schemas import ChatMessage, message_event

logger = logging.getLogger(__name__)

# Per-room count of recent messages kept in memory for reaction targeting
DEFAULT_MESSAGE_CACHE_SIZE = 100


@dataclass(frozen=True)
class PublishResult:
    """Outcome of ``BroadcastRouter.publish``.

    Attributes:
        message: The published message.
        delivered: Number of connections the message was queued for.
        persisted: False if the log append failed. Delivery still happened.
    """
    message: ChatMessage
    delivered: int
    persisted: bool


class BroadcastRouter:
    """Delivers events to room subscribers and persists room messages.

    Args:
        registry: Membership source for recipient lists.
        log: Durable message log collaborator.
        cache_size: Recent messages kept per room.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        log: MessageLog,
        cache_size: int = DEFAULT_MESSAGE_CACHE_SIZE,
    ) -> None:
        self.registry = registry
        self.log = log
        self.cache_size = cache_size
        # room -> OrderedDict(message_id -> ChatMessage), oldest first
        self._recent: Dict[str, "OrderedDict[str, ChatMessage]"] = {}

    # =========================================================================
    # Delivery
    # =========================================================================

    def to_room(
        self, room: str, payload: dict, exclude: Optional[Connection] = None
    ) -> int:
        """Queue ``payload`` for every connection in ``room`` except ``exclude``.

        Returns:
            Number of connections that accepted the event.
        """
        delivered = 0
        for connection in self.registry.connections_in(room, exclude=exclude):
            if connection.enqueue(payload):
                delivered += 1
        return delivered

    def to_participant(self, participant_id: str, payload: dict) -> bool:
        """Queue ``payload`` for every live connection of a participant.

        Nothing is kept for offline participants.

        Returns:
            True if at least one connection accepted the event.
        """
        delivered = False
        for connection in self.registry.connections_of(participant_id):
            if connection.enqueue(payload):
                delivered = True
        return delivered

    async def publish(
        self, message: ChatMessage, exclude: Optional[Connection] = None
    ) -> PublishResult:
        """Register, log and fan out a room message.

        The room lock is held across logging and fan-out, so a concurrent
        join either sees the message in its history or receives it live.

        Raises:
            RoomStateError: The message id collides with a cached message.
        """
        room = message.roomId
        async with self.registry.lock(room):
            self.register(message)
            persisted = self.persist(message)
            delivered = self.to_room(room, message_event(message), exclude=exclude)
        logger.debug(
            f"[Router] {message.type.value} {message.id} -> {delivered} connections in {room}"
        )
        return PublishResult(message=message, delivered=delivered, persisted=persisted)

    # =========================================================================
    # Log access (best effort)
    # =========================================================================

    def persist(self, message: ChatMessage) -> bool:
        """Append to the log. Failures are logged and reported as False."""
        try:
            self.log.append(message)
        except PersistenceError as e:
            logger.error(f"[Router] Message {message.id} not persisted: {e}")
            return False
        return True

    def recent(self, room: str, limit: int) -> list:
        """Recent history for a joining connection; empty if the log fails."""
        try:
            return self.log.recent(room, limit)
        except PersistenceError as e:
            logger.error(f"[Router] History for room {room} unavailable: {e}")
            return []

    def save_reactions(self, message: ChatMessage) -> bool:
        try:
            self.log.save_reactions(message)
        except PersistenceError as e:
            logger.error(f"[Router] Reactions for {message.id} not persisted: {e}")
            return False
        return True

    # =========================================================================
    # Message cache
    # =========================================================================

    def register(self, message: ChatMessage) -> None:
        """Remember a new room message for reaction targeting.

        Raises:
            RoomStateError: Another message with the same id is cached for
                the room. Two messages must never merge.
        """
        cache = self._recent.setdefault(message.roomId, OrderedDict())
        if message.id in cache:
            raise RoomStateError(
                f"message id collision in room {message.roomId}: {message.id}"
            )
        cache[message.id] = message
        while len(cache) > self.cache_size:
            cache.popitem(last=False)

    def lookup(self, room: str, message_id: str) -> Optional[ChatMessage]:
        """Find a room message, consulting the log on a cache miss."""
        cached = self._recent.get(room, {}).get(message_id)
        if cached is not None:
            return cached
        message = self.log.find(room, message_id)
        if message is not None:
            cache = self._recent.setdefault(room, OrderedDict())
            cache[message.id] = message
            while len(cache) > self.cache_size:
                cache.popitem(last=False)
        return message

    def forget_room(self, room: str) -> None:
        """Drop cached messages of a room that has closed."""
        self._recent.pop(room, None)
