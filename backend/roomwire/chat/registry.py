"""Room membership registry.

Maps room -> joined connections, with a per-(participant, room) reference
count so that a participant holding several connections (tabs, devices) is
present exactly once. The registry is the only owner of membership state;
callers mutate it exclusively through ``join``/``leave``/``disconnect``.

Concurrency:
    All mutating methods are synchronous and never await, so on a single event
    loop each call is atomic. Callers that must keep a mutation and the
    notifications it implies together (the PresenceCoordinator) hold the
    room's lock from ``lock(room)`` across both. Locks are striped over a
    fixed number of shards, so rooms never allocate locks of their own and
    unrelated rooms rarely contend.
"""
import asyncio
import logging
import zlib
from typing import Dict, List, Optional, Set, Tuple

from .connection import Connection
from .errors import RoomStateError
from .schemas import JoinOutcome, LeaveOutcome, Participant

logger = logging.getLogger(__name__)

DEFAULT_LOCK_SHARDS = 64


class _RoomState:
    """Membership of one room. Exists only while a connection is joined."""

    __slots__ = ("connections", "refcounts", "participants")

    def __init__(self) -> None:
        # connection_id -> Connection
        self.connections: Dict[str, Connection] = {}
        # participant_id -> number of this participant's connections in the room
        self.refcounts: Dict[str, int] = {}
        # participant_id -> Participant
        self.participants: Dict[str, Participant] = {}


class RoomRegistry:
    """Tracks which participants are present in which rooms.

    Args:
        lock_shards: Number of striped room locks.
        strict: Raise RoomStateError on invariant violations instead of
            logging and clamping.
    """

    def __init__(self, lock_shards: int = DEFAULT_LOCK_SHARDS, strict: bool = False) -> None:
        self.strict = strict
        self._rooms: Dict[str, _RoomState] = {}
        # participant_id -> {connection_id -> Connection}, for admitted connections
        self._by_participant: Dict[str, Dict[str, Connection]] = {}
        self._locks: List[asyncio.Lock] = [asyncio.Lock() for _ in range(lock_shards)]

    # =========================================================================
    # Locking
    # =========================================================================

    def lock(self, room: str) -> asyncio.Lock:
        """Return the lock that linearizes mutations of ``room``."""
        return self._locks[zlib.crc32(room.encode("utf-8")) % len(self._locks)]

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    def attach(self, connection: Connection) -> None:
        """Register an admitted connection so private messages can reach it."""
        owned = self._by_participant.setdefault(connection.participant_id, {})
        owned[connection.connection_id] = connection

    def detach(self, connection: Connection) -> None:
        owned = self._by_participant.get(connection.participant_id)
        if not owned:
            return
        owned.pop(connection.connection_id, None)
        if not owned:
            del self._by_participant[connection.participant_id]

    # =========================================================================
    # Membership
    # =========================================================================

    def join(self, connection: Connection, room: str) -> JoinOutcome:
        """Add ``connection`` to ``room``.

        Rejoining with the same connection is a no-op. Otherwise the
        participant's reference count is incremented and ``already_present``
        is False only when it went from 0 to 1.
        """
        state = self._rooms.get(room)
        if state is not None and connection.connection_id in state.connections:
            return JoinOutcome(already_present=True, connection_added=False)

        if state is None:
            state = self._rooms[room] = _RoomState()
            logger.debug(f"[Registry] Room {room} opened")

        pid = connection.participant_id
        previous = state.refcounts.get(pid, 0)
        state.connections[connection.connection_id] = connection
        state.refcounts[pid] = previous + 1
        state.participants[pid] = connection.participant
        connection.rooms[room] = None
        return JoinOutcome(already_present=previous > 0, connection_added=True)

    def leave(self, connection: Connection, room: str) -> LeaveOutcome:
        """Remove ``connection`` from ``room``.

        Leaving a room the connection is not in is a silent no-op: explicit
        leaves race with transport closes.
        """
        connection.rooms.pop(room, None)
        pid = connection.participant_id
        state = self._rooms.get(room)
        if state is None or state.connections.pop(connection.connection_id, None) is None:
            still = state is not None and pid in state.refcounts
            return LeaveOutcome(still_present=still, was_member=False)

        remaining = state.refcounts.get(pid, 0) - 1
        if remaining < 0:
            self._violation(
                f"negative reference count for {pid} in room {room}"
            )
            remaining = 0

        if remaining > 0:
            state.refcounts[pid] = remaining
            still_present = True
        else:
            state.refcounts.pop(pid, None)
            state.participants.pop(pid, None)
            still_present = False

        room_closed = False
        if not state.connections:
            if state.refcounts:
                self._violation(
                    f"room {room} has no connections but counts {state.refcounts}"
                )
            del self._rooms[room]
            room_closed = True
            logger.debug(f"[Registry] Room {room} closed")

        return LeaveOutcome(
            still_present=still_present, was_member=True, room_closed=room_closed
        )

    def disconnect(self, connection: Connection) -> List[Tuple[str, LeaveOutcome]]:
        """Leave every room ``connection`` occupies and forget the connection.

        Returns:
            (room, outcome) for each room actually left. Empty when called
            again for the same connection.
        """
        outcomes = [(room, self.leave(connection, room)) for room in list(connection.rooms)]
        self.detach(connection)
        return [(room, outcome) for room, outcome in outcomes if outcome.was_member]

    def _violation(self, detail: str) -> None:
        if self.strict:
            raise RoomStateError(detail)
        logger.error(f"[Registry] Invariant violation (clamped): {detail}")

    # =========================================================================
    # Queries
    # =========================================================================

    def members_of(self, room: str) -> Set[Participant]:
        """Distinct participants present in ``room``."""
        state = self._rooms.get(room)
        if state is None:
            return set()
        return set(state.participants.values())

    def connections_in(
        self, room: str, exclude: Optional[Connection] = None
    ) -> List[Connection]:
        """Snapshot of the connections joined to ``room``."""
        state = self._rooms.get(room)
        if state is None:
            return []
        return [c for c in state.connections.values() if c is not exclude]

    def connections_of(self, participant_id: str) -> List[Connection]:
        """Snapshot of every live connection owned by a participant."""
        return list(self._by_participant.get(participant_id, {}).values())

    def is_member(self, connection: Connection, room: str) -> bool:
        state = self._rooms.get(room)
        return state is not None and connection.connection_id in state.connections

    def is_present(self, participant_id: str, room: str) -> bool:
        state = self._rooms.get(room)
        return state is not None and participant_id in state.refcounts

    def reference_count(self, participant_id: str, room: str) -> int:
        state = self._rooms.get(room)
        if state is None:
            return 0
        return state.refcounts.get(participant_id, 0)

    def has_room(self, room: str) -> bool:
        return room in self._rooms

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def connection_count(self) -> int:
        return sum(len(owned) for owned in self._by_participant.values())
