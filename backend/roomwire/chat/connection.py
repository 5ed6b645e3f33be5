"""Live transport sessions and their bounded outbound queues.

Each Connection owns one writer task. Producers never await a slow peer:
``enqueue`` either places the event on the bounded queue or marks the
connection dead, and the writer drains the queue in FIFO order, so events
reach a given peer in the order they were enqueued.
"""
import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from .errors import DeliveryError
from .schemas import Participant

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_SEND_TIMEOUT = 10.0

# Queued by close() to stop the writer once it is idle.
_CLOSE = object()

DeadCallback = Callable[["Connection", DeliveryError], None]


class Connection:
    """A single authenticated transport session.

    The transport only needs ``async send_json(dict)`` and ``async close(code)``,
    which FastAPI's WebSocket provides.

    Attributes:
        connection_id: Opaque handle, unique per process.
        participant: Identity bound at admission.
        authenticated_at: Unix timestamp of the successful handshake.
        rooms: Joined rooms in join order. Mutated only by the RoomRegistry.
        dead: Set once the connection failed or overflowed.
        released: Set by the hub once the connection has been disconnected
            from its rooms.
    """

    def __init__(
        self,
        transport: Any,
        participant: Participant,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_dead: Optional[DeadCallback] = None,
        connection_id: Optional[str] = None,
    ) -> None:
        self.connection_id = connection_id or uuid.uuid4().hex
        self.participant = participant
        self.authenticated_at = time.time()
        self.transport = transport
        self.send_timeout = send_timeout
        self.on_dead = on_dead
        self.rooms: Dict[str, None] = {}
        self.dead = False
        self.closed = False
        self.released = False
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None

    def __repr__(self) -> str:
        return (
            f"Connection({self.connection_id[:8]}, "
            f"participant={self.participant.participant_id!r})"
        )

    @property
    def participant_id(self) -> str:
        return self.participant.participant_id

    @property
    def current_room(self) -> Optional[str]:
        """The most recently joined room still held, if any."""
        if not self.rooms:
            return None
        return next(reversed(self.rooms))

    def start(self) -> None:
        """Start the writer task. Must be called from a running event loop."""
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(self._pump())

    def enqueue(self, payload: dict) -> bool:
        """Queue an event for delivery without blocking.

        Returns:
            True if queued, False if the connection is dead or its queue is
            full. A full queue marks the connection dead.
        """
        if self.dead or self.closed:
            return False
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._mark_dead(DeliveryError(
                f"outbound queue overflow ({self._queue.maxsize} events)"
            ))
            return False
        return True

    async def flush(self) -> None:
        """Wait until everything queued so far has been written or discarded."""
        await self._queue.join()

    async def _pump(self) -> None:
        while True:
            payload = await self._queue.get()
            if payload is _CLOSE:
                self._queue.task_done()
                return
            try:
                await asyncio.wait_for(
                    self.transport.send_json(payload), timeout=self.send_timeout
                )
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            except asyncio.TimeoutError:
                self._queue.task_done()
                self._mark_dead(DeliveryError(
                    f"send timed out after {self.send_timeout}s"
                ))
                return
            except Exception as e:
                self._queue.task_done()
                self._mark_dead(DeliveryError(f"send failed: {e}"))
                return
            self._queue.task_done()

    def _discard_pending(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.task_done()

    def _mark_dead(self, error: DeliveryError) -> None:
        if self.dead:
            return
        self.dead = True
        self._discard_pending()
        logger.warning(f"[Connection] {self!r} dropped: {error}")
        if self.on_dead is not None:
            self.on_dead(self, error)

    async def close(self, code: int = 1000) -> None:
        """Stop the writer and close the transport. Safe to call repeatedly."""
        if self.closed:
            return
        self.closed = True
        writer, self._writer = self._writer, None
        self._discard_pending()
        if writer is not None and writer is not asyncio.current_task():
            # A cancel that lands as a send completes can be absorbed by
            # wait_for, so the sentinel also stops the writer at its next get.
            self._queue.put_nowait(_CLOSE)
            writer.cancel()
            await asyncio.wait({writer}, timeout=self.send_timeout)
            self._discard_pending()
        try:
            await self.transport.close(code=code)
        except Exception as e:
            # Transport already closed by the peer.
            logger.debug(f"[Connection] close on {self!r} ignored: {e}")
