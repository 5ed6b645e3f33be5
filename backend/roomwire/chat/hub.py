"""Chat hub: wires the engine together and exposes its outer API.

The hub owns one instance of each engine component plus the collaborators
(identity verifier, message log, blob store). Connection sessions call its
action methods; the HTTP layer uses ``history``, ``purge`` and
``share_file``.

Usage:
    hub = ChatHub.get_instance()
    connection = await hub.admit(websocket)
"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional, Set

from roomwire.auth.verifier import IdentityVerifier, build_verifier
from roomwire.config import AppSettings, get_config
from roomwire.files.service import BlobStore, FileBlobStore
from roomwire.history.service import MessageLog, MessageLogStore

from .broadcast import BroadcastRouter, PublishResult
from .connection import Connection
from .ephemeral import ReactionService, TypingTracker
from .errors import DeliveryError, RecipientOfflineError, RoomAccessError
from .gateway import ConnectionGateway
from .presence import PresenceCoordinator
from .registry import RoomRegistry
from .schemas import ChatMessage, MessageType, Participant, message_event

logger = logging.getLogger(__name__)


class ChatHub:
    """Composition root of the presence and broadcast engine.

    Attributes:
        registry: Room membership registry.
        router: Broadcast router.
        typing: Typing indicator tracker.
        reactions: Reaction tally service.
        presence: Join/leave notification policy.
        gateway: Handshake authentication.
    """

    _instance: Optional["ChatHub"] = None

    def __init__(
        self,
        config: AppSettings,
        verifier: IdentityVerifier,
        log: MessageLog,
        blobs: BlobStore,
    ) -> None:
        self.config = config
        self.log = log
        self.blobs = blobs
        chat = config.chat

        self.registry = RoomRegistry(lock_shards=chat.lock_shards, strict=chat.strict_invariants)
        self.router = BroadcastRouter(self.registry, log, cache_size=chat.message_cache_size)
        self.typing = TypingTracker(self.registry, self.router, timeout=chat.typing_timeout_seconds)
        self.reactions = ReactionService(self.registry, self.router)
        self.presence = PresenceCoordinator(
            self.registry,
            self.router,
            self.typing,
            history_size=config.history.default_page_size,
        )
        self.gateway = ConnectionGateway(
            verifier,
            queue_size=chat.outbound_queue_size,
            send_timeout=chat.send_timeout_seconds,
            on_dead=self._on_dead,
            query_param=config.auth.token_query_param,
        )

        self._drop_tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Singleton
    # =========================================================================

    @classmethod
    def from_config(cls, config: AppSettings) -> "ChatHub":
        """Build a hub with the collaborators named in ``config``."""
        return cls(
            config,
            verifier=build_verifier(config),
            log=MessageLogStore(db_path=config.history.db_path),
            blobs=FileBlobStore(
                upload_dir=config.files.upload_dir,
                db_path=config.files.db_path,
                public_base_url=config.files.public_base_url,
                max_size_bytes=config.files.max_file_size_bytes,
            ),
        )

    @classmethod
    def get_instance(cls) -> "ChatHub":
        """Get or create the process-wide hub from ``get_config()``."""
        if cls._instance is None:
            cls._instance = cls.from_config(get_config())
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (tests, shutdown)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def close(self) -> None:
        for task in list(self._drop_tasks):
            task.cancel()
        self.log.close()
        self.blobs.close()

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def admit(self, websocket) -> Connection:
        """Authenticate a handshake and register the connection.

        Raises:
            AuthError: The handshake was rejected; nothing was registered.
        """
        connection = await self.gateway.admit(websocket)
        self.registry.attach(connection)
        connection.enqueue({
            "type": "connected",
            "connectionId": connection.connection_id,
            "participant": connection.participant.to_dict(),
        })
        return connection

    async def release(self, connection: Connection, code: int = 1000) -> None:
        """Disconnect from every room and close the transport, exactly once."""
        if connection.released:
            return
        connection.released = True
        try:
            await self.presence.disconnect(connection)
        finally:
            await connection.close(code=code)
        logger.info(f"[Hub] Released {connection!r}")

    def _on_dead(self, connection: Connection, error: DeliveryError) -> None:
        """Drop a failed connection from its rooms as if it disconnected."""
        logger.warning(f"[Hub] Dropping {connection!r}: {error}")
        task = asyncio.get_running_loop().create_task(
            self.release(connection, code=1011)
        )
        self._drop_tasks.add(task)
        task.add_done_callback(self._drop_tasks.discard)

    # =========================================================================
    # Client actions
    # =========================================================================

    def resolve_room(self, connection: Connection, room: Optional[str]) -> str:
        """Return ``room`` or the connection's current room.

        Raises:
            RoomAccessError: No room given and none joined, or not a member.
        """
        target = room or connection.current_room
        if not target:
            raise RoomAccessError("join a room first")
        if not self.registry.is_member(connection, target):
            raise RoomAccessError(f"not a member of room {target}")
        return target

    async def send_text(
        self, connection: Connection, room: Optional[str], text: str
    ) -> PublishResult:
        """Publish a text message, echoed to the sender's connection too."""
        target = self.resolve_room(connection, room)
        message = ChatMessage(
            type=MessageType.TEXT,
            roomId=target,
            userId=connection.participant_id,
            displayName=connection.participant.display_name,
            content=text,
        )
        return await self.router.publish(message)

    async def send_private(
        self, connection: Connection, to_participant: str, text: str
    ) -> ChatMessage:
        """Deliver a private message to every connection of both parties.

        Raises:
            RecipientOfflineError: The target has no live connection.
        """
        message = ChatMessage(
            type=MessageType.PRIVATE,
            userId=connection.participant_id,
            displayName=connection.participant.display_name,
            content=text,
            recipientId=to_participant,
        )
        payload = message_event(message)
        if not self.router.to_participant(to_participant, payload):
            raise RecipientOfflineError(f"{to_participant} is not connected")
        if to_participant != connection.participant_id:
            self.router.to_participant(connection.participant_id, payload)
        return message

    async def share_file(
        self,
        participant: Participant,
        room: str,
        content: bytes,
        content_type: str,
        filename: str,
    ) -> PublishResult:
        """Store a blob and publish a file message to ``room``.

        Raises:
            RoomAccessError: The participant is not present in ``room``.
            ProtocolError: The file is too large.
            PersistenceError: The blob store failed; nothing was published.
        """
        if not self.registry.is_present(participant.participant_id, room):
            raise RoomAccessError(f"not a member of room {room}")
        url = self.blobs.store(
            content,
            content_type,
            filename=filename,
            room_id=room,
            uploader_id=participant.participant_id,
        )
        message = ChatMessage(
            type=MessageType.FILE,
            roomId=room,
            userId=participant.participant_id,
            displayName=participant.display_name,
            content=filename,
            fileUrl=url,
            mimeType=content_type,
        )
        return await self.router.publish(message)

    # =========================================================================
    # HTTP-facing API
    # =========================================================================

    def history(
        self,
        room: str,
        limit: Optional[int] = None,
        before: Optional[float] = None,
        before_id: Optional[str] = None,
    ) -> List[ChatMessage]:
        """Recent room messages, newest last. Raises PersistenceError."""
        page = self.config.history
        limit = page.default_page_size if limit is None else min(limit, page.max_page_size)
        return self.log.recent(room, limit, before=before, before_id=before_id)

    def purge(self, older_than_days: float) -> int:
        """Delete logged messages older than the given age. Raises PersistenceError."""
        deleted = self.log.purge_older_than(timedelta(days=older_than_days))
        logger.info(f"[Hub] Retention purge removed {deleted} messages (> {older_than_days}d)")
        return deleted

    def members(self, room: str) -> List[Participant]:
        return sorted(
            self.registry.members_of(room),
            key=lambda p: (p.display_name, p.participant_id),
        )
