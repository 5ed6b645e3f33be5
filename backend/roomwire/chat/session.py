"""Per-connection worker: reads client events and dispatches them in order.

Protocol Message Types (client -> server):
    - join: {room}
    - leave: {room}
    - send: {text, room?}
    - sendPrivate: {to, text}
    - typing: {isTyping, room?}
    - react / unreact: {messageId, emoji, room?}
    - file: {fileName, contentType, data (base64), room?}

A missing ``room`` means the connection's most recently joined room.
Failures of the initiating action are reported to this connection only, as
``{"type": "error", "code": ..., "error": ...}``.
"""
import base64
import binascii
import json
import logging
from typing import Awaitable, Callable, Dict

from fastapi import WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from .connection import Connection
from .errors import ChatError, ProtocolError, RoomStateError
from .hub import ChatHub
from .schemas import (
    FileEvent,
    JoinEvent,
    LeaveEvent,
    ReactionEvent,
    SendEvent,
    SendPrivateEvent,
    TypingEvent,
    error_event,
)

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[None]]


def _parse(model: type, data: dict) -> BaseModel:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolError(errors) from e


class ChatSession:
    """Runs the inbound event loop of one admitted connection."""

    def __init__(self, hub: ChatHub, connection: Connection) -> None:
        self.hub = hub
        self.connection = connection
        self._handlers: Dict[str, Handler] = {
            "join": self.on_join,
            "leave": self.on_leave,
            "send": self.on_send,
            "sendPrivate": self.on_send_private,
            "typing": self.on_typing,
            "react": self.on_react,
            "unreact": self.on_unreact,
            "file": self.on_file,
        }

    async def run(self) -> None:
        """Process events until the peer disconnects, then release."""
        websocket = self.connection.transport
        try:
            while True:
                try:
                    raw = await websocket.receive_text()
                except RuntimeError:
                    # The hub already closed a dropped connection.
                    if self.connection.closed:
                        break
                    raise
                await self.dispatch(raw)
        except WebSocketDisconnect as e:
            logger.info(f"[Session] {self.connection!r} disconnected (code={e.code})")
        finally:
            await self.hub.release(self.connection)

    async def dispatch(self, raw: str) -> None:
        """Handle one inbound frame, reporting action failures to the sender.

        RoomStateError is a bug and propagates.
        """
        try:
            try:
                data = json.loads(raw)
            except ValueError as e:
                raise ProtocolError("frame is not valid JSON") from e
            if not isinstance(data, dict):
                raise ProtocolError("frame must be a JSON object")

            event_type = data.get("type")
            handler = self._handlers.get(event_type)
            if handler is None:
                raise ProtocolError(f"unknown event type: {event_type!r}")
            logger.debug(f"[Session] {self.connection!r} -> {event_type}")
            await handler(data)
        except RoomStateError:
            raise
        except ChatError as e:
            logger.info(f"[Session] {self.connection!r} action failed: {e.code}: {e}")
            self.connection.enqueue(error_event(e.code, str(e)))

    # =========================================================================
    # Handlers
    # =========================================================================

    async def on_join(self, data: dict) -> None:
        event = _parse(JoinEvent, data)
        await self.hub.presence.join(self.connection, event.room)

    async def on_leave(self, data: dict) -> None:
        event = _parse(LeaveEvent, data)
        await self.hub.presence.leave(self.connection, event.room)

    async def on_send(self, data: dict) -> None:
        event = _parse(SendEvent, data)
        if not event.text.strip():
            raise ProtocolError("text is required")
        result = await self.hub.send_text(self.connection, event.room, event.text)
        if not result.persisted:
            # Delivered live but missing from history.
            self.connection.enqueue(error_event(
                "persistence_failed",
                f"message {result.message.id} was delivered but not saved",
            ))

    async def on_send_private(self, data: dict) -> None:
        event = _parse(SendPrivateEvent, data)
        await self.hub.send_private(self.connection, event.to, event.text)

    async def on_typing(self, data: dict) -> None:
        event = _parse(TypingEvent, data)
        room = self.hub.resolve_room(self.connection, event.room)
        self.hub.typing.set_typing(self.connection, room, event.isTyping)

    async def on_react(self, data: dict) -> None:
        event = _parse(ReactionEvent, data)
        room = self.hub.resolve_room(self.connection, event.room)
        await self.hub.reactions.add_reaction(self.connection, room, event.messageId, event.emoji)

    async def on_unreact(self, data: dict) -> None:
        event = _parse(ReactionEvent, data)
        room = self.hub.resolve_room(self.connection, event.room)
        await self.hub.reactions.remove_reaction(self.connection, room, event.messageId, event.emoji)

    async def on_file(self, data: dict) -> None:
        event = _parse(FileEvent, data)
        room = self.hub.resolve_room(self.connection, event.room)
        try:
            content = base64.b64decode(event.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ProtocolError("data is not valid base64") from e
        await self.hub.share_file(
            self.connection.participant, room, content, event.contentType, event.fileName
        )
