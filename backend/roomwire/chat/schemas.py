"""Data models for the presence and broadcast engine.

Wire models use camelCase field names because they are serialized straight
to browser clients. Internal bookkeeping records (participants, join/leave
outcomes) are plain dataclasses.
"""
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

# Sender id used for presence notices
SYSTEM_SENDER = "system"


# =============================================================================
# Participants and registry outcomes
# =============================================================================


@dataclass(frozen=True)
class Participant:
    """A logical user, possibly holding several live connections.

    Attributes:
        participant_id: Stable identity from the identity verifier.
        display_name: Human-readable name shown in the chat UI.
    """
    participant_id: str
    display_name: str

    def to_dict(self) -> dict:
        return {"id": self.participant_id, "displayName": self.display_name}


@dataclass(frozen=True)
class JoinOutcome:
    """Result of ``RoomRegistry.join``.

    Attributes:
        already_present: The participant was present in the room before this
            call, so no "joined" notice is warranted.
        connection_added: The connection was not in the room before this call.
            False only for a rejoin on the same connection.
    """
    already_present: bool
    connection_added: bool


@dataclass(frozen=True)
class LeaveOutcome:
    """Result of ``RoomRegistry.leave``.

    Attributes:
        still_present: The participant still has another connection in the room.
        was_member: The connection was actually in the room. False means the
            call was a silent no-op.
        room_closed: The room lost its last connection and was removed.
    """
    still_present: bool
    was_member: bool
    room_closed: bool = False


# =============================================================================
# Messages
# =============================================================================


class MessageType(str, Enum):
    """Type of chat message.

    Attributes:
        TEXT: Regular user-authored message.
        SYSTEM: Presence notice ("X joined the chat").
        PRIVATE: Direct message between two participants, never persisted.
        FILE: File-share notification pointing at a stored blob.
    """
    TEXT = "text"
    SYSTEM = "system"
    PRIVATE = "private"
    FILE = "file"


class ChatMessage(BaseModel):
    """Immutable chat message record, apart from its reaction tally.

    Attributes:
        id: Unique message identifier (auto-generated UUID).
        type: Message type (text, system, private, file).
        roomId: Room this message belongs to ("" for private messages).
        userId: Sender's participant id, or ``SYSTEM_SENDER``.
        displayName: Sender's display name.
        content: Message body (the file name for file messages).
        ts: Unix timestamp (seconds since epoch).
        reactions: emoji -> participant ids who reacted, each id at most once.
        recipientId: Target participant for private messages.
        fileUrl: Retrieval URL for file messages.
        mimeType: Content type for file messages.
    """
    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique message ID"
    )
    type: MessageType = Field(default=MessageType.TEXT, description="Message type")
    roomId: str = Field(default="", description="Room ID this message belongs to")
    userId: str = Field(..., description="Participant ID of the sender")
    displayName: str = Field(default="", description="Display name of the sender")
    content: str = Field(..., description="Message content")
    ts: float = Field(
        default_factory=time.time,
        description="Timestamp in seconds since epoch"
    )
    reactions: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Reaction tally: emoji -> participant IDs"
    )
    recipientId: Optional[str] = Field(default=None, description="Private message target")
    fileUrl: Optional[str] = Field(default=None, description="Download URL for file messages")
    mimeType: Optional[str] = Field(default=None, description="MIME type for file messages")

    @property
    def is_persistent(self) -> bool:
        return self.type != MessageType.PRIVATE

    def add_reaction(self, emoji: str, participant_id: str) -> bool:
        """Record a reaction. Returns False if it was already recorded."""
        reactors = self.reactions.setdefault(emoji, [])
        if participant_id in reactors:
            return False
        reactors.append(participant_id)
        return True

    def remove_reaction(self, emoji: str, participant_id: str) -> bool:
        """Withdraw a reaction, dropping the emoji once nobody holds it."""
        reactors = self.reactions.get(emoji)
        if not reactors or participant_id not in reactors:
            return False
        reactors.remove(participant_id)
        if not reactors:
            del self.reactions[emoji]
        return True


def system_message(room: str, text: str) -> ChatMessage:
    return ChatMessage(
        type=MessageType.SYSTEM,
        roomId=room,
        userId=SYSTEM_SENDER,
        displayName=SYSTEM_SENDER,
        content=text,
    )


# =============================================================================
# Inbound client events
# =============================================================================


class JoinEvent(BaseModel):
    room: str = Field(..., min_length=1, max_length=200)


class LeaveEvent(BaseModel):
    room: str = Field(..., min_length=1, max_length=200)


class SendEvent(BaseModel):
    text: str = Field(..., min_length=1)
    room: Optional[str] = None


class SendPrivateEvent(BaseModel):
    to: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class TypingEvent(BaseModel):
    isTyping: bool = True
    room: Optional[str] = None


class ReactionEvent(BaseModel):
    messageId: str = Field(..., min_length=1)
    emoji: str = Field(..., min_length=1, max_length=32)
    room: Optional[str] = None


class FileEvent(BaseModel):
    fileName: str = Field(..., min_length=1, max_length=255)
    contentType: str = "application/octet-stream"
    data: str = Field(..., description="Base64-encoded file content")
    room: Optional[str] = None


# =============================================================================
# Outbound server events
# =============================================================================


def message_event(message: ChatMessage) -> dict:
    return {"type": "message", "message": message.model_dump(mode="json")}


def history_event(room: str, messages: Iterable[ChatMessage]) -> dict:
    return {
        "type": "history",
        "room": room,
        "messages": [m.model_dump(mode="json") for m in messages],
    }


def presence_event(room: str, members: Iterable[Participant]) -> dict:
    ordered = sorted(members, key=lambda p: (p.display_name, p.participant_id))
    return {
        "type": "presenceUpdate",
        "room": room,
        "members": [p.to_dict() for p in ordered],
    }


def typing_event(room: str, participant: Participant, is_typing: bool) -> dict:
    return {
        "type": "typingUpdate",
        "room": room,
        "participantId": participant.participant_id,
        "displayName": participant.display_name,
        "isTyping": is_typing,
    }


def reaction_event(message: ChatMessage) -> dict:
    return {
        "type": "reactionUpdate",
        "room": message.roomId,
        "messageId": message.id,
        "reactions": {emoji: list(ids) for emoji, ids in message.reactions.items()},
    }


def error_event(code: str, detail: str) -> dict:
    return {"type": "error", "code": code, "error": detail}
