"""Error taxonomy for the presence and broadcast engine.

Every error carries a short machine-readable ``code`` which the WebSocket
session copies into the ``error`` event it sends back to the initiating
connection.
"""


class ChatError(Exception):
    """Base class for all chat engine errors."""

    code = "chat_error"


class AuthError(ChatError):
    """Handshake rejected; the connection is never admitted."""

    code = "auth_failed"


class RoomStateError(ChatError):
    """A registry invariant was violated. Indicates a bug."""

    code = "room_state"


class DeliveryError(ChatError):
    """A single connection could not accept an outbound event."""

    code = "delivery_failed"


class PersistenceError(ChatError):
    """The message log or blob store failed."""

    code = "persistence_failed"


class RoomAccessError(ChatError):
    """The connection acted on a room it has not joined."""

    code = "not_in_room"


class UnknownMessageError(ChatError):
    """A reaction targeted a message that does not exist in the room."""

    code = "unknown_message"


class RecipientOfflineError(ChatError):
    """A private message target has no live connection."""

    code = "recipient_offline"


class ProtocolError(ChatError):
    """Malformed or unsupported inbound event."""

    code = "invalid_event"
