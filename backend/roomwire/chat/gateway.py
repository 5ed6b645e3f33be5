"""Connection gateway: authenticates a handshake before admission.

Persistent-connection handshakes carry the credential explicitly, either as
a query parameter (browsers cannot set headers on WebSocket upgrades) or as
an ``Authorization: Bearer`` header. Nothing is accepted, registered or
broadcast until the identity verifier has succeeded.
"""
import logging
from typing import Any, Optional

from roomwire.auth.verifier import IdentityVerifier

from .connection import DEFAULT_QUEUE_SIZE, DEFAULT_SEND_TIMEOUT, Connection, DeadCallback
from .errors import AuthError
from .schemas import Participant

logger = logging.getLogger(__name__)


def extract_credential(handshake: Any, query_param: str = "token") -> Optional[str]:
    """Pull the credential out of a WebSocket handshake, if present."""
    token = handshake.query_params.get(query_param)
    if token:
        return token
    header = handshake.headers.get("authorization", "")
    scheme, _, value = header.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


class ConnectionGateway:
    """Turns a raw handshake into an admitted Connection.

    Args:
        verifier: Identity verifier collaborator.
        queue_size: Outbound queue bound for admitted connections.
        send_timeout: Per-event send timeout for admitted connections.
        on_dead: Callback invoked when an admitted connection fails.
        query_param: Name of the credential query parameter.
    """

    def __init__(
        self,
        verifier: IdentityVerifier,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
        on_dead: Optional[DeadCallback] = None,
        query_param: str = "token",
    ) -> None:
        self.verifier = verifier
        self.queue_size = queue_size
        self.send_timeout = send_timeout
        self.on_dead = on_dead
        self.query_param = query_param

    async def admit(self, websocket: Any) -> Connection:
        """Authenticate and accept a handshake.

        Returns:
            A started Connection bound to the verified participant.

        Raises:
            AuthError: Missing or rejected credential. The handshake has not
                been accepted and no state was created.
        """
        credential = extract_credential(websocket, self.query_param)
        if not credential:
            raise AuthError("missing credential")

        identity = await self.verifier.verify(credential)

        await websocket.accept()
        connection = Connection(
            websocket,
            Participant(identity.participant_id, identity.display_name),
            queue_size=self.queue_size,
            send_timeout=self.send_timeout,
            on_dead=self.on_dead,
        )
        connection.start()
        logger.info(
            f"[Gateway] Admitted {connection!r} as {identity.display_name!r}"
        )
        return connection
