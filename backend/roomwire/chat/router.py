"""Chat router providing the WebSocket endpoint and presence queries.

This module provides:
    - WebSocket /ws/chat: Authenticated real-time chat connection
    - GET /chat/{room_id}/members: Deduplicated presence list

Protocol Flow:
    1. Client connects with ?token=<credential> (or Authorization: Bearer)
       → rejected with close code 1008 if the credential does not verify
       → Server sends: {type: "connected", connectionId, participant}
    2. Client sends: {type: "join", room}
       → Joiner receives: {type: "history"} then {type: "presenceUpdate"}
       → Others receive: {type: "message", message: <system notice>} and
         {type: "presenceUpdate"} when the participant is new to the room
    3. Client sends: {type: "send", text} → everyone, sender included,
       receives {type: "message", message}
    4. On disconnect → "left" notice once the participant's last connection
       in the room is gone
"""
import logging

from fastapi import APIRouter, WebSocket

from .errors import AuthError
from .hub import ChatHub
from .session import ChatSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one authenticated chat connection.

    Args:
        websocket: The WebSocket connection (handshake not yet accepted).
    """
    hub = ChatHub.get_instance()
    try:
        connection = await hub.admit(websocket)
    except AuthError as e:
        logger.warning(f"[WS] Handshake rejected: {e}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await ChatSession(hub, connection).run()


@router.get("/chat/{room_id}/members")
async def get_room_members(room_id: str) -> dict:
    """Get the participants currently present in a room."""
    hub = ChatHub.get_instance()
    return {
        "room": room_id,
        "members": [p.to_dict() for p in hub.members(room_id)],
    }
