"""History endpoints exposed to the CMS / HTTP layer.

Endpoints:
    GET  /chat/{room_id}/history - Paginated message history
    POST /chat/purge             - Retention cleanup of the message log
"""
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse

from roomwire.chat.errors import PersistenceError
from roomwire.chat.hub import ChatHub

logger = logging.getLogger(__name__)

router = APIRouter(tags=["history"])


@router.get("/chat/{room_id}/history")
async def get_message_history(
    room_id: str,
    before: Optional[float] = Query(None, description="Timestamp cursor (get messages before this time)"),
    beforeId: Optional[str] = Query(None, description="Id of the message at the cursor, breaks ts ties"),
    limit: Optional[int] = Query(None, ge=1, description="Number of messages to return"),
) -> JSONResponse:
    """Get paginated message history for a room.

    Clients fetch older messages by passing the ``ts`` of the oldest message
    they have as ``before`` and its ``id`` as ``beforeId``. ``limit`` is
    clamped to history.max_page_size.

    Returns:
        JSON with messages array (oldest first) and hasMore boolean.

    Example:
        GET /chat/general/history?limit=50
        GET /chat/general/history?before=1707321600.123&beforeId=9f1c...&limit=50
    """
    hub = ChatHub.get_instance()
    try:
        messages = hub.history(room_id, limit, before, beforeId)
        # Check if there are more messages before the oldest returned
        has_more = bool(messages) and bool(
            hub.history(room_id, 1, messages[0].ts, messages[0].id)
        )
    except PersistenceError as e:
        logger.error(f"[History] {e}")
        raise HTTPException(status_code=502, detail="Message history unavailable")

    return JSONResponse({
        "messages": [msg.model_dump(mode="json") for msg in messages],
        "hasMore": has_more,
    })


@router.post("/chat/purge")
async def purge_history(
    olderThanDays: Optional[float] = Query(None, ge=0, description="Delete messages older than this"),
) -> dict:
    """Delete logged messages older than ``olderThanDays`` (default: retention_days)."""
    hub = ChatHub.get_instance()
    days = olderThanDays if olderThanDays is not None else hub.config.history.retention_days
    try:
        deleted = hub.purge(days)
    except PersistenceError as e:
        logger.error(f"[History] {e}")
        raise HTTPException(status_code=502, detail="Retention purge failed")
    return {"deleted": deleted, "olderThanDays": days}
