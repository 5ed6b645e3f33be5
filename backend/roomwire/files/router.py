"""FastAPI router for file sharing endpoints."""
import logging

from fastapi import APIRouter, File, Header, HTTPException, UploadFile
from fastapi.responses import FileResponse

from roomwire.chat.errors import AuthError, PersistenceError, ProtocolError, RoomAccessError
from roomwire.chat.hub import ChatHub
from roomwire.chat.schemas import Participant

from .schemas import FileUploadResponse, get_file_type

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["files"])


@router.post("/upload/{room_id}", response_model=FileUploadResponse)
async def upload_file(
    room_id: str,
    file: UploadFile = File(...),
    authorization: str = Header("", description="Bearer credential of the uploader"),
):
    """Upload a file and announce it to a chat room.

    The uploader must currently be present in the room. The file message is
    logged and broadcast like a text message.

    Raises:
        HTTPException 401: Missing or invalid credential
        HTTPException 403: Uploader is not present in the room
        HTTPException 413: File exceeds the size limit
        HTTPException 502: Blob store failure
    """
    hub = ChatHub.get_instance()

    scheme, _, credential = authorization.partition(" ")
    if scheme.lower() != "bearer" or not credential.strip():
        raise HTTPException(status_code=401, detail="Bearer credential required")
    try:
        identity = await hub.gateway.verifier.verify(credential.strip())
    except AuthError as e:
        raise HTTPException(status_code=401, detail=str(e))

    content = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    filename = file.filename or "unnamed"
    participant = Participant(identity.participant_id, identity.display_name)

    try:
        result = await hub.share_file(participant, room_id, content, mime_type, filename)
    except RoomAccessError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ProtocolError as e:
        raise HTTPException(status_code=413, detail=str(e))
    except PersistenceError as e:
        logger.error(f"File upload failed: {e}")
        raise HTTPException(status_code=502, detail="Upload failed")

    message = result.message
    logger.info(
        f"File uploaded: {filename} ({len(content)} bytes) to room {room_id}"
    )
    return FileUploadResponse(
        id=message.fileUrl.rsplit("/", 1)[-1],
        original_filename=filename,
        file_type=get_file_type(mime_type),
        mime_type=mime_type,
        size_bytes=len(content),
        download_url=message.fileUrl,
        message_id=message.id,
    )


@router.get("/download/{file_id}")
async def download_file(file_id: str):
    """Download a shared file by ID.

    Raises:
        HTTPException 404: If file not found
    """
    blobs = ChatHub.get_instance().blobs

    metadata = blobs.get_file(file_id)
    if not metadata:
        raise HTTPException(status_code=404, detail="File not found")

    file_path = blobs.get_file_path(file_id)
    if not file_path:
        raise HTTPException(status_code=404, detail="File not found on disk")

    return FileResponse(
        path=file_path,
        filename=metadata.original_filename,
        media_type=metadata.mime_type,
    )
