"""Pydantic schemas for shared files.

- FileMetadata: What the blob store records per stored file
- FileUploadResponse: Body returned by POST /files/upload/{room_id}
- FileType: Coarse category clients use to pick a renderer
"""
import time
import uuid
from enum import Enum

from pydantic import BaseModel, Field


class FileType(str, Enum):
    """Rendering category derived from the MIME type."""
    IMAGE = "image"
    PDF = "pdf"
    AUDIO = "audio"
    OTHER = "other"


class FileMetadata(BaseModel):
    """Stored blob record.

    ``stored_filename`` is ``{id}{ext}`` so uploads never collide on disk;
    ``original_filename`` is what downloads are served as.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Blob ID")
    room_id: str = Field(default="", description="Room the file was shared in")
    uploader_id: str = Field(default="", description="Participant who shared the file")
    original_filename: str = Field(..., description="Name as uploaded")
    stored_filename: str = Field(..., description="Name on disk")
    file_type: FileType = Field(..., description="Rendering category")
    mime_type: str = Field(..., description="Declared content type")
    size_bytes: int = Field(..., description="Content length")
    uploaded_at: float = Field(default_factory=time.time, description="Unix timestamp")


class FileUploadResponse(BaseModel):
    """Upload result, including the id of the room message announcing it."""
    id: str
    original_filename: str
    file_type: FileType
    mime_type: str
    size_bytes: int
    download_url: str
    message_id: str


def get_file_type(mime_type: str) -> FileType:
    """Categorize a MIME type.

    Examples:
        >>> get_file_type("image/jpeg")
        <FileType.IMAGE: 'image'>
        >>> get_file_type("text/plain")
        <FileType.OTHER: 'other'>
    """
    major, _, minor = mime_type.lower().partition("/")
    if major == "image":
        return FileType.IMAGE
    if major == "audio":
        return FileType.AUDIO
    if major == "application" and minor == "pdf":
        return FileType.PDF
    return FileType.OTHER
