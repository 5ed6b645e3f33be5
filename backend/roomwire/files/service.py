"""Blob store for shared files.

Stores bytes on disk under ``{upload_dir}/{uuid}{ext}`` and tracks metadata
in DuckDB. The chat engine only relies on ``store(bytes, content_type) ->
url``; the download route resolves the URL back to the file.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Optional

import duckdb

from roomwire.chat.errors import PersistenceError, ProtocolError

from .schemas import FileMetadata, get_file_type

logger = logging.getLogger(__name__)

DEFAULT_MAX_FILE_SIZE_BYTES = 20 * 1024 * 1024

_FIELDS = (
    "id",
    "room_id",
    "uploader_id",
    "original_filename",
    "stored_filename",
    "file_type",
    "mime_type",
    "size_bytes",
)
_COLUMNS = ", ".join(_FIELDS + ("uploaded_at",))


class BlobStore(ABC):
    """Contract of the blob store collaborator."""

    @abstractmethod
    def store(
        self,
        content: bytes,
        content_type: str,
        filename: str = "",
        room_id: str = "",
        uploader_id: str = "",
    ) -> str:
        """Persist ``content`` and return a URL that retrieves it.

        Raises:
            ProtocolError: The content exceeds the size limit.
            PersistenceError: The content could not be stored.
        """

    @abstractmethod
    def get_file(self, file_id: str) -> Optional[FileMetadata]:
        """Metadata of a stored blob, or None."""

    @abstractmethod
    def get_file_path(self, file_id: str) -> Optional[Path]:
        """Local path of a stored blob, or None."""

    def close(self) -> None:
        """Release resources."""


class FileBlobStore(BlobStore):
    """Local-disk blob store with DuckDB metadata."""

    def __init__(
        self,
        upload_dir: str = "uploads",
        db_path: str = "file_metadata.duckdb",
        public_base_url: str = "http://localhost:8000",
        max_size_bytes: int = DEFAULT_MAX_FILE_SIZE_BYTES,
    ) -> None:
        self._upload_dir = upload_dir
        self._db_path = db_path
        self.public_base_url = public_base_url.rstrip("/")
        self.max_size_bytes = max_size_bytes
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._ensure_upload_dir()
        self._initialize_db()

    def _ensure_upload_dir(self) -> None:
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS file_metadata (
                id VARCHAR PRIMARY KEY,
                room_id VARCHAR NOT NULL,
                uploader_id VARCHAR NOT NULL,
                original_filename VARCHAR NOT NULL,
                stored_filename VARCHAR NOT NULL,
                file_type VARCHAR NOT NULL,
                mime_type VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploaded_at TIMESTAMP NOT NULL
            )
        """)

    def download_url(self, file_id: str) -> str:
        return f"{self.public_base_url}/files/download/{file_id}"

    def store(
        self,
        content: bytes,
        content_type: str,
        filename: str = "",
        room_id: str = "",
        uploader_id: str = "",
    ) -> str:
        return self.download_url(
            self.save(content, content_type, filename, room_id, uploader_id).id
        )

    def save(
        self,
        content: bytes,
        content_type: str,
        filename: str = "",
        room_id: str = "",
        uploader_id: str = "",
    ) -> FileMetadata:
        """Write a blob to disk and record its metadata.

        Returns:
            FileMetadata of the stored file.

        Raises:
            ProtocolError: If the content exceeds the size limit.
            PersistenceError: If the disk write or metadata insert fails.
        """
        size_bytes = len(content)
        if size_bytes > self.max_size_bytes:
            raise ProtocolError(
                f"File size ({size_bytes} bytes) exceeds limit "
                f"({self.max_size_bytes} bytes)"
            )

        file_id = str(uuid.uuid4())
        ext = Path(filename).suffix.lower() if filename else ""
        stored_filename = f"{file_id}{ext}"
        file_path = Path(self._upload_dir) / stored_filename

        metadata = FileMetadata(
            id=file_id,
            room_id=room_id,
            uploader_id=uploader_id,
            original_filename=filename or stored_filename,
            stored_filename=stored_filename,
            file_type=get_file_type(content_type),
            mime_type=content_type,
            size_bytes=size_bytes,
        )

        try:
            file_path.write_bytes(content)
            self._get_connection().execute(
                f"INSERT INTO file_metadata ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    metadata.id,
                    metadata.room_id,
                    metadata.uploader_id,
                    metadata.original_filename,
                    metadata.stored_filename,
                    metadata.file_type.value,
                    metadata.mime_type,
                    metadata.size_bytes,
                    datetime.fromtimestamp(metadata.uploaded_at),
                ],
            )
        except (OSError, duckdb.Error) as e:
            file_path.unlink(missing_ok=True)
            raise PersistenceError(f"could not store {filename or file_id}: {e}") from e

        logger.info(f"[Files] Stored {metadata.original_filename} as {file_path} ({size_bytes} bytes)")
        return metadata

    def get_file(self, file_id: str) -> Optional[FileMetadata]:
        row = self._get_connection().execute(
            f"SELECT {_COLUMNS} FROM file_metadata WHERE id = ?", [file_id]
        ).fetchone()
        if row is None:
            return None
        return FileMetadata(**dict(zip(_FIELDS, row[:-1])), uploaded_at=row[-1].timestamp())

    def get_file_path(self, file_id: str) -> Optional[Path]:
        """Path of the stored blob, or None if unknown or missing on disk."""
        metadata = self.get_file(file_id)
        if metadata is None:
            return None
        file_path = Path(self._upload_dir) / metadata.stored_filename
        return file_path if file_path.exists() else None

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None
