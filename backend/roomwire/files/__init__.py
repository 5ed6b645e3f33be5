"""File sharing for chat rooms.

Uploaded bytes are stored on local disk under a UUID-based name and metadata
is tracked in DuckDB. A shared file is announced to the room as a ``file``
message carrying its download URL.

Supported file types:
- Images: jpg, jpeg, png, gif, webp, svg
- Documents: pdf
- Audio: mp3, wav, ogg, m4a, flac
- Any file under the configured size limit
"""
