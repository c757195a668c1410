"""Attachment storage service.

Chat attachments arrive inline in send-message events as base64 data URLs.
The bytes are written to the upload directory under a name derived from the
client filename; only that stored name ends up in the message record.

Hardening:
    - Path components and unsafe characters are stripped from client names
    - Existing files are never overwritten (a random suffix is added)
    - Payloads above the configured size limit are rejected
"""
import base64
import binascii
import logging
import re
import threading
import uuid
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Default limit, overridden by storage.max_attachment_bytes
MAX_ATTACHMENT_BYTES = 20 * 1024 * 1024

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]")


class AttachmentTooLarge(ValueError):
    """Attachment exceeds the configured size limit."""


def decode_data_url(data: str) -> bytes:
    """Decode a ``data:<mime>;base64,<payload>`` URL (or bare base64).

    Raises:
        ValueError: If the payload is not valid base64.
    """
    payload = data.split(",", 1)[1] if data.startswith("data:") and "," in data else data
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"attachment is not valid base64: {e}")


def sanitize_filename(filename: str) -> str:
    """Reduce a client-supplied filename to a safe basename."""
    name = Path(filename.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("", name).strip().lstrip(".")
    return name or "attachment"


class AttachmentStore:
    """Stores attachment bytes on disk.

    Args:
        upload_dir: Directory receiving the files (created if missing).
        max_bytes: Largest accepted attachment.
    """

    _instance: Optional["AttachmentStore"] = None

    def __init__(self, upload_dir: str = "uploads", max_bytes: int = MAX_ATTACHMENT_BYTES) -> None:
        self.upload_dir = Path(upload_dir)
        self.max_bytes = max_bytes
        # Guards the exists-check/write pair against concurrent saves
        self._lock = threading.Lock()
        self._ensure_upload_dir()

    @classmethod
    def get_instance(cls, upload_dir: Optional[str] = None, max_bytes: Optional[int] = None) -> "AttachmentStore":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir or "uploads", max_bytes or MAX_ATTACHMENT_BYTES)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    def _ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def _unique_name(self, name: str) -> str:
        if not (self.upload_dir / name).exists():
            return name
        stem, ext = Path(name).stem, Path(name).suffix
        while True:
            candidate = f"{stem}-{uuid.uuid4().hex[:8]}{ext}"
            if not (self.upload_dir / candidate).exists():
                return candidate

    def save(self, name: str, content: bytes) -> str:
        """Write *content* under a name derived from *name*.

        Args:
            name: Client-supplied filename.
            content: Attachment bytes.

        Returns:
            The stored filename (relative to the upload directory).

        Raises:
            AttachmentTooLarge: If the content exceeds the size limit.
            OSError: If the write fails.
        """
        if len(content) > self.max_bytes:
            raise AttachmentTooLarge(
                f"Attachment size ({len(content)} bytes) exceeds limit ({self.max_bytes} bytes)"
            )

        with self._lock:
            stored_name = self._unique_name(sanitize_filename(name))
            file_path = self.upload_dir / stored_name
            file_path.write_bytes(content)

        logger.info(f"Saved attachment: {file_path} ({len(content)} bytes)")
        return stored_name

    def delete(self, stored_name: str) -> None:
        """Remove a stored attachment. Missing files are ignored."""
        with self._lock:
            (self.upload_dir / sanitize_filename(stored_name)).unlink(missing_ok=True)
        logger.info(f"Deleted attachment: {stored_name}")
