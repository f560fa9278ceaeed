"""
Attachment storage for teacher attachments and student answer files.

Files are addressed by a relative path such as
``{student}/{exam}/{question}/{filename}`` or
``teacher_attachments/{exam}/{timestamp}_{filename}``; only the public URL
is kept in the database. The local backend writes under ``settings.upload_dir``
which main.py serves at ``/uploads``.
"""
import logging
import os
import posixpath
import time
from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

from examhost.config import settings
from examhost.errors import StorageError

logger = logging.getLogger(__name__)


def safe_filename(filename: str) -> str:
    """Strip any directory part a client may have sent with a filename."""
    name = os.path.basename((filename or "").replace("\\", "/")).strip()
    return name or "upload"


def answer_file_path(student_identifier: str, exam_id: int, question_id: int, filename: str) -> str:
    return f"{student_identifier}/{exam_id}/{question_id}/{safe_filename(filename)}"


def attachment_path(exam_id: int, filename: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"teacher_attachments/{exam_id}/{timestamp_ms}_{safe_filename(filename)}"


class FileStorage(ABC):
    """Upload-by-path and public URL lookup."""

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Store ``data`` at ``path``. Raises StorageError on failure."""

    @abstractmethod
    def public_url(self, path: str) -> str:
        pass

    @abstractmethod
    def delete(self, path: str) -> None:
        """Remove ``path`` if present. Raises StorageError on failure."""


class LocalFileStorage(FileStorage):
    """Stores files on the local disk. Existing files are never overwritten."""

    def __init__(self, root_dir: str, base_url: str):
        self.root_dir = os.path.abspath(root_dir)
        self.base_url = base_url.rstrip("/")
        os.makedirs(self.root_dir, exist_ok=True)

    def _resolve(self, path: str) -> str:
        normalized = posixpath.normpath(path.lstrip("/"))
        if normalized.startswith("..") or normalized in ("", "."):
            raise StorageError(f"Invalid storage path: {path}")
        full_path = os.path.abspath(os.path.join(self.root_dir, *normalized.split("/")))
        if os.path.commonpath([self.root_dir, full_path]) != self.root_dir:
            raise StorageError(f"Invalid storage path: {path}")
        return full_path

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        full_path = self._resolve(path)
        max_bytes = settings.max_upload_size_mb * 1024 * 1024
        if len(data) > max_bytes:
            raise StorageError(f"File exceeds {settings.max_upload_size_mb} MB limit: {path}")
        try:
            os.makedirs(os.path.dirname(full_path), exist_ok=True)
            with open(full_path, "xb") as f:
                f.write(data)
        except FileExistsError:
            raise StorageError(f"The resource already exists: {path}")
        except OSError as e:
            raise StorageError(f"Failed to store {path}: {e}")
        logger.debug("Stored %s (%d bytes)", path, len(data))

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{quote(path.lstrip('/'))}"

    def delete(self, path: str) -> None:
        full_path = self._resolve(path)
        try:
            os.remove(full_path)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}")
        logger.debug("Deleted %s", path)


_storage: Optional[FileStorage] = None


def get_storage() -> FileStorage:
    """FastAPI dependency returning the shared storage backend."""
    global _storage
    if _storage is None:
        _storage = LocalFileStorage(settings.upload_dir, settings.public_base_url)
    return _storage
