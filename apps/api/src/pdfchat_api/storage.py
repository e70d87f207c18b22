from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path, PurePath
import re
import shutil
import uuid

from pdfchat_api.errors import StorageError

logger = logging.getLogger(__name__)

_DOCUMENT_ID_PATTERN = re.compile(r"^[a-fA-F0-9-]{36}$")
_UNSAFE_CHARACTERS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class StoredFile:
    document_id: str
    filename: str
    file_path: str
    file_size: int


def sanitize_filename(filename: str) -> str:
    # strip any directory part, POSIX or Windows
    sanitized = PurePath(filename.replace("\\", "/")).name
    sanitized = _UNSAFE_CHARACTERS.sub("_", sanitized)
    if sanitized.startswith("."):
        sanitized = "_" + sanitized[1:]

    if len(sanitized) > 255:
        stem, dot, extension = sanitized.rpartition(".")
        if dot and stem:
            suffix = f".{extension}"
            sanitized = stem[: 250 - len(suffix)] + suffix
        else:
            sanitized = sanitized[:255]

    if not sanitized or sanitized.lower() == ".pdf":
        return "document.pdf"
    return sanitized


class FileStorage:
    """Stores each upload under ``<upload_dir>/<document id>/``."""

    def __init__(self, upload_dir: Path) -> None:
        self._upload_root = upload_dir.resolve()

    def _document_dir(self, document_id: str) -> Path:
        if not _DOCUMENT_ID_PATTERN.match(document_id):
            raise StorageError("Invalid document ID format.")
        return self._within_root(self._upload_root / document_id)

    def _within_root(self, path: Path) -> Path:
        resolved = path.resolve()
        if not resolved.is_relative_to(self._upload_root):
            raise StorageError("Invalid file path detected.")
        return resolved

    def store(self, filename: str, content: bytes) -> StoredFile:
        if not content:
            raise StorageError("Failed to store empty file.")

        sanitized = sanitize_filename(filename)
        document_id = str(uuid.uuid4())
        document_dir = self._document_dir(document_id)
        destination = self._within_root(document_dir / sanitized)

        try:
            document_dir.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to store file: {sanitized}") from exc

        logger.info("Stored file %s with document id %s", sanitized, document_id)
        return StoredFile(
            document_id=document_id,
            filename=sanitized,
            file_path=str(destination),
            file_size=len(content),
        )

    def load(self, document_id: str, filename: str) -> Path:
        path = self._within_root(self._document_dir(document_id) / sanitize_filename(filename))
        if not path.exists():
            raise StorageError(f"File not found: {path.name}")
        return path

    def delete(self, document_id: str) -> None:
        document_dir = self._document_dir(document_id)
        if not document_dir.exists():
            return

        try:
            shutil.rmtree(document_dir)
        except OSError as exc:
            raise StorageError(f"Failed to delete document: {document_id}") from exc
        logger.info("Deleted document directory %s", document_id)
