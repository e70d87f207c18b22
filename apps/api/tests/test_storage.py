from pathlib import Path
import uuid

import pytest

from pdfchat_api.errors import StorageError
from pdfchat_api.storage import FileStorage, sanitize_filename


def test_store_writes_file_under_document_directory(tmp_path: Path) -> None:
    storage = FileStorage(tmp_path / "uploads")

    stored = storage.store("Quarterly Report (v2).pdf", b"%PDF-1.4 data")

    assert uuid.UUID(stored.document_id)
    assert stored.filename == "Quarterly_Report__v2_.pdf"
    assert stored.file_size == len(b"%PDF-1.4 data")
    path = Path(stored.file_path)
    assert path.read_bytes() == b"%PDF-1.4 data"
    assert path.parent.name == stored.document_id
    assert storage.load(stored.document_id, "Quarterly Report (v2).pdf") == path


def test_sanitize_filename_strips_directories_and_hidden_prefix() -> None:
    assert sanitize_filename("../../etc/passwd.pdf") == "passwd.pdf"
    assert sanitize_filename("C:\\Users\\me\\doc.pdf") == "doc.pdf"
    assert sanitize_filename(".hidden.pdf") == "_hidden.pdf"
    assert sanitize_filename(".pdf") == "_pdf"
    assert sanitize_filename("") == "document.pdf"


def test_sanitize_filename_truncates_long_names_keeping_extension() -> None:
    sanitized = sanitize_filename("a" * 400 + ".pdf")

    assert sanitized.endswith(".pdf")
    assert len(sanitized) <= 255


def test_delete_removes_document_directory_and_ignores_missing(tmp_path: Path) -> None:
    storage = FileStorage(tmp_path / "uploads")
    stored = storage.store("manual.pdf", b"content")

    storage.delete(stored.document_id)
    storage.delete(stored.document_id)

    assert not Path(stored.file_path).exists()
    with pytest.raises(StorageError, match="File not found"):
        storage.load(stored.document_id, "manual.pdf")


def test_invalid_document_id_is_rejected(tmp_path: Path) -> None:
    storage = FileStorage(tmp_path / "uploads")

    with pytest.raises(StorageError, match="Invalid document ID"):
        storage.delete("../../outside")


def test_empty_content_is_rejected(tmp_path: Path) -> None:
    storage = FileStorage(tmp_path / "uploads")

    with pytest.raises(StorageError):
        storage.store("empty.pdf", b"")
