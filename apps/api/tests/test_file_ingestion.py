"""Source document ingestion: text extraction, normalisation, storage."""
import zipfile

import pytest

from conftest import SOURCE, USER_ID, FakeEventChannel
from core.exceptions import DataIntegrityError, IngestionError, UnsupportedFormatError, is_retryable
from models import SourceDocument
from services.file_ingestion import (
    FileIngestionService,
    extract_text,
    normalize_text,
    resolve_storage_path,
)

DOCUMENT_XML = (
    '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
    '<w:document xmlns:w="http://schemas.openxmlformats.org/wordprocessingml/2006/main">'
    "<w:body>"
    "<w:p><w:r><w:t>First </w:t></w:r><w:r><w:t>paragraph.</w:t></w:r></w:p>"
    "<w:p><w:r><w:t>Second paragraph.</w:t></w:r></w:p>"
    "</w:body></w:document>"
)


def _write_docx(path):
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("[Content_Types].xml", "<Types/>")
        archive.writestr("word/document.xml", DOCUMENT_XML)


def _document(session_factory, report_id):
    db = session_factory()
    try:
        doc = SourceDocument(report_id=report_id, filename="answer.docx", simulation_method=SOURCE)
        db.add(doc)
        db.commit()
        return doc.id
    finally:
        db.close()


def test_normalize_joins_soft_breaks():
    text = "I asked the team\nfor data.\nThen   I decided.\n\n\n\nNext section"
    assert normalize_text(text) == "I asked the team for data.\nThen I decided.\n\nNext section"


def test_docx_paragraphs(tmp_path):
    path = tmp_path / "answer.docx"
    _write_docx(path)
    assert extract_text(path) == "First paragraph.\nSecond paragraph."


def test_corrupt_docx_is_an_ingestion_error(tmp_path):
    path = tmp_path / "broken.docx"
    path.write_bytes(b"not a zip")
    with pytest.raises(IngestionError):
        extract_text(path)


@pytest.mark.parametrize("name", ["deck.pptx", "scores.xlsx", "answer.odt"])
def test_office_formats_without_extractor_are_rejected(tmp_path, name):
    path = tmp_path / name
    _write_docx(path)
    with pytest.raises(UnsupportedFormatError) as excinfo:
        extract_text(path)
    assert not is_retryable(excinfo.value)


def test_unknown_extension_binary_is_rejected(tmp_path):
    archive = tmp_path / "bundle.bin"
    _write_docx(archive)
    with pytest.raises(UnsupportedFormatError):
        extract_text(archive)

    blob = tmp_path / "image.dat"
    blob.write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    with pytest.raises(UnsupportedFormatError):
        extract_text(blob)


def test_unknown_extension_text_is_decoded(tmp_path):
    path = tmp_path / "notes.log"
    path.write_bytes("Interview notes: caf\u00e9 meeting".encode("utf-8"))
    assert extract_text(path) == "Interview notes: caf\u00e9 meeting"


def test_path_outside_storage_root_is_rejected(tmp_path):
    with pytest.raises(IngestionError):
        resolve_storage_path(str(tmp_path), "../../etc/passwd")


def test_ingest_stores_text_and_announces_it(tmp_path, session_factory, report_id):
    (tmp_path / "uploads").mkdir()
    _write_docx(tmp_path / "uploads" / "answer.docx")
    file_id = _document(session_factory, report_id)
    events = FakeEventChannel()

    characters = FileIngestionService(session_factory, events, str(tmp_path)).ingest(
        str(file_id), "uploads/answer.docx", USER_ID
    )

    db = session_factory()
    try:
        stored = db.get(SourceDocument, file_id).extracted_text
    finally:
        db.close()
    assert stored == "First paragraph.\nSecond paragraph."
    assert characters == len(stored)
    [payload] = events.of_type("file-processed")
    assert payload == {
        "fileId": str(file_id),
        "type": "report_file",
        "reportId": str(report_id),
        "characters": characters,
    }


def test_ingest_unknown_document(tmp_path, session_factory):
    (tmp_path / "a.txt").write_text("hello", encoding="utf-8")
    service = FileIngestionService(session_factory, FakeEventChannel(), str(tmp_path))
    with pytest.raises(DataIntegrityError):
        service.ingest("0b7c7a8e-5f5c-4d0e-9d6a-3f1f2a7d9e10", "a.txt", USER_ID)


def test_ingest_missing_file(tmp_path, session_factory, report_id):
    service = FileIngestionService(session_factory, FakeEventChannel(), str(tmp_path))
    with pytest.raises(IngestionError):
        service.ingest(str(_document(session_factory, report_id)), "missing.pdf", USER_ID)
