"""
Source document ingestion.

Reads an uploaded file from local storage, extracts and normalises its
text and stores it on SourceDocument.extracted_text, where Phase 1 picks it
up. Runs on the file-ingestion queue, separate from generation jobs.
"""
import logging
import re
import zipfile
import xml.etree.ElementTree as ET
from pathlib import Path

import pdfplumber

from core.exceptions import DataIntegrityError, IngestionError, UnsupportedFormatError
from models import SourceDocument
from services.event_channel import EVENT_FILE_PROCESSED
from services.report_store import as_uuid

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS = {".txt", ".md", ".csv", ".json", ".xml"}
# Office formats without an extractor here; stored as text they would be zip noise
UNSUPPORTED_EXTENSIONS = {".doc", ".pptx", ".ppt", ".xlsx", ".xls", ".odt", ".odp", ".ods"}
BINARY_SNIFF_BYTES = 8192
# Tells the UI which file list to refresh
SOURCE_DOCUMENT_TYPE = "report_file"
WORD_NAMESPACE = "{http://schemas.openxmlformats.org/wordprocessingml/2006/main}"

# A line break inside a sentence: previous char is not terminal punctuation
# and the next line starts lowercase or with a digit
_SOFT_BREAK = re.compile(r"([^.:\n])\n(?=[a-z0-9])")
_SPACES = re.compile(r"[ \t]+")
_BLANK_LINES = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = _SOFT_BREAK.sub(r"\1 ", text)
    text = _SPACES.sub(" ", text)
    text = _BLANK_LINES.sub("\n\n", text)
    return text.strip()


def extract_pdf_text(path: Path) -> str:
    pages = []
    with pdfplumber.open(str(path)) as pdf:
        for page_num, page in enumerate(pdf.pages):
            try:
                text = page.extract_text()
            except Exception as e:
                logger.warning(f"Could not extract page {page_num + 1} of {path.name}: {e}")
                continue
            if text:
                pages.append(text)
    return "\n\n".join(pages)


def extract_docx_text(path: Path) -> str:
    """DOCX files are ZIP archives; the body lives in word/document.xml."""
    with zipfile.ZipFile(path, "r") as archive:
        try:
            xml_bytes = archive.read("word/document.xml")
        except KeyError as e:
            raise IngestionError(f"{path.name} is not a Word document") from e

    root = ET.fromstring(xml_bytes)
    paragraphs = []
    for paragraph in root.iter(f"{WORD_NAMESPACE}p"):
        runs = [node.text or "" for node in paragraph.iter(f"{WORD_NAMESPACE}t")]
        paragraphs.append("".join(runs))
    return "\n".join(paragraphs)


def decode_plain_text(path: Path) -> str:
    """Unknown extension: accept it only if it does not look like a binary file."""
    data = path.read_bytes()
    if b"\x00" in data[:BINARY_SNIFF_BYTES] or zipfile.is_zipfile(path):
        raise UnsupportedFormatError(f"{path.name} is a binary file with no text extractor")
    return data.decode("utf-8", errors="replace")


def extract_text(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in UNSUPPORTED_EXTENSIONS:
        raise UnsupportedFormatError(f"Unsupported document type {suffix}: {path.name}")
    try:
        if suffix in TEXT_EXTENSIONS:
            return path.read_text(encoding="utf-8")
        if suffix == ".pdf":
            return extract_pdf_text(path)
        if suffix == ".docx":
            return extract_docx_text(path)
        return decode_plain_text(path)
    except IngestionError:
        raise
    except (OSError, UnicodeDecodeError, zipfile.BadZipFile, ET.ParseError) as e:
        raise IngestionError(f"Could not read {path.name}: {e}") from e
    except Exception as e:
        # pdfplumber raises its own parser errors
        raise IngestionError(f"Could not extract text from {path.name}: {e}") from e


def resolve_storage_path(storage_root: str, path: str) -> Path:
    """Resolve ``path`` under ``storage_root``; anything outside it is rejected."""
    root = Path(storage_root).resolve()
    candidate = (root / path).resolve()
    if candidate != root and root not in candidate.parents:
        raise IngestionError(f"Path escapes storage root: {path}")
    return candidate


class FileIngestionService:
    def __init__(self, session_factory, events, storage_root: str):
        self.session_factory = session_factory
        self.events = events
        self.storage_root = storage_root

    def ingest(self, file_id: str, path: str, user_id: str) -> int:
        """Extract and store the document text. Returns the stored character count."""
        full_path = resolve_storage_path(self.storage_root, path)
        if not full_path.is_file():
            raise IngestionError(f"File not found: {path}")

        text = normalize_text(extract_text(full_path))
        if not text:
            logger.warning(f"No text extracted from {full_path.name} (file {file_id})")

        db = self.session_factory()
        try:
            document = db.get(SourceDocument, as_uuid(file_id))
            if document is None:
                raise DataIntegrityError(f"Source document {file_id} not found")
            document.extracted_text = text
            report_id = str(document.report_id)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(f"Ingested {full_path.name} for document {file_id}: {len(text)} characters")
        self.events.publish(user_id, EVENT_FILE_PROCESSED, {
            "fileId": str(file_id),
            "type": SOURCE_DOCUMENT_TYPE,
            "reportId": report_id,
            "characters": len(text),
        })
        return len(text)
