# functions/utils/file_text_extraction.py
"""
Raw text extraction from uploaded CV files.

Supported:
- PDF  (application/pdf)            via PyMuPDF
- DOCX (wordprocessingml.document)  via python-docx
- TXT  (text/plain)

Legacy .doc files are rejected with a message asking for DOCX.
"""

from __future__ import annotations

import io

import docx
import fitz  # PyMuPDF
import structlog

from functions.utils.errors import EmptyDocument, UnsupportedFileType

logger = structlog.get_logger(__name__).bind(module="file_text_extraction")

PDF_MIME = "application/pdf"
DOC_MIME = "application/msword"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_MIME = "text/plain"

SUPPORTED_MIME_TYPES = (PDF_MIME, DOCX_MIME, TEXT_MIME)

_EXTENSION_TO_MIME = {
    ".pdf": PDF_MIME,
    ".docx": DOCX_MIME,
    ".doc": DOC_MIME,
    ".txt": TEXT_MIME,
}


def guess_mime_type(filename: str | None, declared: str | None = None) -> str:
    """Prefer the declared content type unless it is generic; fall back to the extension."""
    if declared and declared not in ("application/octet-stream", ""):
        return declared.split(";")[0].strip().lower()
    name = (filename or "").lower()
    for ext, mime in _EXTENSION_TO_MIME.items():
        if name.endswith(ext):
            return mime
    return declared or "application/octet-stream"


def _extract_pdf(content: bytes) -> str:
    try:
        with fitz.open(stream=content, filetype="pdf") as pdf_document:
            return "\n".join(page.get_text() for page in pdf_document)
    except (fitz.FileDataError, RuntimeError) as exc:
        raise EmptyDocument(f"PDF extraction failed: {exc}") from exc


def _extract_docx(content: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(content))
    except Exception as exc:
        # python-docx raises on legacy .doc content renamed to .docx
        raise UnsupportedFileType(
            "This does not look like a DOCX file. Only DOCX format is supported; "
            "please save the document as Word Document (.docx) and upload again."
        ) from exc

    lines = [p.text for p in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            lines.append(" | ".join(cell.text.strip() for cell in row.cells))
    return "\n".join(lines)


def extract_text_from_bytes(content: bytes, mime_type: str) -> str:
    """Return the text of an uploaded CV or raise UnsupportedFileType / EmptyDocument."""
    if mime_type == DOC_MIME:
        raise UnsupportedFileType(
            "Legacy DOC format is not supported. Please save your document as DOCX "
            "format and upload again."
        )

    if mime_type == PDF_MIME:
        text = _extract_pdf(content)
    elif mime_type == DOCX_MIME:
        text = _extract_docx(content)
    elif mime_type == TEXT_MIME:
        text = content.decode("utf-8", errors="replace")
    else:
        raise UnsupportedFileType(
            f"Unsupported file type: {mime_type}. Only PDF, DOCX, and TXT files are supported."
        )

    text = (text or "").strip()
    if not text:
        raise EmptyDocument(
            "No text could be extracted from the file. The file may be empty or corrupted."
        )

    logger.info("file_text_extracted", mime_type=mime_type, chars=len(text))
    return text


__all__ = [
    "PDF_MIME",
    "DOC_MIME",
    "DOCX_MIME",
    "TEXT_MIME",
    "SUPPORTED_MIME_TYPES",
    "guess_mime_type",
    "extract_text_from_bytes",
]
