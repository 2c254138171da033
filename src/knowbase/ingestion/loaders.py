"""Raw text extraction for uploaded documents.

Uses PyMuPDF (fitz) for PDF text extraction and plain decoding for text
files.
"""

from __future__ import annotations

import logging
from pathlib import PurePath
from typing import Dict, Iterator

import fitz  # PyMuPDF

from knowbase.errors import ValidationError

LOGGER = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS: Dict[str, str] = {
    ".txt": "txt",
    ".md": "txt",
    ".pdf": "pdf",
}


def detect_type(original_name: str) -> str:
    """Map a file name to its document type, rejecting unsupported ones."""
    suffix = PurePath(original_name).suffix.lower()
    try:
        return SUPPORTED_EXTENSIONS[suffix]
    except KeyError:
        supported = ", ".join(sorted(SUPPORTED_EXTENSIONS))
        raise ValidationError(
            f"Unsupported file type {suffix or '(none)'!r} for {original_name}; use one of {supported}"
        ) from None


def decode_text(data: bytes) -> str:
    """Decode a text upload, falling back to cp1252 for legacy exports."""
    if data.startswith(b"\xef\xbb\xbf"):
        data = data[3:]
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        LOGGER.debug("Upload is not valid UTF-8, decoding as cp1252")
        return data.decode("cp1252", errors="replace")


def iter_pdf_pages(data: bytes) -> Iterator[str]:
    """Yield the text of each PDF page.

    Pages are separated by a blank line so paragraph segmentation never
    merges the end of one page with the start of the next.
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as exc:
        raise ValidationError(f"Could not open PDF: {exc}") from exc

    try:
        for index in range(len(doc)):
            try:
                text = doc[index].get_text() or ""
            except Exception as exc:  # pragma: no cover - damaged page
                LOGGER.warning("Failed to read page %s: %s", index, exc)
                continue
            if text.strip():
                yield text.rstrip() + "\n\n"
    finally:
        doc.close()


def extract_text(data: bytes, doc_type: str) -> str:
    if doc_type == "pdf":
        return "".join(iter_pdf_pages(data))
    if doc_type == "txt":
        return decode_text(data)
    raise ValidationError(f"Unsupported document type: {doc_type}")


def preview(text: str, limit: int = 180) -> str:
    """Single-line snippet for listings."""
    return " ".join(text.split())[:limit]
