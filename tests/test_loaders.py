"""Tests for document loaders."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from knowbase.errors import ValidationError
from knowbase.ingestion.loaders import decode_text, detect_type, extract_text, iter_pdf_pages, preview


def _mock_pdf(mock_fitz: MagicMock, texts: list) -> MagicMock:
    pages = []
    for text in texts:
        page = MagicMock()
        page.get_text.return_value = text
        pages.append(page)

    mock_doc = MagicMock()
    mock_doc.__len__ = MagicMock(return_value=len(pages))
    mock_doc.__getitem__ = MagicMock(side_effect=lambda index: pages[index])
    mock_fitz.open.return_value = mock_doc
    return mock_doc


class TestDetectType:
    """Test detect_type function."""

    def test_supported_extensions(self) -> None:
        """Should map txt, md and pdf (any case)."""
        assert detect_type("notas.txt") == "txt"
        assert detect_type("README.md") == "txt"
        assert detect_type("Manual.PDF") == "pdf"

    def test_unsupported_extension(self) -> None:
        """Should reject unsupported file types."""
        with pytest.raises(ValidationError, match="Unsupported file type"):
            detect_type("informe.docx")

    def test_missing_extension(self) -> None:
        """Should reject names without an extension."""
        with pytest.raises(ValidationError):
            detect_type("archivo")


class TestDecodeText:
    """Test decode_text function."""

    def test_utf8(self) -> None:
        """Should decode UTF-8."""
        assert decode_text("canción".encode("utf-8")) == "canción"

    def test_strips_bom(self) -> None:
        """Should drop a UTF-8 byte order mark."""
        assert decode_text(b"\xef\xbb\xbfhola") == "hola"

    def test_cp1252_fallback(self) -> None:
        """Should fall back to cp1252 for legacy files."""
        assert decode_text(b"caf\xe9") == "café"


class TestIterPdfPages:
    """Test iter_pdf_pages function."""

    @patch("knowbase.ingestion.loaders.fitz")
    def test_pages_separated_by_blank_line(self, mock_fitz: MagicMock) -> None:
        """Should yield each non-empty page followed by a paragraph break."""
        mock_doc = _mock_pdf(mock_fitz, ["Página uno", "   ", "Página dos\n"])

        pages = list(iter_pdf_pages(b"%PDF-1.4"))

        assert pages == ["Página uno\n\n", "Página dos\n\n"]
        mock_fitz.open.assert_called_once_with(stream=b"%PDF-1.4", filetype="pdf")
        mock_doc.close.assert_called_once()

    @patch("knowbase.ingestion.loaders.fitz")
    def test_unreadable_pdf(self, mock_fitz: MagicMock) -> None:
        """Should raise ValidationError when the PDF cannot be opened."""
        mock_fitz.open.side_effect = RuntimeError("cannot open broken document")

        with pytest.raises(ValidationError, match="Could not open PDF"):
            list(iter_pdf_pages(b"not a pdf"))


class TestExtractText:
    """Test extract_text function."""

    def test_text_document(self) -> None:
        """Should decode text uploads."""
        assert extract_text("hola".encode("utf-8"), "txt") == "hola"

    @patch("knowbase.ingestion.loaders.fitz")
    def test_pdf_document(self, mock_fitz: MagicMock) -> None:
        """Should join PDF pages."""
        _mock_pdf(mock_fitz, ["Uno", "Dos"])
        assert extract_text(b"%PDF", "pdf") == "Uno\n\nDos\n\n"

    def test_unknown_type(self) -> None:
        """Should reject unknown document types."""
        with pytest.raises(ValidationError):
            extract_text(b"x", "docx")


def test_preview_collapses_and_truncates() -> None:
    """Should produce a single-line snippet."""
    assert preview("uno\n\ndos   tres", limit=7) == "uno dos"
