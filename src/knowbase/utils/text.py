"""Text helpers: cleanup of extracted document text and accent folding."""

from __future__ import annotations

import re
import unicodedata

from knowbase.utils.mojibake import fix_mojibake

# Escape sequences left behind by exporters that serialized text twice
_LITERAL_ESCAPES = re.compile(r"\\[nrt]")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_SPACE = re.compile("[ \t\u00a0]+")
_BLANK_LINES = re.compile(r"\n\s*\n+")
# A line that does not end a sentence, followed by one starting in lower case
_BROKEN_LINE = re.compile(r"(?<=[^\s.!?:;])\n(?=[a-záéíóúüñ])")


def collapse_control_characters(text: str) -> str:
    text = _LITERAL_ESCAPES.sub(lambda m: "\n" if m.group(0) in ("\\n", "\\r") else " ", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    return _CONTROL_CHARS.sub(" ", text)


def join_broken_lines(text: str) -> str:
    """Join lines that were wrapped in the middle of a sentence."""
    return _BROKEN_LINE.sub(" ", text)


def clean_text(text: str) -> str:
    """Normalize raw document text before segmentation.

    Blank-line paragraph boundaries are preserved; everything else is
    collapsed to single spaces.
    """
    if not text:
        return ""
    text = collapse_control_characters(text)
    text = fix_mojibake(text)
    text = "\n".join(_HORIZONTAL_SPACE.sub(" ", line).strip() for line in text.split("\n"))
    text = _BLANK_LINES.sub("\n\n", text)
    return join_broken_lines(text).strip()


def fold_accents(text: str) -> str:
    """Lower-case and strip diacritics ("Año" -> "ano")."""
    decomposed = unicodedata.normalize("NFD", text.lower())
    return "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")


def slugify(name: str) -> str:
    """Folder-safe name for a stage ("Etapa 1" -> "etapa-1")."""
    slug = re.sub(r"[^a-z0-9]", "-", fold_accents(name))
    return re.sub(r"-+", "-", slug).strip("-")
