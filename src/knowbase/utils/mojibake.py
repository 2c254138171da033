"""Repair table for UTF-8 text that was decoded as Latin-1/cp1252.

Uploaded documents regularly arrive with Spanish accents mangled
("informaciÃ³n" instead of "información"). The table is kept apart from
the rest of the text pipeline so it can be extended and tested on its own.
"""

from __future__ import annotations

import re
from typing import Dict

MOJIBAKE_TABLE: Dict[str, str] = {
    # Lower-case vowels, ñ and ü
    "Ã¡": "á",
    "Ã©": "é",
    "Ã\u00ad": "í",
    "Ã³": "ó",
    "Ãº": "ú",
    "Ã±": "ñ",
    "Ã¼": "ü",
    # Upper-case
    "Ã\u0081": "Á",
    "Ã‰": "É",
    "Ã\u008d": "Í",
    "Ã“": "Ó",
    "Ãš": "Ú",
    "Ã‘": "Ñ",
    "Ãœ": "Ü",
    # Punctuation
    "Â¿": "¿",
    "Â¡": "¡",
    "Âº": "º",
    "Âª": "ª",
    "Â°": "°",
    "Â\u00a0": " ",
    "â€œ": "“",
    "â€\u009d": "”",
    "â€˜": "‘",
    "â€™": "’",
    "â€“": "–",
    "â€”": "—",
    "â€¦": "…",
}

# Longest sequences first so "â€œ" wins over any shorter prefix
_PATTERN = re.compile(
    "|".join(re.escape(key) for key in sorted(MOJIBAKE_TABLE, key=len, reverse=True))
)


def fix_mojibake(text: str) -> str:
    """Replace every known mis-encoded sequence with its intended character."""
    if not text or ("Ã" not in text and "Â" not in text and "â€" not in text):
        return text
    return _PATTERN.sub(lambda match: MOJIBAKE_TABLE[match.group(0)], text)
