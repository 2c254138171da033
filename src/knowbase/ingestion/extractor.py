"""Split raw document text into scored, keyword-tagged chunks.

Pure and synchronous: no I/O, no provider calls.
"""

from __future__ import annotations

import re
from typing import List, Tuple

from knowbase.models import Chunk
from knowbase.utils.text import clean_text

MIN_PARAGRAPH_CHARS = 50
MIN_KEYWORD_LENGTH = 4

STOPWORDS = frozenset(
    {
        "el", "la", "los", "las", "un", "una", "de", "del", "en", "y", "o", "que",
        "es", "son", "para", "por", "con", "se", "su", "al", "lo", "como", "más",
        "pero", "sus", "le", "ya", "fue", "han", "muy", "sin", "sobre", "este",
        "entre", "cuando", "ser", "hay", "todo", "esta", "desde", "nos", "durante",
        "uno", "ni", "contra", "otros", "ese", "eso", "ante", "ella", "dos", "tan",
        "poco", "estos", "parte",
    }
)

_PUNCTUATION = re.compile(r"[^\w\s]")

_QUESTION_CUE = r"(?:\bpregunta\b\s*\d*\s*[:.)\-]?|\bp\s*[:.)\-])"
_ANSWER_CUE = r"(?:\brespuesta\b\s*[:.)\-]?|\br\s*[:.)\-])"
QA_PATTERN = re.compile(
    rf"{_QUESTION_CUE}\s*(?P<question>.+?)\s*{_ANSWER_CUE}\s*(?P<answer>.+?)(?=\s*{_QUESTION_CUE}|\Z)",
    re.IGNORECASE | re.DOTALL,
)


def extract_keywords(text: str) -> Tuple[str, ...]:
    """Lower-cased, punctuation-free, stopword-filtered unique words (len >= 4)."""
    words = _PUNCTUATION.sub("", text.lower()).split()
    keywords = (w for w in words if len(w) >= MIN_KEYWORD_LENGTH and w not in STOPWORDS)
    return tuple(dict.fromkeys(keywords))


def _collapse(text: str) -> str:
    return " ".join(text.split())


def split_paragraphs(text: str) -> List[str]:
    paragraphs = (_collapse(part) for part in text.split("\n\n"))
    return [p for p in paragraphs if len(p) >= MIN_PARAGRAPH_CHARS]


def find_qa_pairs(text: str) -> List[Tuple[str, str]]:
    """Question/answer pairs marked with "Pregunta:"/"Respuesta:" (or P:/R:) cues."""
    pairs = []
    for match in QA_PATTERN.finditer(text):
        question = _collapse(match.group("question"))
        answer = _collapse(match.group("answer"))
        if question and answer:
            pairs.append((question, answer))
    return pairs


def extract_chunks(raw_text: str) -> List[Chunk]:
    """Turn raw document text into chunks.

    Paragraph chunks come first, in document order, followed by one extra
    chunk per question/answer pair found in the text. Q&A chunks may overlap
    paragraph chunks; they exist so a pair split across paragraphs is still
    retrievable as a unit.
    """
    text = clean_text(raw_text)
    if not text:
        return []

    chunks = [Chunk(text=p, keywords=extract_keywords(p)) for p in split_paragraphs(text)]
    for question, answer in find_qa_pairs(text):
        chunks.append(
            Chunk(
                text=f"{question}\n{answer}",
                keywords=extract_keywords(f"{question} {answer}"),
                is_qa=True,
            )
        )
    return chunks
