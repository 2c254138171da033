"""Core KnowBase data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from knowbase.utils.text import fold_accents


@dataclass(slots=True)
class FileRecord:
    """Metadata describing an uploaded knowledge document."""

    id: str
    original_name: str
    file_name: str
    type: str
    size: int
    chunk_count: int
    upload_date: str
    stage_id: Optional[str] = None
    relative_path: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "original_name": self.original_name,
            "file_name": self.file_name,
            "type": self.type,
            "size": self.size,
            "chunk_count": self.chunk_count,
            "upload_date": self.upload_date,
            "stage_id": self.stage_id,
            "relative_path": self.relative_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        return cls(
            id=str(data["id"]),
            original_name=data.get("original_name") or data.get("file_name") or str(data["id"]),
            file_name=data.get("file_name") or "",
            type=data.get("type", "txt"),
            size=int(data.get("size", 0)),
            chunk_count=int(data.get("chunk_count", 0)),
            upload_date=data.get("upload_date", ""),
            stage_id=data.get("stage_id"),
            relative_path=data.get("relative_path"),
        )


@dataclass(frozen=True, slots=True)
class Chunk:
    """Unit of retrieval: a normalized text segment with its keywords.

    ``embedding`` is set if and only if ``embedding_generated`` is true.
    """

    text: str
    keywords: Tuple[str, ...] = ()
    is_qa: bool = False
    embedding: Optional[Tuple[float, ...]] = None
    embedding_generated: bool = False
    embedding_provider: Optional[str] = None
    embedding_date: Optional[str] = None

    def without_embedding(self) -> "Chunk":
        return Chunk(text=self.text, keywords=self.keywords, is_qa=self.is_qa)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "text": self.text,
            "keywords": list(self.keywords),
            "is_qa": self.is_qa,
            "embedding_generated": self.embedding_generated,
        }
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
            data["embedding_provider"] = self.embedding_provider
            data["embedding_date"] = self.embedding_date
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chunk":
        """Build a chunk from its persisted form, repairing the embedding flag."""
        text = data["text"]
        if not isinstance(text, str):
            raise ValueError("chunk text must be a string")
        raw_embedding = data.get("embedding")
        embedding = tuple(float(value) for value in raw_embedding) if raw_embedding else None
        return cls(
            text=text,
            keywords=tuple(data.get("keywords") or ()),
            is_qa=bool(data.get("is_qa", False)),
            embedding=embedding,
            embedding_generated=embedding is not None,
            embedding_provider=data.get("embedding_provider") if embedding else None,
            embedding_date=data.get("embedding_date") if embedding else None,
        )


@dataclass(slots=True)
class Stage:
    """Admin-controlled grouping that gates visibility of its files."""

    id: str
    name: str
    is_active: bool = True
    order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "is_active": self.is_active, "order": self.order}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"]),
            # Stages persisted before the flag existed are active
            is_active=bool(data.get("is_active", True)),
            order=int(data.get("order", 0)),
        )


@dataclass(slots=True)
class KnowledgeIndex:
    files: List[FileRecord] = field(default_factory=list)
    last_update: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"files": [f.to_dict() for f in self.files], "last_update": self.last_update}


@dataclass(slots=True)
class ChunkData:
    """Per-file chunk-data record stored next to the original document."""

    file_id: str
    name: str
    type: str
    chunks: List[Chunk]
    upload_date: str
    generated_at: Optional[str] = None
    embeddings_regenerated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "file_id": self.file_id,
            "name": self.name,
            "type": self.type,
            "upload_date": self.upload_date,
            "generated_at": self.generated_at,
            "embeddings_regenerated_at": self.embeddings_regenerated_at,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
        }


@dataclass(slots=True)
class EmbeddingReport:
    """Outcome of an embedding pass; partial failures are reported, not raised."""

    requested: int = 0
    embedded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed == 0 and self.skipped == 0


@dataclass(frozen=True, slots=True)
class SnapshotEntry:
    """A loaded chunk annotated with its owning file.

    Accent-folded text and keywords are computed once per load so keyword
    scoring does not refold the corpus on every query.
    """

    file: FileRecord
    position: int
    chunk: Chunk
    folded_text: str = ""
    folded_keywords: frozenset = frozenset()

    @classmethod
    def build(cls, file: FileRecord, position: int, chunk: Chunk) -> "SnapshotEntry":
        return cls(
            file=file,
            position=position,
            chunk=chunk,
            folded_text=fold_accents(chunk.text),
            folded_keywords=frozenset(fold_accents(k) for k in chunk.keywords),
        )

    @property
    def key(self) -> Tuple[str, int]:
        return (self.file.id, self.position)


@dataclass(frozen=True, eq=False)
class CacheSnapshot:
    """Immutable view of every chunk currently loaded in memory.

    ``matrix`` holds L2-normalized embeddings for the entries listed in
    ``embedded_rows`` (same order); it is ``None`` when nothing is embedded.
    A ``pending`` snapshot was published before its load finished embedding
    new chunks; a complete one replaces it.
    """

    entries: Tuple[SnapshotEntry, ...]
    generation: int
    loaded_at: str
    report: EmbeddingReport = field(default_factory=EmbeddingReport)
    matrix: Optional[np.ndarray] = None
    embedded_rows: Tuple[int, ...] = ()
    pending: bool = False

    @property
    def has_embeddings(self) -> bool:
        return self.matrix is not None and len(self.embedded_rows) > 0

    @property
    def dimension(self) -> int:
        return 0 if self.matrix is None else int(self.matrix.shape[1])

    def __len__(self) -> int:
        return len(self.entries)


@dataclass(slots=True)
class SearchResult:
    text: str
    source_file_name: str
    file_id: str
    score: Optional[int] = None
    similarity: Optional[float] = None
    rank: float = 0.0
    is_qa: bool = False
    is_partial: bool = False


@dataclass(slots=True)
class SearchOutcome:
    """Ranked results plus a quality tier derived from their similarity.

    ``quality`` is ``"high"``, ``"medium"``, ``"low"`` or ``"none"``; keyword-only
    results rate ``"none"``. ``error`` names why a query was not run.
    """

    results: List[SearchResult] = field(default_factory=list)
    quality: str = "none"
    top_similarity: float = 0.0
    avg_similarity: float = 0.0
    error: Optional[str] = None
