"""On-disk document store: a JSON index plus one chunk-data record per file."""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path, PurePath
from typing import List, Optional

from knowbase.errors import CorruptIndexError, ValidationError
from knowbase.index.stages import StageRegistry
from knowbase.ingestion.extractor import extract_chunks
from knowbase.ingestion.loaders import detect_type, extract_text
from knowbase.models import Chunk, ChunkData, FileRecord, KnowledgeIndex
from knowbase.utils.files import atomic_write_bytes, atomic_write_json, read_json, remove_if_exists

LOGGER = logging.getLogger(__name__)

INDEX_FILE = "index.json"
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DocumentStore:
    """Persistence layer for uploaded documents and their chunks.

    The index and every chunk-data record are written atomically. Index
    mutations are serialized with a lock because the store is driven from
    worker threads.
    """

    def __init__(
        self,
        root: Path,
        *,
        stages: Optional[StageRegistry] = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_path = self.root / INDEX_FILE
        self.stages = stages
        self.max_upload_bytes = max_upload_bytes
        self._lock = threading.Lock()
        self._index = self._load_index()

    def _read_index(self) -> KnowledgeIndex:
        try:
            raw = read_json(self.index_path)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CorruptIndexError(f"Malformed index {self.index_path}: {exc}") from exc
        if not isinstance(raw, dict) or not isinstance(raw.get("files", []), list):
            raise CorruptIndexError(f"Unexpected index layout in {self.index_path}")
        files = []
        for entry in raw.get("files", []):
            try:
                files.append(FileRecord.from_dict(entry))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                LOGGER.warning("Skipping malformed index entry %r: %s", entry, exc)
        return KnowledgeIndex(files=files, last_update=raw.get("last_update"))

    def _load_index(self) -> KnowledgeIndex:
        if not self.index_path.exists():
            return KnowledgeIndex()
        try:
            index = self._read_index()
        except CorruptIndexError as exc:
            backup = self.index_path.with_name(self.index_path.name + ".corrupt")
            LOGGER.error("%s; continuing with an empty index (original kept at %s)", exc, backup)
            try:
                os.replace(self.index_path, backup)
            except OSError as move_exc:
                LOGGER.warning("Could not preserve corrupt index: %s", move_exc)
            return KnowledgeIndex()
        LOGGER.info("Loaded knowledge index with %d files", len(index.files))
        return index

    def _save_index(self) -> None:
        self._index.last_update = utc_now()
        atomic_write_json(self.index_path, self._index.to_dict())

    def _folder(self, file: FileRecord) -> Path:
        if file.relative_path:
            return self.root / PurePath(file.relative_path).parent
        return self.root

    def document_path(self, file: FileRecord) -> Path:
        if file.relative_path:
            return self.root / file.relative_path
        return self.root / file.file_name

    def data_path(self, file: FileRecord) -> Path:
        return self._folder(file) / f"{file.id}_data.json"

    def validate_upload(self, data: bytes, original_name: str) -> str:
        """Check type and size; returns the document type."""
        doc_type = detect_type(original_name)
        if not data:
            raise ValidationError(f"Empty upload: {original_name}")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                f"{original_name} is {len(data)} bytes; the limit is {self.max_upload_bytes}"
            )
        return doc_type

    def add_file(self, data: bytes, original_name: str, stage_id: Optional[str] = None) -> FileRecord:
        """Validate, chunk and persist an upload.

        Nothing is written unless validation and text extraction succeed.
        """
        doc_type = self.validate_upload(data, original_name)
        chunks = extract_chunks(extract_text(data, doc_type))
        if not chunks:
            LOGGER.warning("No searchable text extracted from %s", original_name)

        file_id = uuid.uuid4().hex
        safe_name = PurePath(original_name).name
        file_name = f"{file_id}_{safe_name}"
        folder = self.stages.folder_name(stage_id) if self.stages is not None else None
        if stage_id and folder is None:
            LOGGER.warning("Stage %s does not exist; storing %s at the root", stage_id, original_name)
        uploaded = utc_now()

        record = FileRecord(
            id=file_id,
            original_name=original_name,
            file_name=file_name,
            type=doc_type,
            size=len(data),
            chunk_count=len(chunks),
            upload_date=uploaded,
            stage_id=stage_id,
            relative_path=f"{folder}/{file_name}" if folder else None,
        )
        chunk_data = ChunkData(
            file_id=file_id,
            name=original_name,
            type=doc_type,
            chunks=chunks,
            upload_date=uploaded,
            generated_at=uploaded,
        )

        document_path = self.document_path(record)
        data_path = self.data_path(record)
        atomic_write_bytes(document_path, data)
        try:
            atomic_write_json(data_path, chunk_data.to_dict())
            with self._lock:
                self._index.files.append(record)
                try:
                    self._save_index()
                except Exception:
                    self._index.files.remove(record)
                    raise
        except Exception:
            remove_if_exists(document_path)
            remove_if_exists(data_path)
            raise

        LOGGER.info("Stored %s (%d chunks)", original_name, len(chunks))
        return record

    def get_file(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            record = next((f for f in self._index.files if f.id == file_id), None)
            return replace(record) if record is not None else None

    def list_files(self) -> List[FileRecord]:
        with self._lock:
            return [replace(f) for f in self._index.files]

    def delete_file(self, file_id: str) -> bool:
        """Remove a file, its document and its chunk data.

        Returns ``False`` for an unknown id; missing files on disk are ignored.
        """
        with self._lock:
            record = next((f for f in self._index.files if f.id == file_id), None)
            if record is None:
                return False
            self._index.files.remove(record)
            self._save_index()

        if not remove_if_exists(self.document_path(record)):
            LOGGER.debug("Document for %s already missing", record.original_name)
        if not remove_if_exists(self.data_path(record)):
            LOGGER.debug("Chunk data for %s already missing", record.original_name)
        LOGGER.info("Deleted %s", record.original_name)
        return True

    def update_chunk_count(self, file_id: str, chunk_count: int) -> None:
        with self._lock:
            record = next((f for f in self._index.files if f.id == file_id), None)
            if record is None or record.chunk_count == chunk_count:
                return
            record.chunk_count = chunk_count
            self._save_index()

    def read_chunk_data(self, file: FileRecord) -> Optional[ChunkData]:
        """Load a file's chunk data; ``None`` when missing or unreadable.

        Individual malformed chunks are dropped so one bad entry does not
        hide the rest of the document.
        """
        path = self.data_path(file)
        if not path.exists():
            LOGGER.warning("Chunk data missing for %s (%s)", file.original_name, path)
            return None
        try:
            raw = read_json(path)
            raw_chunks = raw["chunks"]
            if not isinstance(raw_chunks, list):
                raise TypeError("chunks is not a list")
        except (OSError, json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError) as exc:
            LOGGER.warning("Unreadable chunk data for %s: %s", file.original_name, exc)
            return None

        chunks: List[Chunk] = []
        for position, item in enumerate(raw_chunks):
            try:
                chunks.append(Chunk.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Skipping chunk %d of %s: %s", position, file.original_name, exc)

        return ChunkData(
            file_id=file.id,
            name=raw.get("name", file.original_name),
            type=raw.get("type", file.type),
            chunks=chunks,
            upload_date=raw.get("upload_date", file.upload_date),
            generated_at=raw.get("generated_at"),
            embeddings_regenerated_at=raw.get("embeddings_regenerated_at"),
        )

    def write_chunk_data(self, file: FileRecord, data: ChunkData) -> None:
        atomic_write_json(self.data_path(file), data.to_dict())
