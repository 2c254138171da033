"""Stage registry and the visibility filter applied on every search path."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from knowbase.errors import CorruptIndexError
from knowbase.models import FileRecord, Stage
from knowbase.utils.files import atomic_write_json, read_json
from knowbase.utils.text import slugify

LOGGER = logging.getLogger(__name__)

STAGES_FILE = "stages.json"


def is_file_visible(file: FileRecord, stages: Mapping[str, Stage]) -> bool:
    """A file is visible unless it belongs to an existing, inactive stage.

    Files without a stage and files whose stage was deleted (orphans) are
    always visible.
    """
    if not file.stage_id:
        return True
    stage = stages.get(file.stage_id)
    if stage is None:
        return True
    return stage.is_active


def get_active_files(files: Iterable[FileRecord], stages: Mapping[str, Stage]) -> List[FileRecord]:
    return [f for f in files if is_file_visible(f, stages)]


class StageRegistry:
    """JSON-backed list of stages.

    Every mutation notifies subscribers synchronously, before returning, so
    a cache invalidation hook sees the change ahead of the next search.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.path = self.root / STAGES_FILE
        self._lock = threading.Lock()
        self._listeners: List[Callable[[], None]] = []
        self._stages: Dict[str, Stage] = self._load()

    def _load(self) -> Dict[str, Stage]:
        if not self.path.exists():
            return {}
        try:
            raw = read_json(self.path)
            if not isinstance(raw, list):
                raise CorruptIndexError(f"{self.path} does not contain a list of stages")
            stages = [Stage.from_dict(item) for item in raw]
        except (CorruptIndexError, ValueError, KeyError, TypeError) as exc:
            LOGGER.error("Could not read stages from %s, starting empty: %s", self.path, exc)
            return {}
        LOGGER.info("Loaded %d stages from %s", len(stages), self.path)
        return {stage.id: stage for stage in stages}

    def _save(self) -> None:
        atomic_write_json(self.path, [stage.to_dict() for stage in self.list_stages()])

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def subscribe(self, listener: Callable[[], None]) -> None:
        """Register a callback run after every stage change."""
        self._listeners.append(listener)

    def snapshot(self) -> Dict[str, Stage]:
        """Copy of the current stages keyed by id, safe to use without the lock."""
        with self._lock:
            return {
                sid: Stage(id=s.id, name=s.name, is_active=s.is_active, order=s.order)
                for sid, s in self._stages.items()
            }

    def list_stages(self) -> List[Stage]:
        return sorted(self._stages.values(), key=lambda s: s.order)

    def get_stage(self, stage_id: str) -> Optional[Stage]:
        return self._stages.get(stage_id)

    def create_stage(self, name: str) -> Stage:
        with self._lock:
            order = max((s.order for s in self._stages.values()), default=0) + 1
            stamp = time.time_ns()
            while f"stage_{stamp}" in self._stages:
                stamp += 1
            stage = Stage(id=f"stage_{stamp}", name=name.strip() or "New stage", order=order)
            self._stages[stage.id] = stage
            self._save()
        LOGGER.info("Created stage %s (%s)", stage.name, stage.id)
        self._notify()
        return stage

    def set_active(self, stage_id: str, is_active: bool) -> Stage:
        with self._lock:
            stage = self._stages.get(stage_id)
            if stage is None:
                raise KeyError(f"Stage not found: {stage_id}")
            stage.is_active = is_active
            self._save()
        LOGGER.info("Stage %s %s", stage.name, "activated" if is_active else "deactivated")
        self._notify()
        return stage

    def delete_stage(self, stage_id: str) -> bool:
        """Remove a stage. Its files keep their stage id and become orphans."""
        with self._lock:
            stage = self._stages.pop(stage_id, None)
            if stage is None:
                return False
            for index, remaining in enumerate(self.list_stages(), start=1):
                remaining.order = index
            self._save()
        LOGGER.info("Deleted stage %s", stage.name)
        self._notify()
        return True

    def folder_name(self, stage_id: Optional[str]) -> Optional[str]:
        """Subdirectory used to store a stage's documents, if the stage exists."""
        stage = self._stages.get(stage_id) if stage_id else None
        if stage is None:
            return None
        return slugify(stage.name) or stage.id
