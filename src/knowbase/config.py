"""Application configuration defaults."""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from knowbase.embedding.providers import DEFAULT_LOCAL_MODEL, DEFAULT_OPENAI_MODEL


def _get_default_knowledge_dir() -> Path:
    """Get the default knowledge directory based on execution context."""
    user_dir = Path.home() / "Documents" / "KnowBase"

    if getattr(sys, "frozen", False):
        return user_dir

    # When running from source, prefer a local knowledge_files/ if it exists
    local_dir = Path("knowledge_files")
    if local_dir.exists():
        return local_dir

    return user_dir


@dataclass(slots=True)
class AppConfig:
    knowledge_dir: Path | None = None
    provider: Literal["openai", "local", "none"] = "openai"
    embedding_model: str = DEFAULT_OPENAI_MODEL
    local_model: str = DEFAULT_LOCAL_MODEL
    embedding_batch_size: int = 100
    max_upload_bytes: int = 10 * 1024 * 1024
    request_timeout: float = 30.0
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0

    def __post_init__(self) -> None:
        if self.knowledge_dir is None:
            self.knowledge_dir = _get_default_knowledge_dir()
        if self.embedding_batch_size < 1:
            raise ValueError("embedding_batch_size must be at least 1")

    def resolve_knowledge_dir(self, base_dir: Path | None = None) -> Path:
        if self.knowledge_dir is None:
            self.knowledge_dir = _get_default_knowledge_dir()
        if Path(self.knowledge_dir).is_absolute() or base_dir is None:
            return Path(self.knowledge_dir)
        return base_dir / self.knowledge_dir
