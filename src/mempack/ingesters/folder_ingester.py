"""Ingester for local folders of markdown notes."""

import logging
import os
from pathlib import Path
from typing import Iterator

from mempack.models import SOURCE_NOTES, Document
from mempack.paths import MEMORY_DIR, is_markdown, normalize_dir

logger = logging.getLogger(__name__)

SKIP_DIRS = {
    "__pycache__",
    "node_modules",
    "venv",
    "env",
    "dist",
    "build",
}


class FolderIngester:
    """Reads markdown files from a directory tree.

    Each file becomes a notes ``Document`` whose virtual path is its path
    relative to the folder, placed under ``prefix`` (``memory/`` by default,
    so imported notes are indexed).
    """

    source_type = "folder"

    def __init__(self, prefix: str = MEMORY_DIR):
        self.prefix = normalize_dir(prefix)

    def can_handle(self, source: Path) -> bool:
        """Check if this is an existing directory."""
        return source.is_dir()

    def ingest(self, source: Path) -> Iterator[Document]:
        """Yield a document per markdown file, in path order.

        Args:
            source: Path to the folder

        Yields:
            Document objects with their virtual path and modification time
        """
        for root, dirs, files in os.walk(source):
            dirs[:] = sorted(d for d in dirs if not self._should_skip(d))
            for filename in sorted(files):
                if self._should_skip(filename) or not is_markdown(filename):
                    continue
                full_path = Path(root) / filename
                rel_path = full_path.relative_to(source).as_posix()
                try:
                    raw_content = full_path.read_bytes()
                    mtime = full_path.stat().st_mtime
                except OSError as e:
                    logger.warning(f"Skipping {full_path}: {e}")
                    continue

                yield Document(
                    path=f"{self.prefix}{rel_path}",
                    content=raw_content.decode("utf-8", errors="replace"),
                    source=SOURCE_NOTES,
                    updated_at=int(mtime * 1000),
                )

    @staticmethod
    def _should_skip(name: str) -> bool:
        """Skip hidden entries and common build or dependency folders."""
        return name.startswith(".") or name in SKIP_DIRS or name.endswith(".egg-info")
