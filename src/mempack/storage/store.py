"""SQLite connection handling shared by the memory stores."""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from mempack.storage.schema import SCHEMA

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Base class for stores living in one SQLite database file.

    Every operation opens its own connection, so stores can be shared
    between the scheduler thread and callers without extra locking.
    """

    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, path: Path | str):
        self.path = Path(path).expanduser()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections.

        Commits on success and rolls back everything on exception.
        """
        conn = sqlite3.connect(self.path, timeout=self.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create schema if not exists."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        logger.debug(f"Initialized memory store at {self.path}")
