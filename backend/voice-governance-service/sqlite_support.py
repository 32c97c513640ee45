"""
Shared SQLite plumbing for the governance stores.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Iterable, Iterator

from errors import PersistenceError

logger = logging.getLogger(__name__)


class SqliteDatabase:
    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite store requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction: committed on success, rolled back on error."""
        with self._lock:
            try:
                conn = self._connect()
            except sqlite3.Error as exc:
                raise PersistenceError(f"Cannot open SQLite database {self.db_path}: {exc}") from exc
            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError:
                conn.rollback()
                raise
            except sqlite3.Error as exc:
                conn.rollback()
                logger.error("SQLite operation failed on %s: %s", self.db_path, exc)
                raise PersistenceError(f"SQLite operation failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def execute_script(self, statements: Iterable[str]) -> None:
        with self.transaction() as conn:
            for statement in statements:
                conn.execute(statement)
