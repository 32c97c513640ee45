"""
Voice Governance Service - Parameter Version Backends

Provides storage implementations for scoring-parameter versions:
- SqliteVersionStore (runtime default)
- InMemoryVersionStore (tests and ephemeral runs)

Versions are append-only: there is no update or delete.
"""

from __future__ import annotations

import sqlite3
from threading import Lock
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import ConflictError, VersionHistoryCorruptedError
from models import ParameterVersionRecord
from sqlite_support import SqliteDatabase


class VersionStore:
    def save(self, record: ParameterVersionRecord) -> str:
        raise NotImplementedError

    def find_by_id(self, version_id: str) -> Optional[ParameterVersionRecord]:
        raise NotImplementedError

    def find_default(self) -> Optional[ParameterVersionRecord]:
        raise NotImplementedError

    def find_latest(self, *, exclude_default: bool = True) -> Optional[ParameterVersionRecord]:
        raise NotImplementedError

    def list_recent(self, limit: int, *, exclude_default: bool = True) -> List[ParameterVersionRecord]:
        raise NotImplementedError


class InMemoryVersionStore(VersionStore):
    def __init__(self) -> None:
        self._records: Dict[str, ParameterVersionRecord] = {}
        self._order: List[str] = []
        self._lock = Lock()

    def save(self, record: ParameterVersionRecord) -> str:
        with self._lock:
            if record.version in self._records:
                raise ConflictError(f"Parameter version already exists: {record.version}")
            self._records[record.version] = record.model_copy(deep=True)
            self._order.append(record.version)
        return record.version

    def find_by_id(self, version_id: str) -> Optional[ParameterVersionRecord]:
        record = self._records.get(version_id)
        return record.model_copy(deep=True) if record else None

    def find_default(self) -> Optional[ParameterVersionRecord]:
        for version_id in self._order:
            if self._records[version_id].is_default:
                return self._records[version_id].model_copy(deep=True)
        return None

    def find_latest(self, *, exclude_default: bool = True) -> Optional[ParameterVersionRecord]:
        rows = self.list_recent(1, exclude_default=exclude_default)
        return rows[0] if rows else None

    def list_recent(self, limit: int, *, exclude_default: bool = True) -> List[ParameterVersionRecord]:
        # Insertion order breaks ties between equal timestamps.
        indexed = [
            (idx, self._records[version_id])
            for idx, version_id in enumerate(self._order)
            if not (exclude_default and self._records[version_id].is_default)
        ]
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [record.model_copy(deep=True) for _, record in indexed[: max(1, int(limit))]]


class SqliteVersionStore(VersionStore):
    def __init__(self, db_path: str) -> None:
        self.db = SqliteDatabase(db_path)
        self.db_path = self.db.db_path
        self._init_schema()

    def _init_schema(self) -> None:
        self.db.execute_script(
            [
                """
                CREATE TABLE IF NOT EXISTS voice_model_parameters (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    version TEXT NOT NULL UNIQUE,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_voice_model_parameters_created
                ON voice_model_parameters(is_default, created_at DESC)
                """,
            ]
        )

    def save(self, record: ParameterVersionRecord) -> str:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO voice_model_parameters(version, is_default, created_at, payload_json)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        record.version,
                        1 if record.is_default else 0,
                        record.created_at.isoformat(),
                        record.to_json(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Parameter version already exists: {record.version}") from exc
        return record.version

    def find_by_id(self, version_id: str) -> Optional[ParameterVersionRecord]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT payload_json FROM voice_model_parameters WHERE version = ?",
                (version_id,),
            ).fetchone()
        return self._decode(row) if row is not None else None

    def find_default(self) -> Optional[ParameterVersionRecord]:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT payload_json FROM voice_model_parameters
                WHERE is_default = 1
                ORDER BY seq ASC LIMIT 1
                """
            ).fetchone()
        return self._decode(row) if row is not None else None

    def find_latest(self, *, exclude_default: bool = True) -> Optional[ParameterVersionRecord]:
        rows = self.list_recent(1, exclude_default=exclude_default)
        return rows[0] if rows else None

    def list_recent(self, limit: int, *, exclude_default: bool = True) -> List[ParameterVersionRecord]:
        sql = "SELECT payload_json FROM voice_model_parameters"
        if exclude_default:
            sql += " WHERE is_default = 0"
        sql += " ORDER BY created_at DESC, seq DESC LIMIT ?"
        with self.db.transaction() as conn:
            rows = conn.execute(sql, (max(1, int(limit)),)).fetchall()
        return [self._decode(row) for row in rows]

    @staticmethod
    def _decode(row: sqlite3.Row) -> ParameterVersionRecord:
        try:
            return ParameterVersionRecord.model_validate_json(str(row["payload_json"]))
        except PydanticValidationError as exc:
            raise VersionHistoryCorruptedError(
                f"Stored parameter version cannot be decoded: {exc}"
            ) from exc
