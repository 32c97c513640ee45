"""
Voice Governance Service - Validation Persistence Backends

Capabilities (one interface each):
- CaseStore: validation cases
- ReviewStore: immutable expert reviews
- BatchStore: validation batches and their counters
- MetricSink: append-only performance metric rows

Implementations provide all four over one storage:
- SqliteValidationRepository (runtime default)
- InMemoryValidationRepository (tests and ephemeral runs)
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from threading import Lock
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from errors import ConflictError, NotFoundError, ValidationError
from models import (
    BatchStatus,
    CaseCategory,
    CaseStatus,
    ExpertReview,
    PerformanceMetric,
    SortOrder,
    ValidationBatch,
    ValidationCase,
)
from sqlite_support import SqliteDatabase

# Sortable case fields -> SQLite column.
CASE_SORT_COLUMNS = {
    "created_at": "created_at",
    "updated_at": "updated_at",
    "case_id": "case_id",
    "status": "status",
    "category": "category",
    "batch_id": "batch_id",
    "diagnosis": "diagnosis",
}


def _resolve_case_sort(sort_by: str) -> str:
    key = (sort_by or "created_at").strip()
    aliases = {"createdAt": "created_at", "updatedAt": "updated_at", "caseId": "case_id", "batchId": "batch_id"}
    key = aliases.get(key, key)
    if key not in CASE_SORT_COLUMNS:
        raise ValidationError(f"Cannot sort validation cases by {sort_by!r}.")
    return key


def _case_sort_value(case: ValidationCase, key: str) -> object:
    if key == "diagnosis":
        return (0, case.traditional_diagnosis.diagnosis)
    value = getattr(case, key)
    if value is None:
        return (1, "")
    return (0, value.value if hasattr(value, "value") else value)


class CaseStore:
    def create_case(self, case: ValidationCase) -> ValidationCase:
        raise NotImplementedError

    def get_case(self, case_id: str) -> ValidationCase:
        raise NotImplementedError

    def case_exists(self, case_id: str) -> bool:
        raise NotImplementedError

    def update_case(self, case: ValidationCase) -> ValidationCase:
        raise NotImplementedError

    def query_cases(
        self,
        *,
        batch_id: Optional[str] = None,
        status: Optional[CaseStatus] = None,
        category: Optional[CaseCategory] = None,
        diagnosis: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationCase]]:
        raise NotImplementedError


class ReviewStore:
    def create_review(self, review: ExpertReview) -> ExpertReview:
        raise NotImplementedError

    def attach_review(self, review: ExpertReview, case: ValidationCase) -> ExpertReview:
        """Stores `review` and the updated `case` together; neither is written if either write fails."""
        raise NotImplementedError

    def get_reviews(self, review_ids: Iterable[str]) -> List[ExpertReview]:
        raise NotImplementedError

    def list_reviews_for_cases(self, case_ids: Iterable[str]) -> List[ExpertReview]:
        raise NotImplementedError


class BatchStore:
    def create_batch(self, batch: ValidationBatch) -> ValidationBatch:
        raise NotImplementedError

    def get_batch(self, batch_id: str) -> ValidationBatch:
        raise NotImplementedError

    def find_latest_batch(self) -> Optional[ValidationBatch]:
        raise NotImplementedError

    def update_batch(self, batch: ValidationBatch) -> ValidationBatch:
        raise NotImplementedError

    def increment_batch_counters(self, batch_id: str, *, cases: int = 0, reviews: int = 0) -> None:
        raise NotImplementedError

    def query_batches(
        self,
        *,
        status: Optional[BatchStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationBatch]]:
        raise NotImplementedError


class MetricSink:
    def record_metrics(self, metrics: Sequence[PerformanceMetric]) -> None:
        raise NotImplementedError

    def query_metrics(
        self,
        *,
        metric_name: Optional[str] = None,
        diagnosis: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[PerformanceMetric]:
        raise NotImplementedError


class InMemoryValidationRepository(CaseStore, ReviewStore, BatchStore, MetricSink):
    def __init__(self) -> None:
        self._cases: Dict[str, ValidationCase] = {}
        self._reviews: Dict[str, ExpertReview] = {}
        self._batches: Dict[str, ValidationBatch] = {}
        self._batch_order: List[str] = []
        self._metrics: List[PerformanceMetric] = []
        self._lock = Lock()

    # Cases

    def create_case(self, case: ValidationCase) -> ValidationCase:
        with self._lock:
            if case.case_id in self._cases:
                raise ConflictError(f"Validation case already exists: {case.case_id}")
            self._cases[case.case_id] = case.model_copy(deep=True)
        return case

    def get_case(self, case_id: str) -> ValidationCase:
        case = self._cases.get(case_id)
        if case is None:
            raise NotFoundError(f"Validation case not found: {case_id}")
        return case.model_copy(deep=True)

    def case_exists(self, case_id: str) -> bool:
        return case_id in self._cases

    def update_case(self, case: ValidationCase) -> ValidationCase:
        with self._lock:
            if case.case_id not in self._cases:
                raise NotFoundError(f"Validation case not found: {case.case_id}")
            self._cases[case.case_id] = case.model_copy(deep=True)
        return case

    def query_cases(
        self,
        *,
        batch_id: Optional[str] = None,
        status: Optional[CaseStatus] = None,
        category: Optional[CaseCategory] = None,
        diagnosis: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationCase]]:
        key = _resolve_case_sort(sort_by)
        rows = list(self._cases.values())
        if batch_id is not None:
            rows = [c for c in rows if c.batch_id == batch_id]
        if status is not None:
            rows = [c for c in rows if c.status == CaseStatus(status)]
        if category is not None:
            rows = [c for c in rows if c.category == CaseCategory(category)]
        if diagnosis is not None:
            rows = [c for c in rows if c.traditional_diagnosis.diagnosis == diagnosis]
        rows.sort(key=lambda c: _case_sort_value(c, key), reverse=SortOrder(sort_order) == SortOrder.DESC)
        total = len(rows)
        start = max(0, int(offset))
        window = rows[start:] if limit is None else rows[start : start + max(1, int(limit))]
        return total, [c.model_copy(deep=True) for c in window]

    # Reviews

    def create_review(self, review: ExpertReview) -> ExpertReview:
        with self._lock:
            if review.review_id in self._reviews:
                raise ConflictError(f"Expert review already exists: {review.review_id}")
            self._reviews[review.review_id] = review
        return review

    def attach_review(self, review: ExpertReview, case: ValidationCase) -> ExpertReview:
        with self._lock:
            if review.review_id in self._reviews:
                raise ConflictError(f"Expert review already exists: {review.review_id}")
            if case.case_id not in self._cases:
                raise NotFoundError(f"Validation case not found: {case.case_id}")
            self._reviews[review.review_id] = review
            self._cases[case.case_id] = case.model_copy(deep=True)
        return review

    def get_reviews(self, review_ids: Iterable[str]) -> List[ExpertReview]:
        rows = [self._reviews[rid] for rid in set(review_ids) if rid in self._reviews]
        rows.sort(key=lambda r: r.created_at)
        return rows

    def list_reviews_for_cases(self, case_ids: Iterable[str]) -> List[ExpertReview]:
        wanted = set(case_ids)
        rows = [r for r in self._reviews.values() if r.case_id in wanted]
        rows.sort(key=lambda r: r.created_at)
        return rows

    # Batches

    def create_batch(self, batch: ValidationBatch) -> ValidationBatch:
        with self._lock:
            if batch.batch_id in self._batches:
                raise ConflictError(f"Validation batch already exists: {batch.batch_id}")
            self._batches[batch.batch_id] = batch.model_copy(deep=True)
            self._batch_order.append(batch.batch_id)
        return batch

    def get_batch(self, batch_id: str) -> ValidationBatch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Validation batch not found: {batch_id}")
        return batch.model_copy(deep=True)

    def find_latest_batch(self) -> Optional[ValidationBatch]:
        _, rows = self.query_batches(limit=1)
        return rows[0] if rows else None

    def update_batch(self, batch: ValidationBatch) -> ValidationBatch:
        with self._lock:
            if batch.batch_id not in self._batches:
                raise NotFoundError(f"Validation batch not found: {batch.batch_id}")
            self._batches[batch.batch_id] = batch.model_copy(deep=True)
        return batch

    def increment_batch_counters(self, batch_id: str, *, cases: int = 0, reviews: int = 0) -> None:
        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                raise NotFoundError(f"Validation batch not found: {batch_id}")
            batch.case_count += cases
            batch.review_count += reviews

    def query_batches(
        self,
        *,
        status: Optional[BatchStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationBatch]]:
        indexed = [
            (idx, self._batches[bid])
            for idx, bid in enumerate(self._batch_order)
            if status is None or self._batches[bid].status == BatchStatus(status)
        ]
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        start = max(0, int(offset))
        window = indexed[start : start + max(1, int(limit))]
        return len(indexed), [batch.model_copy(deep=True) for _, batch in window]

    # Metrics

    def record_metrics(self, metrics: Sequence[PerformanceMetric]) -> None:
        with self._lock:
            self._metrics.extend(m.model_copy() for m in metrics)

    def query_metrics(
        self,
        *,
        metric_name: Optional[str] = None,
        diagnosis: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[PerformanceMetric]:
        rows = list(self._metrics)
        if metric_name is not None:
            rows = [m for m in rows if m.metric_name == metric_name]
        if diagnosis is not None:
            rows = [m for m in rows if m.diagnosis == diagnosis]
        if since is not None:
            rows = [m for m in rows if m.timestamp >= since]
        rows.sort(key=lambda m: m.timestamp, reverse=True)
        return rows[: max(1, int(limit))]


class SqliteValidationRepository(CaseStore, ReviewStore, BatchStore, MetricSink):
    def __init__(self, db_path: str) -> None:
        self.db = SqliteDatabase(db_path)
        self.db_path = self.db.db_path
        self._init_schema()

    def _init_schema(self) -> None:
        self.db.execute_script(
            [
                """
                CREATE TABLE IF NOT EXISTS voice_validation_cases (
                    case_id TEXT PRIMARY KEY,
                    batch_id TEXT,
                    status TEXT NOT NULL,
                    category TEXT NOT NULL,
                    diagnosis TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_voice_validation_cases_batch
                ON voice_validation_cases(batch_id, status)
                """,
                """
                CREATE TABLE IF NOT EXISTS voice_expert_reviews (
                    review_id TEXT PRIMARY KEY,
                    case_id TEXT NOT NULL,
                    expert_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_voice_expert_reviews_case
                ON voice_expert_reviews(case_id)
                """,
                """
                CREATE TABLE IF NOT EXISTS voice_validation_batches (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    batch_id TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    case_count INTEGER NOT NULL DEFAULT 0,
                    review_count INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """,
                """
                CREATE TABLE IF NOT EXISTS voice_performance_metrics (
                    metric_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    metric_name TEXT NOT NULL,
                    diagnosis TEXT,
                    value REAL NOT NULL,
                    batch_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL
                )
                """,
                """
                CREATE INDEX IF NOT EXISTS idx_voice_performance_metrics_name
                ON voice_performance_metrics(metric_name, timestamp DESC)
                """,
            ]
        )

    # Cases

    def create_case(self, case: ValidationCase) -> ValidationCase:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO voice_validation_cases (
                        case_id, batch_id, status, category, diagnosis, created_at, updated_at, payload_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._case_row(case),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Validation case already exists: {case.case_id}") from exc
        return case

    def get_case(self, case_id: str) -> ValidationCase:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT payload_json FROM voice_validation_cases WHERE case_id = ?",
                (case_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Validation case not found: {case_id}")
        return ValidationCase.model_validate_json(str(row["payload_json"]))

    def case_exists(self, case_id: str) -> bool:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM voice_validation_cases WHERE case_id = ?",
                (case_id,),
            ).fetchone()
        return row is not None

    def update_case(self, case: ValidationCase) -> ValidationCase:
        with self.db.transaction() as conn:
            self._write_case(conn, case)
        return case

    @classmethod
    def _write_case(cls, conn: sqlite3.Connection, case: ValidationCase) -> None:
        case_id, batch_id, status, category, diagnosis, _created, updated_at, payload = cls._case_row(case)
        cursor = conn.execute(
            """
            UPDATE voice_validation_cases
            SET batch_id = ?, status = ?, category = ?, diagnosis = ?, updated_at = ?, payload_json = ?
            WHERE case_id = ?
            """,
            (batch_id, status, category, diagnosis, updated_at, payload, case_id),
        )
        if not cursor.rowcount:
            raise NotFoundError(f"Validation case not found: {case_id}")

    def query_cases(
        self,
        *,
        batch_id: Optional[str] = None,
        status: Optional[CaseStatus] = None,
        category: Optional[CaseCategory] = None,
        diagnosis: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: SortOrder = SortOrder.DESC,
        limit: Optional[int] = 20,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationCase]]:
        column = CASE_SORT_COLUMNS[_resolve_case_sort(sort_by)]
        direction = "DESC" if SortOrder(sort_order) == SortOrder.DESC else "ASC"

        where: List[str] = []
        params: List[object] = []
        if batch_id is not None:
            where.append("batch_id = ?")
            params.append(batch_id)
        if status is not None:
            where.append("status = ?")
            params.append(CaseStatus(status).value)
        if category is not None:
            where.append("category = ?")
            params.append(CaseCategory(category).value)
        if diagnosis is not None:
            where.append("diagnosis = ?")
            params.append(diagnosis)
        clause = f" WHERE {' AND '.join(where)}" if where else ""

        sql = f"SELECT payload_json FROM voice_validation_cases{clause} ORDER BY {column} {direction}"
        page_params = list(params)
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            page_params.extend([max(1, int(limit)), max(0, int(offset))])
        elif offset:
            sql += " LIMIT -1 OFFSET ?"
            page_params.append(max(0, int(offset)))

        with self.db.transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM voice_validation_cases{clause}", tuple(params)
            ).fetchone()["n"]
            rows = conn.execute(sql, tuple(page_params)).fetchall()
        return int(total), [ValidationCase.model_validate_json(str(r["payload_json"])) for r in rows]

    @staticmethod
    def _case_row(case: ValidationCase) -> tuple:
        return (
            case.case_id,
            case.batch_id,
            case.status.value,
            case.category.value,
            case.traditional_diagnosis.diagnosis,
            case.created_at.isoformat(),
            case.updated_at.isoformat(),
            case.to_json(),
        )

    # Reviews

    def create_review(self, review: ExpertReview) -> ExpertReview:
        try:
            with self.db.transaction() as conn:
                self._insert_review(conn, review)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Expert review already exists: {review.review_id}") from exc
        return review

    def attach_review(self, review: ExpertReview, case: ValidationCase) -> ExpertReview:
        try:
            with self.db.transaction() as conn:
                self._insert_review(conn, review)
                self._write_case(conn, case)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Expert review already exists: {review.review_id}") from exc
        return review

    @staticmethod
    def _insert_review(conn: sqlite3.Connection, review: ExpertReview) -> None:
        conn.execute(
            """
            INSERT INTO voice_expert_reviews(review_id, case_id, expert_id, created_at, payload_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                review.review_id,
                review.case_id,
                review.expert_id,
                review.created_at.isoformat(),
                review.to_json(),
            ),
        )

    def get_reviews(self, review_ids: Iterable[str]) -> List[ExpertReview]:
        ids = list(review_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT payload_json FROM voice_expert_reviews WHERE review_id IN ({placeholders}) "
                "ORDER BY created_at ASC",
                tuple(ids),
            ).fetchall()
        return [ExpertReview.model_validate_json(str(r["payload_json"])) for r in rows]

    def list_reviews_for_cases(self, case_ids: Iterable[str]) -> List[ExpertReview]:
        ids = list(case_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self.db.transaction() as conn:
            rows = conn.execute(
                f"SELECT payload_json FROM voice_expert_reviews WHERE case_id IN ({placeholders}) "
                "ORDER BY created_at ASC",
                tuple(ids),
            ).fetchall()
        return [ExpertReview.model_validate_json(str(r["payload_json"])) for r in rows]

    # Batches

    def create_batch(self, batch: ValidationBatch) -> ValidationBatch:
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO voice_validation_batches(
                        batch_id, status, case_count, review_count, created_at, payload_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch.batch_id,
                        batch.status.value,
                        batch.case_count,
                        batch.review_count,
                        batch.created_at.isoformat(),
                        batch.to_json(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Validation batch already exists: {batch.batch_id}") from exc
        return batch

    def get_batch(self, batch_id: str) -> ValidationBatch:
        with self.db.transaction() as conn:
            row = conn.execute(
                """
                SELECT case_count, review_count, payload_json
                FROM voice_validation_batches WHERE batch_id = ?
                """,
                (batch_id,),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Validation batch not found: {batch_id}")
        return self._decode_batch(row)

    def find_latest_batch(self) -> Optional[ValidationBatch]:
        _, rows = self.query_batches(limit=1)
        return rows[0] if rows else None

    def update_batch(self, batch: ValidationBatch) -> ValidationBatch:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE voice_validation_batches
                SET status = ?, case_count = ?, review_count = ?, payload_json = ?
                WHERE batch_id = ?
                """,
                (batch.status.value, batch.case_count, batch.review_count, batch.to_json(), batch.batch_id),
            )
            if not cursor.rowcount:
                raise NotFoundError(f"Validation batch not found: {batch.batch_id}")
        return batch

    def increment_batch_counters(self, batch_id: str, *, cases: int = 0, reviews: int = 0) -> None:
        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE voice_validation_batches
                SET case_count = case_count + ?, review_count = review_count + ?
                WHERE batch_id = ?
                """,
                (int(cases), int(reviews), batch_id),
            )
            if not cursor.rowcount:
                raise NotFoundError(f"Validation batch not found: {batch_id}")

    def query_batches(
        self,
        *,
        status: Optional[BatchStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> Tuple[int, List[ValidationBatch]]:
        clause = ""
        params: List[object] = []
        if status is not None:
            clause = " WHERE status = ?"
            params.append(BatchStatus(status).value)
        with self.db.transaction() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) AS n FROM voice_validation_batches{clause}", tuple(params)
            ).fetchone()["n"]
            rows = conn.execute(
                f"""
                SELECT case_count, review_count, payload_json FROM voice_validation_batches{clause}
                ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?
                """,
                tuple(params + [max(1, int(limit)), max(0, int(offset))]),
            ).fetchall()
        return int(total), [self._decode_batch(r) for r in rows]

    @staticmethod
    def _decode_batch(row: sqlite3.Row) -> ValidationBatch:
        # Counter columns are authoritative; increments do not rewrite the payload.
        batch = ValidationBatch.model_validate_json(str(row["payload_json"]))
        batch.case_count = int(row["case_count"])
        batch.review_count = int(row["review_count"])
        return batch

    # Metrics

    def record_metrics(self, metrics: Sequence[PerformanceMetric]) -> None:
        with self.db.transaction() as conn:
            conn.executemany(
                """
                INSERT INTO voice_performance_metrics(metric_name, diagnosis, value, batch_id, timestamp)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (m.metric_name, m.diagnosis, float(m.value), m.batch_id, m.timestamp.isoformat())
                    for m in metrics
                ],
            )

    def query_metrics(
        self,
        *,
        metric_name: Optional[str] = None,
        diagnosis: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 20,
    ) -> List[PerformanceMetric]:
        sql = "SELECT metric_name, diagnosis, value, batch_id, timestamp FROM voice_performance_metrics WHERE 1 = 1"
        params: List[object] = []
        if metric_name is not None:
            sql += " AND metric_name = ?"
            params.append(metric_name)
        if diagnosis is not None:
            sql += " AND diagnosis = ?"
            params.append(diagnosis)
        if since is not None:
            sql += " AND timestamp >= ?"
            params.append(since.isoformat())
        sql += " ORDER BY timestamp DESC, metric_id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self.db.transaction() as conn:
            rows = conn.execute(sql, tuple(params)).fetchall()
        return [
            PerformanceMetric(
                metric_name=str(r["metric_name"]),
                diagnosis=r["diagnosis"],
                value=float(r["value"]),
                batch_id=str(r["batch_id"]),
                timestamp=datetime.fromisoformat(str(r["timestamp"])),
            )
            for r in rows
        ]
