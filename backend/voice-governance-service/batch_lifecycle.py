"""
Voice Governance Service - Validation Batch Lifecycle

Exactly one batch is current at a time. Case and review submissions bump its
counters; closing it aggregates accuracy and concordance over its completed
cases, appends the results to the performance-metric series and opens the
next batch.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional
from uuid import uuid4

from errors import InvalidStateError
from models import (
    BatchCompletion,
    BatchMetrics,
    BatchQueryResult,
    BatchStatus,
    CaseStatus,
    MetricPoint,
    PerformanceMetric,
    ValidationBatch,
    ValidationProgress,
    utc_now,
)
from validation_repository import BatchStore, CaseStore, MetricSink, ReviewStore

logger = logging.getLogger(__name__)

ACCURACY_RATE = "accuracy_rate"
CONCORDANCE_RATE = "concordance_rate"
DISHARMONY_ACCURACY = "disharmony_accuracy"


class BatchLifecycleManager:
    def __init__(
        self,
        *,
        batch_store: BatchStore,
        case_store: CaseStore,
        review_store: ReviewStore,
        metric_sink: MetricSink,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.batch_store = batch_store
        self.case_store = case_store
        self.review_store = review_store
        self.metric_sink = metric_sink
        self.clock = clock
        self._lock = RLock()
        self._current_batch_id: Optional[str] = None

    def start(self) -> str:
        with self._lock:
            latest = self.batch_store.find_latest_batch()
            if latest is not None and latest.status != BatchStatus.COMPLETED:
                self._current_batch_id = latest.batch_id
                logger.info("Resumed open validation batch %s.", latest.batch_id)
            else:
                self._current_batch_id = self._open_batch().batch_id
            return self._current_batch_id

    @property
    def current_batch_id(self) -> str:
        if self._current_batch_id is None:
            raise InvalidStateError("No open validation batch; BatchLifecycleManager.start() must run first.")
        return self._current_batch_id

    @contextmanager
    def hold_current_batch(self) -> Iterator[str]:
        """Yields the current batch id while blocking batch rotation."""
        with self._lock:
            yield self.current_batch_id

    def current_batch(self) -> ValidationBatch:
        return self.batch_store.get_batch(self.current_batch_id)

    # -------------------------------------------------------------------------
    # Counters (best effort)
    # -------------------------------------------------------------------------

    def record_case_submitted(self, batch_id: Optional[str]) -> None:
        self._bump(batch_id, cases=1)

    def record_review_submitted(self, batch_id: Optional[str] = None) -> None:
        """Counts a review against `batch_id`, or the current batch when omitted."""
        self._bump(batch_id, reviews=1)

    def _bump(self, batch_id: Optional[str], *, cases: int = 0, reviews: int = 0) -> None:
        try:
            with self._lock:
                batch_id = batch_id or self._current_batch_id
                if not batch_id:
                    return
                self.batch_store.increment_batch_counters(batch_id, cases=cases, reviews=reviews)
        except Exception as exc:
            logger.warning(
                "Failed to update counters for batch %s (cases+%d, reviews+%d): %s",
                batch_id,
                cases,
                reviews,
                exc,
            )

    # -------------------------------------------------------------------------
    # Batch close
    # -------------------------------------------------------------------------

    def complete_batch(self) -> BatchCompletion:
        with self._lock:
            batch_id = self.current_batch_id
            batch = self.batch_store.get_batch(batch_id)
            metrics = self.calculate_batch_metrics(batch_id)

            batch.status = BatchStatus.COMPLETED
            batch.completed_at = self.clock()
            batch.metrics = metrics
            self.batch_store.update_batch(batch)

            # The batch is closed from here on; metric rows are written once.
            self._current_batch_id = None
            try:
                self.metric_sink.record_metrics(self._metric_rows(batch_id, metrics))
            except Exception as exc:
                logger.warning("Failed to record performance metrics for batch %s: %s", batch_id, exc)

            try:
                new_batch = self._open_batch()
            except Exception:
                logger.error("Closed batch %s but could not open the next one; start() will retry.", batch_id)
                raise
            self._current_batch_id = new_batch.batch_id
            logger.info(
                "Completed validation batch %s | cases=%d | reviews=%d | accuracy=%.3f | concordance=%.3f",
                batch_id,
                metrics.case_count,
                metrics.review_count,
                metrics.accuracy_rate,
                metrics.concordance_rate,
            )
            return BatchCompletion(
                completed_batch_id=batch_id,
                new_batch_id=new_batch.batch_id,
                metrics=metrics,
            )

    def calculate_batch_metrics(self, batch_id: str) -> BatchMetrics:
        _, cases = self.case_store.query_cases(batch_id=batch_id, status=CaseStatus.COMPLETED, limit=None)
        now = self.clock()
        if not cases:
            return BatchMetrics(timestamp=now)

        reviews = self.review_store.list_reviews_for_cases(c.case_id for c in cases)

        rated = [r for r in reviews if r.is_accurate is not None]
        accurate = sum(1 for r in rated if r.is_accurate)
        accuracy_rate = accurate / len(rated) if rated else 0.0

        ratings = [r.concordance_rating for r in reviews if r.concordance_rating is not None]
        concordance_rate = sum(ratings) / len(ratings) if ratings else 0.0

        counts: Dict[str, List[int]] = {}
        for case in cases:
            diagnosis = case.traditional_diagnosis.diagnosis
            if not diagnosis:
                continue
            tally = counts.setdefault(diagnosis, [0, 0])
            for review in reviews:
                if review.case_id != case.case_id or review.is_accurate is None:
                    continue
                tally[0] += 1
                if review.is_accurate:
                    tally[1] += 1
        disharmony_accuracy = {
            diagnosis: (hits / total if total else 0.0) for diagnosis, (total, hits) in counts.items()
        }

        return BatchMetrics(
            case_count=len(cases),
            review_count=len(reviews),
            accuracy_rate=accuracy_rate,
            concordance_rate=concordance_rate,
            disharmony_accuracy=disharmony_accuracy,
            timestamp=now,
        )

    def _metric_rows(self, batch_id: str, metrics: BatchMetrics) -> List[PerformanceMetric]:
        rows = [
            PerformanceMetric(metric_name=ACCURACY_RATE, value=metrics.accuracy_rate, batch_id=batch_id, timestamp=metrics.timestamp),
            PerformanceMetric(metric_name=CONCORDANCE_RATE, value=metrics.concordance_rate, batch_id=batch_id, timestamp=metrics.timestamp),
        ]
        for diagnosis, value in metrics.disharmony_accuracy.items():
            rows.append(
                PerformanceMetric(
                    metric_name=DISHARMONY_ACCURACY,
                    diagnosis=diagnosis,
                    value=value,
                    batch_id=batch_id,
                    timestamp=metrics.timestamp,
                )
            )
        return rows

    def _open_batch(self) -> ValidationBatch:
        now = self.clock()
        batch = ValidationBatch(
            batch_id=f"batch-{int(now.timestamp() * 1000)}-{uuid4().hex[:6]}",
            status=BatchStatus.IN_PROGRESS,
            created_at=now,
        )
        self.batch_store.create_batch(batch)
        logger.info("Opened validation batch %s.", batch.batch_id)
        return batch

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_batches(
        self,
        *,
        status: Optional[BatchStatus] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> BatchQueryResult:
        total, items = self.batch_store.query_batches(status=status, limit=limit, offset=offset)
        return BatchQueryResult(total=total, items=items, limit=limit, offset=offset)

    def performance_history(
        self,
        *,
        metric_name: Optional[str] = None,
        diagnosis: Optional[str] = None,
        limit: int = 20,
        time_range_days: Optional[int] = 30,
    ) -> Dict[str, List[MetricPoint]]:
        since = self.clock() - timedelta(days=time_range_days) if time_range_days else None
        rows = self.metric_sink.query_metrics(
            metric_name=metric_name,
            diagnosis=diagnosis,
            since=since,
            limit=limit,
        )
        grouped: Dict[str, List[MetricPoint]] = {}
        for row in rows:
            name = f"{row.metric_name}_{row.diagnosis}" if row.diagnosis else row.metric_name
            grouped.setdefault(name, []).append(
                MetricPoint(value=row.value, timestamp=row.timestamp, batch_id=row.batch_id)
            )
        for points in grouped.values():
            points.sort(key=lambda p: p.timestamp)
        return grouped

    def validation_progress(self) -> ValidationProgress:
        if self._current_batch_id is None:
            return ValidationProgress(batch_id=None, status="no_active_batch")
        batch = self.batch_store.get_batch(self._current_batch_id)
        completed, _ = self.case_store.query_cases(
            batch_id=batch.batch_id, status=CaseStatus.COMPLETED, limit=1
        )
        progress = (completed / batch.case_count) * 100 if batch.case_count > 0 else 0.0
        return ValidationProgress(
            batch_id=batch.batch_id,
            status=batch.status.value,
            progress=progress,
            case_count=batch.case_count,
            completed_cases=completed,
            review_count=batch.review_count,
            created_at=batch.created_at,
        )
