"""
Voice Governance Service - Adjustment Engine

Owns the live scoring-parameter snapshot and decides, per incoming
adjustment, whether to fold it into the in-memory snapshot or to commit a
new persisted version.

Commit policy:
- inside the cooldown window (and not forced) edits only accumulate;
- outside it, a commit happens when forced, when flagged as an expert
  adjustment, when the adjustment degree reaches the threshold, or when the
  accumulated-edit counter reaches its limit.

All mutating entry points run under one re-entrant lock. A commit persists
first and only then swaps the in-memory pointers, so a failed save leaves
the engine exactly as it was.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from errors import InvalidStateError, ValidationError, VersionHistoryCorruptedError
from models import (
    AdjustmentOptions,
    AdjustmentPolicy,
    AdjustmentResult,
    CurrentParameters,
    ParameterVersionRecord,
    ValidationOutcome,
    VersionMetadata,
    VersionSummary,
    utc_now,
)
from normalization import NormalizationEngine
from parameter_store import ParameterStore
from parameter_tree import ParameterTree, adjustment_degree, copy_tree, ensure_tree, merge_tree

logger = logging.getLogger(__name__)

DEFAULT_MATCH_SCORE = 0.5
TONE_MAPPING_GROUP = "toneDisharmonyMapping"
FEATURE_MAPPING_GROUP = "featureDisharmonyMapping"


class ParameterConsumer:
    """A scoring model that must see every committed snapshot."""

    name = "consumer"

    def update_parameters(self, snapshot: ParameterTree) -> None:
        raise NotImplementedError


class _CallableConsumer(ParameterConsumer):
    def __init__(self, fn: Callable[[ParameterTree], Any], name: str) -> None:
        self._fn = fn
        self.name = name

    def update_parameters(self, snapshot: ParameterTree) -> None:
        self._fn(snapshot)


def extract_validation_adjustments(outcomes: Sequence[ValidationOutcome]) -> ParameterTree:
    """
    Builds an adjustment payload from reviewed validation cases.

    The review's match score (0.5 when absent) is summed under
    toneDisharmonyMapping[dominantTone][diagnosis] and under
    featureDisharmonyMapping[diagnosis][feature] for every detected timbre
    feature.
    """
    tone_mapping: Dict[str, Dict[str, float]] = {}
    feature_mapping: Dict[str, Dict[str, float]] = {}

    for outcome in outcomes:
        voice = outcome.voice_diagnosis
        if voice is None or not outcome.diagnosis:
            continue
        confidence = DEFAULT_MATCH_SCORE if outcome.match_score is None else float(outcome.match_score)

        if voice.dominant_tone:
            row = tone_mapping.setdefault(voice.dominant_tone, {})
            row[outcome.diagnosis] = row.get(outcome.diagnosis, 0.0) + confidence

        if voice.timbre_features:
            row = feature_mapping.setdefault(outcome.diagnosis, {})
            for feature in voice.timbre_features:
                row[feature] = row.get(feature, 0.0) + confidence

    payload: ParameterTree = {}
    if tone_mapping:
        payload[TONE_MAPPING_GROUP] = tone_mapping
    if feature_mapping:
        payload[FEATURE_MAPPING_GROUP] = feature_mapping
    return payload


class AdjustmentEngine:
    def __init__(
        self,
        store: ParameterStore,
        *,
        policy: Optional[AdjustmentPolicy] = None,
        normalizer: Optional[NormalizationEngine] = None,
        consumers: Optional[Sequence[Union[ParameterConsumer, Callable[[ParameterTree], Any]]]] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.policy = policy or AdjustmentPolicy()
        self.normalizer = normalizer or NormalizationEngine()
        self.clock = clock
        self._lock = RLock()
        self._consumers: List[ParameterConsumer] = []
        for consumer in consumers or []:
            self.register_consumer(consumer)

        self._current_version: Optional[str] = None
        self._current_snapshot: ParameterTree = {}
        self._adjustment_counter = 0
        self._last_commit_time: Optional[datetime] = None
        self._history: List[ParameterVersionRecord] = []

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def load(self) -> "AdjustmentEngine":
        with self._lock:
            default = self.store.initialize()
            latest = self.store.get_latest_non_default()
            if latest is None:
                current = default
                last_commit: Optional[datetime] = None
            else:
                if latest.previous_version and not self.store.exists(latest.previous_version):
                    raise VersionHistoryCorruptedError(
                        f"Version {latest.version} links to missing previous version {latest.previous_version}."
                    )
                current = latest
                last_commit = latest.created_at

            self._current_version = current.version
            self._current_snapshot = copy_tree(current.parameters)
            self._last_commit_time = last_commit
            self._adjustment_counter = 0
            self._refresh_history()
            logger.info(
                "AdjustmentEngine loaded | version=%s | threshold=%.2f | cooldown=%.0fs | max_edits=%d",
                self._current_version,
                self.policy.adjustment_threshold,
                self.policy.cooldown_seconds,
                self.policy.max_accumulated_edits,
            )
        return self

    def register_consumer(self, consumer: Union[ParameterConsumer, Callable[[ParameterTree], Any]]) -> None:
        if not hasattr(consumer, "update_parameters"):
            if not callable(consumer):
                raise TypeError("Consumers must expose update_parameters(snapshot) or be callable.")
            consumer = _CallableConsumer(consumer, getattr(consumer, "__name__", "callable"))
        with self._lock:
            self._consumers.append(consumer)

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def current_version(self) -> str:
        self._require_loaded()
        return self._current_version  # type: ignore[return-value]

    @property
    def adjustment_counter(self) -> int:
        return self._adjustment_counter

    @property
    def last_commit_time(self) -> Optional[datetime]:
        return self._last_commit_time

    def snapshot(self) -> ParameterTree:
        with self._lock:
            return copy_tree(self._current_snapshot)

    def current_parameters(self) -> CurrentParameters:
        with self._lock:
            self._require_loaded()
            return CurrentParameters(
                version=self._current_version,
                parameters=copy_tree(self._current_snapshot),
                last_updated=self._last_commit_time,
            )

    def parameter_history(
        self, limit: int = 10, *, full: bool = False
    ) -> List[Union[VersionSummary, ParameterVersionRecord]]:
        limit = max(1, int(limit))
        with self._lock:
            if self._history and not full and limit <= len(self._history):
                records = self._history[:limit]
            else:
                records = self.store.list_history(limit)
        if full:
            return list(records)
        return [VersionSummary.model_validate(record.model_dump()) for record in records]

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def apply_adjustments(
        self,
        payload: ParameterTree,
        options: Optional[AdjustmentOptions] = None,
        **overrides: Any,
    ) -> AdjustmentResult:
        opts = options or AdjustmentOptions()
        if overrides:
            opts = opts.model_copy(update=overrides)
        adjustments = ensure_tree(payload)

        with self._lock:
            self._require_loaded()
            now = self.clock()

            if not opts.force_save and self._in_cooldown(now):
                self._current_snapshot = self._checked_merge(adjustments)
                self._adjustment_counter += 1
                logger.info(
                    "Adjustment accumulated during cooldown (version=%s, counter=%d).",
                    self._current_version,
                    self._adjustment_counter,
                )
                return AdjustmentResult(
                    committed=False,
                    version=self._current_version,
                    message="Adjustment accumulated during cooldown; no new version created.",
                )

            degree = adjustment_degree(self._current_snapshot, adjustments)
            merged = self._checked_merge(adjustments)
            metadata = VersionMetadata(
                description=opts.description or "Automatic parameter adjustment",
                user_id=opts.author_id or "system",
                is_expert_adjustment=opts.is_expert_adjustment,
                previous_version=self._current_version,
            )

            if opts.force_save or opts.is_expert_adjustment or degree >= self.policy.adjustment_threshold:
                return self._commit(merged, metadata, degree=degree, message="New parameter version created.")

            next_counter = self._adjustment_counter + 1
            if next_counter >= self.policy.max_accumulated_edits:
                return self._commit(
                    merged,
                    metadata,
                    degree=degree,
                    message="Accumulated adjustments reached the limit; new parameter version created.",
                )

            self._current_snapshot = merged
            self._adjustment_counter = next_counter
            logger.info(
                "Adjustment below threshold | degree=%.4f | threshold=%.2f | counter=%d",
                degree,
                self.policy.adjustment_threshold,
                self._adjustment_counter,
            )
            return AdjustmentResult(
                committed=False,
                version=self._current_version,
                degree=degree,
                message="Adjustment applied; no new version created.",
            )

    def rollback_to_version(
        self,
        version_id: str,
        *,
        description: Optional[str] = None,
        author_id: Optional[str] = None,
    ) -> AdjustmentResult:
        with self._lock:
            self._require_loaded()
            if version_id == self._current_version:
                raise InvalidStateError(f"Version {version_id} is already current.")
            target = self.store.get_by_id(version_id)
            metadata = VersionMetadata(
                description=description or f"Rollback to version {version_id}",
                user_id=author_id or "system",
                previous_version=self._current_version,
                is_rollback=True,
                original_version=target.version,
            )
            return self._commit(
                copy_tree(target.parameters),
                metadata,
                normalize=False,
                message=f"Rolled back to version {version_id}.",
            )

    def reset_to_default(
        self,
        *,
        description: Optional[str] = None,
        author_id: Optional[str] = None,
    ) -> AdjustmentResult:
        with self._lock:
            self._require_loaded()
            default = self.store.get_default()
            if default.version == self._current_version:
                raise InvalidStateError("Default parameters are already current.")
            metadata = VersionMetadata(
                description=description or "Reset to default parameters",
                user_id=author_id or "system",
                previous_version=self._current_version,
                is_reset=True,
                original_version=default.version,
            )
            return self._commit(
                copy_tree(default.parameters),
                metadata,
                normalize=False,
                message="Parameters reset to default.",
            )

    def on_clinical_validation_update(self, outcomes: Sequence[ValidationOutcome]) -> AdjustmentResult:
        if not outcomes:
            raise ValidationError("No validation outcomes supplied.")
        payload = extract_validation_adjustments(outcomes)
        if not payload:
            raise ValidationError("Validation outcomes produced no parameter adjustments.")
        return self.apply_adjustments(
            payload,
            AdjustmentOptions(
                is_expert_adjustment=True,
                description="Adjustment from clinical validation results",
                author_id="clinical_validation",
            ),
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _commit(
        self,
        snapshot: ParameterTree,
        metadata: VersionMetadata,
        *,
        degree: Optional[float] = None,
        normalize: bool = True,
        message: str,
    ) -> AdjustmentResult:
        candidate = self.normalizer.normalize(snapshot) if normalize else snapshot
        record = self.store.save(candidate, metadata)

        previous = self._current_version
        self._current_version = record.version
        self._current_snapshot = copy_tree(record.parameters)
        self._last_commit_time = record.created_at
        self._adjustment_counter = 0
        logger.info(
            "Committed parameter version %s (previous=%s, expert=%s, rollback=%s, reset=%s).",
            record.version,
            previous,
            record.is_expert_adjustment,
            record.is_rollback,
            record.is_reset,
        )

        self._refresh_history()
        self._notify_consumers()
        return AdjustmentResult(
            committed=True,
            version=record.version,
            degree=degree,
            message=message,
            previous_version=previous,
        )

    def _checked_merge(self, adjustments: ParameterTree) -> ParameterTree:
        """Merges `adjustments` into the live snapshot, rejecting results no commit could normalize."""
        merged = merge_tree(self._current_snapshot, adjustments)
        self.normalizer.normalize(merged)
        return merged

    def _in_cooldown(self, now: datetime) -> bool:
        if self._last_commit_time is None:
            return False
        return now - self._last_commit_time < timedelta(seconds=self.policy.cooldown_seconds)

    def _refresh_history(self) -> None:
        try:
            self._history = self.store.list_history(self.policy.max_version_history)
        except Exception as exc:
            logger.warning("Failed to refresh parameter history cache: %s", exc)
            self._history = []

    def _notify_consumers(self) -> None:
        for consumer in list(self._consumers):
            try:
                consumer.update_parameters(copy_tree(self._current_snapshot))
            except Exception as exc:
                logger.warning(
                    "Parameter consumer %s failed to apply version %s: %s",
                    getattr(consumer, "name", type(consumer).__name__),
                    self._current_version,
                    exc,
                )

    def _require_loaded(self) -> None:
        if self._current_version is None:
            raise InvalidStateError("AdjustmentEngine.load() must run before use.")
