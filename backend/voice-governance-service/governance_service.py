"""
Voice Governance Service - Composition Root

Builds the parameter store, the validation repositories, the voice-diagnosis
client and the three lifecycle components once per process from the
environment.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Tuple

from adjustment_engine import AdjustmentEngine
from batch_lifecycle import BatchLifecycleManager
from case_lifecycle import CaseLifecycleManager
from env_loader import env_float, env_int, env_str, load_service_env
from models import AdjustmentPolicy, utc_now
from normalization import NormalizationEngine
from parameter_store import ParameterStore
from validation_repository import InMemoryValidationRepository, SqliteValidationRepository
from version_repository import InMemoryVersionStore, SqliteVersionStore, VersionStore
from voice_diagnosis_client import DiagnosisProvider, VoiceDiagnosisClient

load_service_env()

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = {"sqlite", "memory"}


def policy_from_env() -> AdjustmentPolicy:
    return AdjustmentPolicy(
        adjustment_threshold=min(1.0, max(0.0, env_float("VG_ADJUSTMENT_THRESHOLD", 0.15))),
        cooldown_seconds=max(0.0, env_float("VG_ADJUSTMENT_COOLDOWN_HOURS", 24.0)) * 3600.0,
        max_accumulated_edits=max(1, env_int("VG_MAX_ACCUMULATED_EDITS", 5)),
        max_version_history=max(1, env_int("VG_MAX_VERSION_HISTORY", 10)),
    )


class ValidationGovernanceService:
    def __init__(
        self,
        *,
        diagnosis_provider: Optional[DiagnosisProvider] = None,
        consumers: Optional[Sequence[Any]] = None,
        policy: Optional[AdjustmentPolicy] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store_backend = env_str("VG_STORE_BACKEND", "sqlite").lower()
        if self.store_backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported VG_STORE_BACKEND='{self.store_backend}'. "
                f"Allowed values: {', '.join(sorted(SUPPORTED_BACKENDS))}."
            )
        self.local_data_dir = Path(env_str("VG_LOCAL_DATA_DIR", "./local_data")).expanduser().resolve()
        self.sqlite_db_path = (
            os.getenv("VG_SQLITE_DB_PATH") or str(self.local_data_dir / "voice_governance.sqlite3")
        ).strip()

        version_store, repository = self._build_stores()
        self.repository = repository
        self.parameter_store = ParameterStore(version_store, clock=clock)
        self.engine = AdjustmentEngine(
            self.parameter_store,
            policy=policy or policy_from_env(),
            normalizer=NormalizationEngine(),
            consumers=consumers,
            clock=clock,
        )
        self.diagnosis_provider = diagnosis_provider or VoiceDiagnosisClient()
        self.batches = BatchLifecycleManager(
            batch_store=repository,
            case_store=repository,
            review_store=repository,
            metric_sink=repository,
            clock=clock,
        )
        self.cases = CaseLifecycleManager(
            case_store=repository,
            review_store=repository,
            batches=self.batches,
            diagnosis_provider=self.diagnosis_provider,
            engine=self.engine,
            clock=clock,
        )
        self._started = False

        logger.info(
            "ValidationGovernanceService initialized | store=%s | db=%s | threshold=%.2f | "
            "cooldown=%.0fs | max_edits=%d | history=%d | diagnosis_mode=%s",
            self.store_backend,
            self.sqlite_db_path if self.store_backend == "sqlite" else "-",
            self.engine.policy.adjustment_threshold,
            self.engine.policy.cooldown_seconds,
            self.engine.policy.max_accumulated_edits,
            self.engine.policy.max_version_history,
            getattr(self.diagnosis_provider, "mode", "custom"),
        )

    def _build_stores(self) -> Tuple[VersionStore, Any]:
        if self.store_backend == "sqlite":
            return (
                SqliteVersionStore(db_path=self.sqlite_db_path),
                SqliteValidationRepository(db_path=self.sqlite_db_path),
            )
        return InMemoryVersionStore(), InMemoryValidationRepository()

    def start(self) -> "ValidationGovernanceService":
        """Loads the live parameter version and resumes or opens the current batch."""
        if not self._started:
            self.engine.load()
            self.batches.start()
            self._started = True
        return self

    def register_consumer(self, consumer: Any) -> None:
        self.engine.register_consumer(consumer)
