"""
Versioned record of scoring-weight snapshots.

Wraps a `VersionStore` backend with id generation, the one-time default
baseline and typed lookups.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional
from uuid import uuid4

from errors import NotFoundError, VersionHistoryCorruptedError
from models import ParameterVersionRecord, VersionMetadata, utc_now
from parameter_tree import ParameterTree, baseline_parameters, copy_tree
from version_repository import VersionStore

logger = logging.getLogger(__name__)

DEFAULT_VERSION_ID = "default"


def new_version_id(metadata: VersionMetadata, now: datetime) -> str:
    prefix = "v"
    if metadata.is_rollback:
        prefix = "rollback-"
    elif metadata.is_reset:
        prefix = "reset-"
    return f"{prefix}{int(now.timestamp() * 1000)}-{uuid4().hex[:6]}"


class ParameterStore:
    def __init__(
        self,
        backend: VersionStore,
        *,
        baseline: Optional[ParameterTree] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.backend = backend
        self.baseline = copy_tree(baseline) if baseline is not None else baseline_parameters()
        self.clock = clock

    def initialize(self) -> ParameterVersionRecord:
        existing = self.backend.find_default()
        if existing is not None:
            logger.info("Loaded stored default parameters (version=%s).", existing.version)
            return existing

        record = ParameterVersionRecord(
            version=DEFAULT_VERSION_ID,
            parameters=self.baseline,
            created_at=self.clock(),
            is_default=True,
            description="Baseline scoring parameters",
            user_id="system",
        )
        self.backend.save(record)
        logger.info("Saved baseline parameters as the default version.")
        return record

    def get_default(self) -> ParameterVersionRecord:
        record = self.backend.find_default()
        if record is None:
            raise VersionHistoryCorruptedError("Default parameter version is missing.")
        return record

    def get_latest_non_default(self) -> Optional[ParameterVersionRecord]:
        return self.backend.find_latest(exclude_default=True)

    def get_by_id(self, version_id: str) -> ParameterVersionRecord:
        record = self.backend.find_by_id(version_id)
        if record is None:
            raise NotFoundError(f"Parameter version not found: {version_id}")
        return record

    def exists(self, version_id: str) -> bool:
        return self.backend.find_by_id(version_id) is not None

    def save(self, snapshot: ParameterTree, metadata: VersionMetadata) -> ParameterVersionRecord:
        """
        Persists one new version. Called at most once per logical commit;
        failures propagate and nothing is retried here.
        """
        now = self.clock()
        record = ParameterVersionRecord(
            version=new_version_id(metadata, now),
            parameters=copy_tree(snapshot),
            created_at=now,
            is_default=metadata.is_default,
            description=metadata.description,
            user_id=metadata.user_id or "system",
            is_expert_adjustment=metadata.is_expert_adjustment,
            previous_version=metadata.previous_version,
            is_rollback=metadata.is_rollback,
            is_reset=metadata.is_reset,
            original_version=metadata.original_version,
        )
        self.backend.save(record)
        return record

    def list_history(self, limit: int = 10, *, include_default: bool = False) -> List[ParameterVersionRecord]:
        return self.backend.list_recent(limit, exclude_default=not include_default)
