"""
Normalization of scoring-parameter snapshots.

Weight groups are rescaled to sum to 1. Threshold groups are clamped to
[0, 1] and forced into high >= medium >= low order. Groups that are neither
(for example learned tone/diagnosis mappings) pass through untouched.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

from errors import ValidationError
from parameter_tree import GROUP, LEAF, ParameterTree, copy_tree, node_kind

logger = logging.getLogger(__name__)

DEFAULT_WEIGHT_GROUPS: Tuple[str, ...] = ("toneType", "timbre", "disharmony")
DEFAULT_THRESHOLD_GROUPS: Tuple[str, ...] = ("featureThresholds",)
THRESHOLD_KEYS: Tuple[str, ...] = ("high", "medium", "low")
THRESHOLD_STEP = 0.1


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class NormalizationEngine:
    def __init__(
        self,
        weight_groups: Optional[Iterable[str]] = None,
        threshold_groups: Optional[Iterable[str]] = None,
    ) -> None:
        self.weight_groups = tuple(weight_groups or DEFAULT_WEIGHT_GROUPS)
        self.threshold_groups = tuple(threshold_groups or DEFAULT_THRESHOLD_GROUPS)
        overlap = set(self.weight_groups) & set(self.threshold_groups)
        if overlap:
            raise ValidationError(f"Groups cannot be both weight and threshold groups: {sorted(overlap)}")

    def normalize(self, snapshot: ParameterTree) -> ParameterTree:
        """Returns a normalized copy of `snapshot`."""
        result = copy_tree(snapshot)
        for name in self.weight_groups:
            if name in result:
                result[name] = self.normalize_weight_group(result[name], name)
        for name in self.threshold_groups:
            if name in result:
                result[name] = self.normalize_threshold_group(result[name], name)
        return result

    @staticmethod
    def normalize_weight_group(group: ParameterTree, name: str = "weights") -> ParameterTree:
        if node_kind(group) != GROUP:
            raise ValidationError(f"Weight group {name!r} must be a mapping of category -> weight.")
        for key, value in group.items():
            if node_kind(value) != LEAF:
                raise ValidationError(f"Weight group {name!r} has a nested group at {key!r}.")
        if not group:
            return {}

        total = sum(float(v) for v in group.values())
        if total <= 0:
            uniform = 1.0 / len(group)
            logger.warning(
                "Weight group %s sums to %.4f; resetting to uniform %.4f.", name, total, uniform
            )
            return {key: uniform for key in group}
        return {key: float(value) / total for key, value in group.items()}

    @staticmethod
    def normalize_threshold_group(group: ParameterTree, name: str = "thresholds") -> ParameterTree:
        if node_kind(group) != GROUP:
            raise ValidationError(f"Threshold group {name!r} must be a mapping.")
        missing = [key for key in THRESHOLD_KEYS if key not in group]
        if missing:
            raise ValidationError(f"Threshold group {name!r} is missing {', '.join(missing)}.")
        for key, value in group.items():
            if node_kind(value) != LEAF:
                raise ValidationError(f"Threshold group {name!r} has a nested group at {key!r}.")

        # Each step reads the values left by the previous one.
        out = {key: _clamp(float(value)) for key, value in group.items()}
        if out["high"] < out["medium"]:
            out["high"] = out["medium"] + THRESHOLD_STEP
        if out["medium"] < out["low"]:
            out["medium"] = out["low"] + THRESHOLD_STEP
        if out["high"] > 1:
            excess = out["high"] - 1
            out["high"] = 1.0
            out["medium"] = max(0.0, out["medium"] - excess)
            out["low"] = max(0.0, out["low"] - excess)

        # Inputs such as low > high leave the steps above unordered; cap each
        # level by the one above it.
        out["high"] = _clamp(out["high"])
        out["medium"] = _clamp(min(out["medium"], out["high"]))
        out["low"] = _clamp(min(out["low"], out["medium"]))
        return out
