"""
Scoring-parameter trees.

A parameter tree is a nested mapping whose nodes are either a leaf (a plain
number) or a group (a mapping of name -> node). Booleans are not leaves.
All helpers here are pure: they return new trees and never mutate inputs.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any, Dict, Iterator, Tuple

from errors import ParameterShapeError, ValidationError

ParameterTree = Dict[str, Any]

LEAF = "leaf"
GROUP = "group"


def node_kind(value: Any) -> str:
    if isinstance(value, bool):
        raise ValidationError(f"Boolean {value!r} is not a valid parameter value.")
    if isinstance(value, (int, float)):
        return LEAF
    if isinstance(value, Mapping):
        return GROUP
    raise ValidationError(f"Unsupported parameter value of type {type(value).__name__}.")


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


def ensure_tree(value: Any, path: str = "") -> ParameterTree:
    """Returns a validated deep copy with every leaf coerced to float."""
    if not isinstance(value, Mapping):
        raise ValidationError(f"Parameter group {path or '<root>'!r} must be a mapping.")
    out: ParameterTree = {}
    for key, node in value.items():
        child_path = _join(path, str(key))
        try:
            kind = node_kind(node)
        except ValidationError as exc:
            raise ValidationError(f"{child_path}: {exc.reason}") from exc
        out[str(key)] = float(node) if kind == LEAF else ensure_tree(node, child_path)
    return out


def copy_tree(tree: ParameterTree) -> ParameterTree:
    return copy.deepcopy(tree)


def iter_leaves(tree: ParameterTree, path: str = "") -> Iterator[Tuple[str, float]]:
    for key, node in tree.items():
        child_path = _join(path, key)
        if node_kind(node) == GROUP:
            yield from iter_leaves(node, child_path)
        else:
            yield child_path, float(node)


def merge_tree(base: ParameterTree, payload: ParameterTree) -> ParameterTree:
    """
    Deep-merges `payload` over a copy of `base`.

    Groups merge recursively, leaves overwrite. Replacing a leaf with a group
    (or the reverse) raises `ParameterShapeError` and nothing is merged.
    """
    merged = copy_tree(base)
    _merge_into(merged, ensure_tree(payload), "")
    return merged


def _merge_into(target: ParameterTree, source: ParameterTree, path: str) -> None:
    for key, incoming in source.items():
        child_path = _join(path, key)
        incoming_kind = node_kind(incoming)
        if key not in target:
            target[key] = copy_tree(incoming) if incoming_kind == GROUP else incoming
            continue
        existing_kind = node_kind(target[key])
        if existing_kind != incoming_kind:
            raise ParameterShapeError(child_path, existing_kind, incoming_kind)
        if incoming_kind == GROUP:
            _merge_into(target[key], incoming, child_path)
        else:
            target[key] = incoming


def adjustment_degree(current: ParameterTree, payload: ParameterTree) -> float:
    """
    Mean relative change over every numeric leaf the payload touches.

    Each term is |new - old| / max(|old|, 1). Leaves that do not exist yet
    in `current` add no term.
    """
    total, count = _degree_terms(current, ensure_tree(payload))
    return total / count if count else 0.0


def _degree_terms(current: Mapping, payload: Mapping) -> Tuple[float, int]:
    total = 0.0
    count = 0
    for key, incoming in payload.items():
        if key not in current:
            continue
        existing = current[key]
        incoming_kind = node_kind(incoming)
        if incoming_kind != node_kind(existing):
            continue
        if incoming_kind == GROUP:
            sub_total, sub_count = _degree_terms(existing, incoming)
            total += sub_total
            count += sub_count
        else:
            old = float(existing)
            total += abs(float(incoming) - old) / max(abs(old), 1.0)
            count += 1
    return total, count


# Baseline written as the default version on first initialization.
BASELINE_PARAMETERS: ParameterTree = {
    # five-tone weights
    "toneType": {
        "gong": 0.2,
        "shang": 0.2,
        "jue": 0.2,
        "zhi": 0.2,
        "yu": 0.2,
    },
    "timbre": {
        "pitch": 0.25,
        "intensity": 0.25,
        "rhythm": 0.25,
        "quality": 0.25,
    },
    "disharmony": {
        "primarySymptoms": 0.6,
        "secondarySymptoms": 0.3,
        "constitutionFactor": 0.1,
    },
    "featureThresholds": {
        "high": 0.75,
        "medium": 0.5,
        "low": 0.25,
    },
}


def baseline_parameters() -> ParameterTree:
    return copy_tree(BASELINE_PARAMETERS)
