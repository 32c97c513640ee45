"""
Voice Governance Service - Error Taxonomy

Every failure surfaced by the governance core is a `GovernanceError` tagged
with an `ErrorKind`, so callers can branch on the kind instead of parsing
messages.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_STATE = "invalid_state"
    DIAGNOSIS = "diagnosis"
    PERSISTENCE = "persistence"
    CORRUPTION = "corruption"


class GovernanceError(Exception):
    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "reason": self.reason}


class ValidationError(GovernanceError):
    kind = ErrorKind.VALIDATION


class ParameterShapeError(ValidationError):
    """A merge tried to replace a leaf with a group, or a group with a leaf."""

    def __init__(self, path: str, existing: str, incoming: str) -> None:
        super().__init__(
            f"Parameter {path!r} is a {existing}; an adjustment cannot replace it with a {incoming}."
        )
        self.path = path


class NotFoundError(GovernanceError):
    kind = ErrorKind.NOT_FOUND


class ConflictError(GovernanceError):
    kind = ErrorKind.CONFLICT


class InvalidStateError(GovernanceError):
    kind = ErrorKind.INVALID_STATE


class DiagnosisError(GovernanceError):
    kind = ErrorKind.DIAGNOSIS


class PersistenceError(GovernanceError):
    kind = ErrorKind.PERSISTENCE


class VersionHistoryCorruptedError(GovernanceError):
    """
    The persisted parameter history cannot be trusted. The engine must not
    keep running with an unknown current version.
    """

    kind = ErrorKind.CORRUPTION
