"""
Voice Governance Service - Data Models

Pydantic contracts for:
- Scoring-parameter versions
- Validation cases, expert reviews and batches
- Performance metrics
- Operation payloads and results

Persisted records serialize with camelCase field names; other tooling reads
those documents directly.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from errors import ValidationError as GovernanceValidationError
from parameter_tree import ParameterTree, ensure_tree


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# ENUMS
# =============================================================================


class CaseStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    INSUFFICIENT = "insufficient_data"


class CaseCategory(str, Enum):
    CLINICAL_CASE = "clinical_case"
    RESEARCH_SAMPLE = "research_sample"
    TEACHING_MATERIAL = "teaching_material"
    MODEL_TRAINING = "model_training"


class BatchStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


# =============================================================================
# PARAMETER VERSIONS
# =============================================================================


class ParameterVersionRecord(RecordModel):
    version: str
    parameters: Dict[str, Any]
    created_at: datetime = Field(default_factory=utc_now)
    is_default: bool = False
    description: Optional[str] = None
    user_id: Optional[str] = None
    is_expert_adjustment: bool = False
    previous_version: Optional[str] = None
    is_rollback: bool = False
    is_reset: bool = False
    original_version: Optional[str] = None

    @field_validator("parameters")
    @classmethod
    def _check_parameter_tree(cls, value: Dict[str, Any]) -> ParameterTree:
        try:
            return ensure_tree(value)
        except GovernanceValidationError as exc:
            raise ValueError(exc.reason) from exc


class VersionMetadata(BaseModel):
    description: Optional[str] = None
    user_id: Optional[str] = None
    previous_version: Optional[str] = None
    is_default: bool = False
    is_expert_adjustment: bool = False
    is_rollback: bool = False
    is_reset: bool = False
    original_version: Optional[str] = None


class VersionSummary(RecordModel):
    version: str
    created_at: datetime
    description: Optional[str] = None
    user_id: Optional[str] = None
    is_expert_adjustment: bool = False
    previous_version: Optional[str] = None
    is_rollback: bool = False
    is_reset: bool = False


class AdjustmentPolicy(BaseModel):
    adjustment_threshold: float = Field(default=0.15, ge=0.0, le=1.0)
    cooldown_seconds: float = Field(default=24 * 60 * 60, ge=0.0)
    max_accumulated_edits: int = Field(default=5, ge=1)
    max_version_history: int = Field(default=10, ge=1)


class AdjustmentOptions(BaseModel):
    force_save: bool = False
    is_expert_adjustment: bool = False
    description: Optional[str] = None
    author_id: Optional[str] = None


class AdjustmentResult(BaseModel):
    committed: bool
    version: str
    degree: Optional[float] = None
    message: str
    previous_version: Optional[str] = None


class CurrentParameters(RecordModel):
    version: str
    parameters: Dict[str, Any]
    last_updated: Optional[datetime] = None


# =============================================================================
# VALIDATION CASES AND REVIEWS
# =============================================================================


class TraditionalDiagnosis(RecordModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")

    diagnosis: str
    syndrome_elements: List[str] = Field(default_factory=list)
    practitioner: Optional[str] = None


class VoiceDiagnosisResult(RecordModel):
    dominant_tone: Optional[str] = None
    tone_scores: Dict[str, float] = Field(default_factory=dict)
    timbre_features: List[str] = Field(default_factory=list)
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    engine_version: Optional[str] = None
    analyzed_at: datetime = Field(default_factory=utc_now)
    raw: Dict[str, Any] = Field(default_factory=dict)


class ValidationCase(RecordModel):
    case_id: str
    patient_info: Dict[str, Any]
    traditional_diagnosis: TraditionalDiagnosis
    audio_reference: Optional[str] = None
    category: CaseCategory = CaseCategory.CLINICAL_CASE
    status: CaseStatus = CaseStatus.PENDING
    batch_id: Optional[str] = None
    voice_diagnosis_result: Optional[VoiceDiagnosisResult] = None
    diagnosis_error: Optional[str] = None
    review_ids: List[str] = Field(default_factory=list)
    submitted_by: Optional[str] = None
    notes: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ConcordanceAnalysis(RecordModel):
    match_level: Optional[str] = None
    match_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ReviewSuggestion(RecordModel):
    field: str
    correct_value: Any = None
    note: Optional[str] = None


class ExpertReview(RecordModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, frozen=True)

    review_id: str
    case_id: str
    expert_id: str
    concordance_rating: int = Field(ge=1, le=5)
    concordance_analysis: ConcordanceAnalysis = Field(default_factory=ConcordanceAnalysis)
    suggestions: List[ReviewSuggestion] = Field(default_factory=list)
    comments: str = ""
    is_accurate: Optional[bool] = None
    created_at: datetime = Field(default_factory=utc_now)


class CaseSubmission(RecordModel):
    case_id: Optional[str] = None
    patient_info: Optional[Dict[str, Any]] = None
    traditional_diagnosis: Optional[Dict[str, Any]] = None
    audio_reference: Optional[str] = None
    audio_data: Optional[bytes] = None
    category: Optional[str] = None
    submitted_by: Optional[str] = None
    notes: Optional[str] = None


class ReviewSubmission(RecordModel):
    case_id: Optional[str] = None
    expert_id: Optional[str] = None
    concordance_rating: Optional[Any] = None
    concordance_analysis: Optional[ConcordanceAnalysis] = None
    suggestions: List[ReviewSuggestion] = Field(default_factory=list)
    comments: Optional[str] = None
    is_accurate: Optional[bool] = None
    adjust_model: bool = Field(default=False, alias="shouldAdjustModel")


class CaseSubmissionResult(BaseModel):
    case_id: str
    status: CaseStatus
    batch_id: Optional[str] = None
    message: str
    diagnosis_result: Optional[VoiceDiagnosisResult] = None


class ReviewSubmissionResult(BaseModel):
    review_id: str
    case_id: str
    status: CaseStatus
    message: str
    adjustment: Optional[AdjustmentResult] = None
    adjustment_error: Optional[Dict[str, str]] = None


class ValidationOutcome(BaseModel):
    case_id: str
    expert_id: Optional[str] = None
    diagnosis: Optional[str] = None
    voice_diagnosis: Optional[VoiceDiagnosisResult] = None
    match_score: Optional[float] = None
    is_accurate: Optional[bool] = None


class CaseQueryResult(BaseModel):
    total: int
    items: List[ValidationCase] = Field(default_factory=list)
    reviews: Dict[str, List[ExpertReview]] = Field(default_factory=dict)
    limit: int
    offset: int


# =============================================================================
# BATCHES AND METRICS
# =============================================================================


class BatchMetrics(RecordModel):
    case_count: int = 0
    review_count: int = 0
    accuracy_rate: float = 0.0
    concordance_rate: float = 0.0
    disharmony_accuracy: Dict[str, float] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ValidationBatch(RecordModel):
    batch_id: str
    status: BatchStatus = BatchStatus.IN_PROGRESS
    case_count: int = 0
    review_count: int = 0
    metrics: Optional[BatchMetrics] = None
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class PerformanceMetric(RecordModel):
    metric_name: str
    value: float
    diagnosis: Optional[str] = None
    batch_id: str
    timestamp: datetime = Field(default_factory=utc_now)


class BatchCompletion(BaseModel):
    completed_batch_id: str
    new_batch_id: str
    metrics: BatchMetrics


class BatchQueryResult(BaseModel):
    total: int
    items: List[ValidationBatch] = Field(default_factory=list)
    limit: int
    offset: int


class MetricPoint(BaseModel):
    value: float
    timestamp: datetime
    batch_id: str


class ValidationProgress(BaseModel):
    batch_id: Optional[str]
    status: str
    progress: float = 0.0
    case_count: int = 0
    completed_cases: int = 0
    review_count: int = 0
    created_at: Optional[datetime] = None
