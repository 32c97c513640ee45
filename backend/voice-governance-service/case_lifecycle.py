"""
Voice Governance Service - Validation Case Lifecycle

State machine:
    PENDING -> IN_REVIEW -> COMPLETED
    PENDING -> INSUFFICIENT (voice diagnosis failed; terminal)

Completed reviews may be turned into an expert adjustment of the scoring
parameters.
"""

from __future__ import annotations

import logging
from datetime import datetime
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from adjustment_engine import AdjustmentEngine
from batch_lifecycle import BatchLifecycleManager
from errors import (
    ConflictError,
    DiagnosisError,
    GovernanceError,
    InvalidStateError,
    ValidationError,
    VersionHistoryCorruptedError,
)
from models import (
    AdjustmentResult,
    CaseCategory,
    CaseQueryResult,
    CaseStatus,
    CaseSubmission,
    CaseSubmissionResult,
    ConcordanceAnalysis,
    ExpertReview,
    ReviewSubmission,
    ReviewSubmissionResult,
    SortOrder,
    TraditionalDiagnosis,
    ValidationCase,
    ValidationOutcome,
    utc_now,
)
from validation_repository import CaseStore, ReviewStore
from voice_diagnosis_client import DiagnosisProvider

logger = logging.getLogger(__name__)

CATEGORY_VALUES = [c.value for c in CaseCategory]


def _stamp(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _pydantic_reason(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or str(exc)


def _parse_rating(value: Any) -> int:
    reason = "concordanceRating must be an integer between 1 and 5."
    if value is None or isinstance(value, bool):
        raise ValidationError(reason)
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ValidationError(reason)
        value = int(text)
    elif isinstance(value, float):
        if not value.is_integer():
            raise ValidationError(reason)
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 5:
        raise ValidationError(reason)
    return value


class CaseLifecycleManager:
    def __init__(
        self,
        *,
        case_store: CaseStore,
        review_store: ReviewStore,
        batches: BatchLifecycleManager,
        diagnosis_provider: DiagnosisProvider,
        engine: Optional[AdjustmentEngine] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.case_store = case_store
        self.review_store = review_store
        self.batches = batches
        self.diagnosis_provider = diagnosis_provider
        self.engine = engine
        self.clock = clock
        self._lock = RLock()

    # -------------------------------------------------------------------------
    # Case submission
    # -------------------------------------------------------------------------

    def submit_case(self, data: Union[CaseSubmission, Mapping[str, Any]]) -> CaseSubmissionResult:
        submission = self._coerce(CaseSubmission, data)
        case = self._build_case(submission)

        with self._lock:
            if self.case_store.case_exists(case.case_id):
                raise ConflictError(f"Validation case already exists: {case.case_id}")
            with self.batches.hold_current_batch() as batch_id:
                case.batch_id = batch_id
                self.case_store.create_case(case)
                self.batches.record_case_submitted(batch_id)
            logger.info(
                "Validation case submitted | case=%s | batch=%s | category=%s",
                case.case_id,
                case.batch_id,
                case.category.value,
            )

            if submission.audio_data:
                case = self.run_voice_diagnosis(case.case_id, submission.audio_data)
                return CaseSubmissionResult(
                    case_id=case.case_id,
                    status=case.status,
                    batch_id=case.batch_id,
                    message="Validation case submitted and voice diagnosis completed.",
                    diagnosis_result=case.voice_diagnosis_result,
                )

        return CaseSubmissionResult(
            case_id=case.case_id,
            status=case.status,
            batch_id=case.batch_id,
            message="Validation case submitted.",
        )

    def _build_case(self, submission: CaseSubmission) -> ValidationCase:
        if not submission.patient_info:
            raise ValidationError("patientInfo is required.")
        traditional = submission.traditional_diagnosis or {}
        if not str(traditional.get("diagnosis") or "").strip():
            raise ValidationError("traditionalDiagnosis.diagnosis is required.")
        if not submission.audio_reference and not submission.audio_data:
            raise ValidationError("Either audioReference or audioData is required.")

        category = submission.category or CaseCategory.CLINICAL_CASE.value
        if category not in CATEGORY_VALUES:
            raise ValidationError(
                f"Invalid case category {category!r}; expected one of {', '.join(CATEGORY_VALUES)}."
            )

        now = self.clock()
        try:
            return ValidationCase(
                case_id=submission.case_id or f"case-{_stamp(now)}-{uuid4().hex[:8]}",
                patient_info=dict(submission.patient_info),
                traditional_diagnosis=TraditionalDiagnosis.model_validate(traditional),
                audio_reference=submission.audio_reference,
                category=CaseCategory(category),
                status=CaseStatus.PENDING,
                submitted_by=submission.submitted_by,
                notes=submission.notes or "",
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as exc:
            raise ValidationError(_pydantic_reason(exc)) from exc

    # -------------------------------------------------------------------------
    # Voice diagnosis
    # -------------------------------------------------------------------------

    def run_voice_diagnosis(self, case_id: str, audio_data: bytes) -> ValidationCase:
        with self._lock:
            case = self.case_store.get_case(case_id)
            if case.status != CaseStatus.PENDING:
                raise InvalidStateError(
                    f"Case {case_id} is {case.status.value}; voice diagnosis runs only on pending cases."
                )

            try:
                result = self.diagnosis_provider.analyze(
                    audio_data,
                    {"caseId": case.case_id, "patientInfo": case.patient_info},
                )
            except Exception as exc:
                case.status = CaseStatus.INSUFFICIENT
                case.diagnosis_error = str(exc)
                case.updated_at = self.clock()
                self.case_store.update_case(case)
                logger.exception("Voice diagnosis failed for case %s.", case_id)
                if isinstance(exc, DiagnosisError):
                    raise
                raise DiagnosisError(f"Voice diagnosis failed for case {case_id}: {exc}") from exc

            case.voice_diagnosis_result = result
            case.diagnosis_error = None
            case.status = CaseStatus.IN_REVIEW
            case.updated_at = self.clock()
            self.case_store.update_case(case)
            logger.info(
                "Voice diagnosis stored | case=%s | dominant_tone=%s | confidence=%s",
                case_id,
                result.dominant_tone,
                result.confidence,
            )
            return case

    # -------------------------------------------------------------------------
    # Expert review
    # -------------------------------------------------------------------------

    def submit_expert_review(self, data: Union[ReviewSubmission, Mapping[str, Any]]) -> ReviewSubmissionResult:
        submission = self._coerce(ReviewSubmission, data)
        if not submission.case_id:
            raise ValidationError("caseId is required.")
        if not submission.expert_id:
            raise ValidationError("expertId is required.")
        rating = _parse_rating(submission.concordance_rating)

        with self._lock:
            case = self.case_store.get_case(submission.case_id)
            if case.voice_diagnosis_result is None:
                raise InvalidStateError(
                    f"Case {case.case_id} has not yet been diagnosed; "
                    "an expert review needs a stored voice diagnosis result."
                )

            now = self.clock()
            review = ExpertReview(
                review_id=f"review-{_stamp(now)}-{uuid4().hex[:8]}",
                case_id=case.case_id,
                expert_id=submission.expert_id,
                concordance_rating=rating,
                concordance_analysis=submission.concordance_analysis or ConcordanceAnalysis(),
                suggestions=submission.suggestions,
                comments=submission.comments or "",
                is_accurate=submission.is_accurate,
                created_at=now,
            )
            case.review_ids.append(review.review_id)
            case.status = CaseStatus.COMPLETED
            case.updated_at = now
            self.review_store.attach_review(review, case)
            self.batches.record_review_submitted()
            logger.info(
                "Expert review stored | case=%s | review=%s | rating=%d | accurate=%s",
                case.case_id,
                review.review_id,
                rating,
                review.is_accurate,
            )

            adjustment: Optional[AdjustmentResult] = None
            adjustment_error: Optional[Dict[str, str]] = None
            if submission.adjust_model:
                adjustment, adjustment_error = self._adjust_from_review(case, review)

        return ReviewSubmissionResult(
            review_id=review.review_id,
            case_id=case.case_id,
            status=case.status,
            message="Expert review submitted.",
            adjustment=adjustment,
            adjustment_error=adjustment_error,
        )

    def _adjust_from_review(self, case: ValidationCase, review: ExpertReview):
        if self.engine is None:
            return None, InvalidStateError("No adjustment engine is configured.").to_dict()

        outcome = ValidationOutcome(
            case_id=case.case_id,
            expert_id=review.expert_id,
            diagnosis=case.traditional_diagnosis.diagnosis,
            voice_diagnosis=case.voice_diagnosis_result,
            match_score=review.concordance_analysis.match_score,
            is_accurate=review.is_accurate,
        )
        try:
            return self.engine.on_clinical_validation_update([outcome]), None
        except VersionHistoryCorruptedError:
            raise
        except GovernanceError as exc:
            logger.warning("Model adjustment from review %s failed: %s", review.review_id, exc.reason)
            return None, exc.to_dict()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_case(self, case_id: str) -> ValidationCase:
        return self.case_store.get_case(case_id)

    def case_reviews(self, case_id: str) -> List[ExpertReview]:
        case = self.case_store.get_case(case_id)
        return self.review_store.get_reviews(case.review_ids)

    def list_cases(
        self,
        *,
        batch_id: Optional[str] = None,
        status: Optional[Union[CaseStatus, str]] = None,
        category: Optional[Union[CaseCategory, str]] = None,
        diagnosis: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: Union[SortOrder, str] = SortOrder.DESC,
        include_reviews: bool = False,
    ) -> CaseQueryResult:
        try:
            status = CaseStatus(status) if status is not None else None
            category = CaseCategory(category) if category is not None else None
            sort_order = SortOrder(sort_order.lower())
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        total, items = self.case_store.query_cases(
            batch_id=batch_id,
            status=status,
            category=category,
            diagnosis=diagnosis,
            sort_by=sort_by,
            sort_order=sort_order,
            limit=limit,
            offset=offset,
        )
        reviews: Dict[str, List[ExpertReview]] = {}
        if include_reviews and items:
            for case in items:
                reviews[case.case_id] = []
            for review in self.review_store.list_reviews_for_cases(reviews.keys()):
                reviews[review.case_id].append(review)
        return CaseQueryResult(total=total, items=items, reviews=reviews, limit=limit, offset=offset)

    @staticmethod
    def _coerce(model, data):
        if isinstance(data, model):
            return data
        if not isinstance(data, Mapping):
            raise ValidationError(f"Expected a mapping for {model.__name__}.")
        try:
            return model.model_validate(dict(data))
        except PydanticValidationError as exc:
            raise ValidationError(_pydantic_reason(exc)) from exc
