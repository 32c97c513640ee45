import threading

import pytest

from batch_lifecycle import BatchLifecycleManager
from case_lifecycle import CaseLifecycleManager
from errors import InvalidStateError, PersistenceError
from models import BatchStatus, VoiceDiagnosisResult
from validation_repository import InMemoryValidationRepository, SqliteValidationRepository
from voice_diagnosis_client import DiagnosisProvider


class EchoDiagnosis(DiagnosisProvider):
    def analyze(self, audio_data, context):
        return VoiceDiagnosisResult(dominant_tone="zhi", confidence=0.6)


class BrokenCounters(InMemoryValidationRepository):
    def increment_batch_counters(self, batch_id, *, cases=0, reviews=0):
        raise RuntimeError("counter table locked")


class FlakyBatchWrites(InMemoryValidationRepository):
    def __init__(self):
        super().__init__()
        self.fail_updates = False
        self.fail_creates = False

    def update_batch(self, batch):
        if self.fail_updates:
            raise PersistenceError("batch table locked")
        return super().update_batch(batch)

    def create_batch(self, batch):
        if self.fail_creates:
            raise PersistenceError("batch table locked")
        return super().create_batch(batch)


class BatchStatusAudit(InMemoryValidationRepository):
    """Records any case written into a batch that is no longer in progress."""

    def __init__(self):
        super().__init__()
        self.misplaced = []

    def create_case(self, case):
        if self.get_batch(case.batch_id).status != BatchStatus.IN_PROGRESS:
            self.misplaced.append(case.case_id)
        return super().create_case(case)


def _managers(repo, clock):
    batches = BatchLifecycleManager(
        batch_store=repo, case_store=repo, review_store=repo, metric_sink=repo, clock=clock
    )
    batches.start()
    cases = CaseLifecycleManager(
        case_store=repo,
        review_store=repo,
        batches=batches,
        diagnosis_provider=EchoDiagnosis(),
        clock=clock,
    )
    return batches, cases


def _diagnosed_case(cases, case_id, diagnosis):
    cases.submit_case(
        {
            "caseId": case_id,
            "patientInfo": {"age": 60},
            "traditionalDiagnosis": {"diagnosis": diagnosis},
            "audioData": b"RIFF",
        }
    )


def _review(cases, case_id, rating, accurate=None):
    payload = {"caseId": case_id, "expertId": "e1", "concordanceRating": rating}
    if accurate is not None:
        payload["isAccurate"] = accurate
    cases.submit_expert_review(payload)


def test_start_resumes_open_batch(clock):
    repo = InMemoryValidationRepository()
    first = BatchLifecycleManager(batch_store=repo, case_store=repo, review_store=repo, metric_sink=repo, clock=clock)
    batch_id = first.start()

    second = BatchLifecycleManager(batch_store=repo, case_store=repo, review_store=repo, metric_sink=repo, clock=clock)
    assert second.start() == batch_id
    assert batch_id.startswith("batch-")


def test_start_after_completed_batch_opens_new_one(clock):
    repo = InMemoryValidationRepository()
    batches, _ = _managers(repo, clock)
    completed = batches.complete_batch()

    clock.advance(minutes=1)
    restarted, _ = _managers(repo, clock)
    assert restarted.current_batch_id == completed.new_batch_id


def test_complete_batch_computes_metrics_and_rotates(clock):
    repo = InMemoryValidationRepository()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _diagnosed_case(cases, "c2", "脾虚")
    _diagnosed_case(cases, "c3", "肝郁")
    _diagnosed_case(cases, "c4", "肺虚")
    _review(cases, "c1", 5, True)
    _review(cases, "c1", 3, False)
    _review(cases, "c2", 4, True)
    _review(cases, "c3", 2)
    old_batch = batches.current_batch_id

    clock.advance(hours=1)
    result = batches.complete_batch()
    metrics = result.metrics

    assert result.completed_batch_id == old_batch
    assert result.new_batch_id != old_batch
    assert batches.current_batch_id == result.new_batch_id
    assert metrics.case_count == 3
    assert metrics.review_count == 4
    assert metrics.accuracy_rate == pytest.approx(2 / 3)
    assert metrics.concordance_rate == pytest.approx(14 / 4)
    assert metrics.disharmony_accuracy == pytest.approx({"脾虚": 2 / 3, "肝郁": 0.0})

    closed = repo.get_batch(old_batch)
    assert closed.status == BatchStatus.COMPLETED
    assert closed.completed_at == clock()
    assert closed.metrics.accuracy_rate == pytest.approx(2 / 3)
    assert closed.case_count == 4
    assert closed.review_count == 4

    fresh = repo.get_batch(result.new_batch_id)
    assert (fresh.status, fresh.case_count, fresh.review_count) == (BatchStatus.IN_PROGRESS, 0, 0)

    rows = repo.query_metrics(limit=50)
    names = sorted((r.metric_name, r.diagnosis or "") for r in rows)
    assert names == [
        ("accuracy_rate", ""),
        ("concordance_rate", ""),
        ("disharmony_accuracy", "肝郁"),
        ("disharmony_accuracy", "脾虚"),
    ]


def test_zero_accuracy_reviews_yield_zero_rate(clock):
    repo = InMemoryValidationRepository()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _review(cases, "c1", 4)

    metrics = batches.complete_batch().metrics
    assert metrics.accuracy_rate == 0.0
    assert metrics.concordance_rate == pytest.approx(4.0)
    assert metrics.disharmony_accuracy == {"脾虚": 0.0}


def test_empty_batch_closes_with_zero_metrics(clock):
    repo = InMemoryValidationRepository()
    batches, _ = _managers(repo, clock)
    metrics = batches.complete_batch().metrics
    assert (metrics.case_count, metrics.review_count, metrics.accuracy_rate, metrics.concordance_rate) == (0, 0, 0.0, 0.0)
    assert metrics.disharmony_accuracy == {}


def test_counter_failures_do_not_fail_submissions(clock):
    repo = BrokenCounters()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _review(cases, "c1", 5, True)

    assert cases.get_case("c1").status.value == "completed"
    assert batches.current_batch().case_count == 0


def test_performance_history_groups_and_windows(clock):
    repo = InMemoryValidationRepository()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _review(cases, "c1", 5, True)
    first = batches.complete_batch()

    clock.advance(days=40)
    _diagnosed_case(cases, "c2", "脾虚")
    _review(cases, "c2", 3, False)
    clock.advance(days=1)
    second = batches.complete_batch()

    recent = batches.performance_history()
    assert set(recent) == {"accuracy_rate", "concordance_rate", "disharmony_accuracy_脾虚"}
    assert [p.batch_id for p in recent["accuracy_rate"]] == [second.completed_batch_id]

    everything = batches.performance_history(metric_name="accuracy_rate", time_range_days=None)
    points = everything["accuracy_rate"]
    assert [p.batch_id for p in points] == [first.completed_batch_id, second.completed_batch_id]
    assert [p.value for p in points] == [1.0, 0.0]


def test_validation_progress_and_batch_listing(tmp_path, clock):
    repo = SqliteValidationRepository(str(tmp_path / "validation.sqlite3"))
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _diagnosed_case(cases, "c2", "肺虚")
    _review(cases, "c1", 4, True)

    progress = batches.validation_progress()
    assert progress.batch_id == batches.current_batch_id
    assert progress.status == "in_progress"
    assert progress.case_count == 2
    assert progress.completed_cases == 1
    assert progress.review_count == 1
    assert progress.progress == pytest.approx(50.0)

    clock.advance(minutes=5)
    batches.complete_batch()
    listing = batches.list_batches()
    assert listing.total == 2
    assert [b.status for b in listing.items] == [BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED]
    assert batches.list_batches(status=BatchStatus.COMPLETED).items[0].metrics.case_count == 1


def test_progress_before_start_reports_no_active_batch(clock):
    repo = InMemoryValidationRepository()
    batches = BatchLifecycleManager(batch_store=repo, case_store=repo, review_store=repo, metric_sink=repo, clock=clock)
    assert batches.validation_progress().status == "no_active_batch"


def _metric_names(repo, batch_id):
    return sorted(m.metric_name for m in repo.query_metrics(limit=100) if m.batch_id == batch_id)


def test_failed_close_can_be_retried_without_duplicate_metrics(clock):
    repo = FlakyBatchWrites()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    _review(cases, "c1", 5, True)
    batch_id = batches.current_batch_id

    repo.fail_updates = True
    with pytest.raises(PersistenceError):
        batches.complete_batch()
    assert batches.current_batch_id == batch_id
    assert repo.get_batch(batch_id).status == BatchStatus.IN_PROGRESS
    assert _metric_names(repo, batch_id) == []

    repo.fail_updates = False
    completion = batches.complete_batch()
    assert completion.completed_batch_id == batch_id
    assert _metric_names(repo, batch_id) == ["accuracy_rate", "concordance_rate", "disharmony_accuracy"]


def test_failed_rotation_leaves_no_closed_batch_current(clock):
    repo = FlakyBatchWrites()
    batches, cases = _managers(repo, clock)
    _diagnosed_case(cases, "c1", "脾虚")
    batch_id = batches.current_batch_id

    repo.fail_creates = True
    with pytest.raises(PersistenceError):
        batches.complete_batch()
    assert repo.get_batch(batch_id).status == BatchStatus.COMPLETED

    with pytest.raises(InvalidStateError):
        batches.current_batch_id
    with pytest.raises(InvalidStateError):
        _diagnosed_case(cases, "c2", "脾虚")
    assert not repo.case_exists("c2")

    repo.fail_creates = False
    clock.advance(minutes=1)
    new_batch_id = batches.start()
    assert new_batch_id != batch_id
    _diagnosed_case(cases, "c2", "脾虚")
    assert repo.get_case("c2").batch_id == new_batch_id
    assert _metric_names(repo, batch_id) == ["accuracy_rate", "concordance_rate"]


def test_parallel_submissions_never_land_in_a_closed_batch(clock):
    repo = BatchStatusAudit()
    batches, cases = _managers(repo, clock)
    submitters, per_thread, closes = 4, 10, 3
    barrier = threading.Barrier(submitters + 1)
    errors = []

    def submit(worker):
        try:
            barrier.wait()
            for n in range(per_thread):
                cases.submit_case(
                    {
                        "caseId": f"w{worker}-{n}",
                        "patientInfo": {"age": 50},
                        "traditionalDiagnosis": {"diagnosis": "脾虚"},
                        "audioReference": f"audio/w{worker}-{n}.wav",
                    }
                )
        except Exception as exc:
            errors.append(exc)

    def close():
        try:
            barrier.wait()
            for _ in range(closes):
                batches.complete_batch()
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=submit, args=(w,)) for w in range(submitters)]
    threads.append(threading.Thread(target=close))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert repo.misplaced == []
    listing = batches.list_batches(limit=100)
    assert listing.total == closes + 1
    total_cases = submitters * per_thread
    assert sum(b.case_count for b in listing.items) == total_cases
    for batch in listing.items:
        count, _ = repo.query_cases(batch_id=batch.batch_id, limit=1)
        assert batch.case_count == count
