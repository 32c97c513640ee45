import threading

import pytest

from adjustment_engine import AdjustmentEngine, ParameterConsumer, extract_validation_adjustments
from errors import (
    InvalidStateError,
    ParameterShapeError,
    PersistenceError,
    ValidationError,
    VersionHistoryCorruptedError,
)
from models import AdjustmentPolicy, ParameterVersionRecord, ValidationOutcome, VoiceDiagnosisResult
from parameter_store import ParameterStore
from version_repository import InMemoryVersionStore


class FlakyVersionStore(InMemoryVersionStore):
    def __init__(self):
        super().__init__()
        self.fail_saves = False

    def save(self, record):
        if self.fail_saves:
            raise PersistenceError("disk full")
        return super().save(record)


class RecordingConsumer(ParameterConsumer):
    name = "recorder"

    def __init__(self):
        self.snapshots = []

    def update_parameters(self, snapshot):
        self.snapshots.append(snapshot)


def _engine(clock, backend=None, **policy):
    store = ParameterStore(backend or InMemoryVersionStore(), clock=clock)
    return AdjustmentEngine(store, policy=AdjustmentPolicy(**policy), clock=clock).load()


def _version_count(engine):
    return len(engine.store.list_history(100, include_default=True))


def test_load_starts_from_default(clock):
    engine = _engine(clock)
    assert engine.current_version == "default"
    assert engine.adjustment_counter == 0
    assert engine.last_commit_time is None
    current = engine.current_parameters()
    assert current.version == "default"
    current.parameters["toneType"]["gong"] = 5.0
    assert engine.snapshot()["toneType"]["gong"] == 0.2


def test_degree_at_threshold_commits_one_linked_version(clock):
    engine = _engine(clock)
    result = engine.apply_adjustments({"toneType": {"gong": 0.6}})

    assert result.committed is True
    assert result.degree == pytest.approx(0.4)
    assert result.previous_version == "default"
    assert engine.current_version == result.version
    assert engine.store.get_by_id(result.version).previous_version == "default"
    assert sum(engine.snapshot()["toneType"].values()) == pytest.approx(1.0)
    assert _version_count(engine) == 2


def test_edits_inside_cooldown_accumulate_without_versions(clock):
    engine = _engine(clock)
    engine.apply_adjustments({"toneType": {"gong": 0.2}}, force_save=True)
    versions_before = _version_count(engine)
    committed_snapshot = engine.snapshot()

    clock.advance(hours=1)
    first = engine.apply_adjustments({"toneType": {"gong": 0.9}, "timbre": {"pitch": 0.1}})
    clock.advance(hours=1)
    second = engine.apply_adjustments({"toneType": {"gong": 0.7, "yu": 0.3}})

    assert first.committed is False and second.committed is False
    assert _version_count(engine) == versions_before
    assert engine.adjustment_counter == 2
    expected = dict(committed_snapshot)
    expected["toneType"] = dict(committed_snapshot["toneType"], gong=0.7, yu=0.3)
    expected["timbre"] = dict(committed_snapshot["timbre"], pitch=0.1)
    assert engine.snapshot() == expected


def test_cooldown_expiry_allows_commit(clock):
    engine = _engine(clock, cooldown_seconds=3600)
    engine.apply_adjustments({"toneType": {"gong": 0.2}}, force_save=True)
    clock.advance(minutes=30)
    assert engine.apply_adjustments({"toneType": {"gong": 0.9}}).committed is False
    clock.advance(minutes=31)
    assert engine.apply_adjustments({"toneType": {"shang": 0.9}}).committed is True


def test_fifth_sub_threshold_edit_commits(clock):
    engine = _engine(clock)
    results = []
    for step in range(5):
        clock.advance(minutes=1)
        results.append(engine.apply_adjustments({"toneType": {"gong": 0.2 + 0.01 * (step + 1)}}))

    assert [r.committed for r in results] == [False, False, False, False, True]
    assert all(r.degree < 0.15 for r in results)
    assert _version_count(engine) == 2
    assert engine.adjustment_counter == 0


def test_expert_adjustment_commits_below_threshold(clock):
    engine = _engine(clock)
    result = engine.apply_adjustments({"toneType": {"gong": 0.21}}, is_expert_adjustment=True, author_id="dr-li")
    assert result.committed is True
    record = engine.store.get_by_id(result.version)
    assert record.is_expert_adjustment is True
    assert record.user_id == "dr-li"


def test_shape_mismatch_leaves_engine_untouched(clock):
    engine = _engine(clock)
    before = engine.snapshot()
    with pytest.raises(ParameterShapeError):
        engine.apply_adjustments({"toneType": {"gong": {"x": 1.0}}}, force_save=True)
    assert engine.snapshot() == before
    assert engine.current_version == "default"


@pytest.mark.parametrize("in_cooldown", [False, True])
def test_unnormalizable_edit_is_rejected_before_it_accumulates(clock, in_cooldown):
    engine = _engine(clock)
    engine.apply_adjustments({"toneType": {"gong": 0.21}})
    if in_cooldown:
        engine.apply_adjustments({"toneType": {"gong": 0.2}}, force_save=True)
        clock.advance(minutes=5)
    before = (engine.current_version, engine.adjustment_counter, engine.snapshot())

    with pytest.raises(ValidationError):
        engine.apply_adjustments({"toneType": {"extra": {"x": 1.0}}})
    assert (engine.current_version, engine.adjustment_counter, engine.snapshot()) == before

    result = engine.apply_adjustments({"toneType": {"gong": 0.3}}, force_save=True)
    assert result.committed is True
    assert "extra" not in engine.snapshot()["toneType"]


def test_failed_save_leaves_state_as_before(clock):
    backend = FlakyVersionStore()
    engine = _engine(clock, backend=backend)
    engine.apply_adjustments({"toneType": {"gong": 0.21}})
    before = (engine.current_version, engine.adjustment_counter, engine.snapshot(), engine.last_commit_time)

    backend.fail_saves = True
    with pytest.raises(PersistenceError):
        engine.apply_adjustments({"toneType": {"gong": 0.9}})
    with pytest.raises(PersistenceError):
        engine.apply_adjustments({"timbre": {"pitch": 0.9}}, force_save=True)

    after = (engine.current_version, engine.adjustment_counter, engine.snapshot(), engine.last_commit_time)
    assert after == before
    backend.fail_saves = False
    assert _version_count(engine) == 1


def test_rollback_creates_new_version_with_target_snapshot(clock):
    engine = _engine(clock, cooldown_seconds=0)
    first = engine.apply_adjustments({"toneType": {"gong": 0.8}})
    clock.advance(minutes=1)
    second = engine.apply_adjustments({"timbre": {"pitch": 0.9}})
    assert first.committed and second.committed

    clock.advance(minutes=1)
    rolled = engine.rollback_to_version(first.version, author_id="ops")

    assert rolled.committed is True
    assert rolled.version != first.version
    assert rolled.version.startswith("rollback-")
    record = engine.store.get_by_id(rolled.version)
    assert record.parameters == engine.store.get_by_id(first.version).parameters
    assert record.is_rollback is True
    assert record.original_version == first.version
    assert record.previous_version == second.version
    assert engine.current_version == rolled.version
    assert engine.adjustment_counter == 0


def test_rollback_to_current_version_is_rejected(clock):
    engine = _engine(clock)
    with pytest.raises(InvalidStateError):
        engine.rollback_to_version("default")


def test_reset_restores_default_snapshot(clock):
    engine = _engine(clock)
    engine.apply_adjustments({"toneType": {"gong": 0.9}})
    clock.advance(minutes=1)

    reset = engine.reset_to_default()

    record = engine.store.get_by_id(reset.version)
    assert record.is_reset is True
    assert record.original_version == "default"
    assert record.parameters == engine.store.get_default().parameters
    assert engine.snapshot() == engine.store.get_default().parameters


def test_reset_when_default_is_current_is_rejected(clock):
    engine = _engine(clock)
    with pytest.raises(InvalidStateError):
        engine.reset_to_default()


def test_consumer_failure_does_not_block_other_consumers(clock):
    recorder = RecordingConsumer()
    seen = []

    def broken(_snapshot):
        raise RuntimeError("model offline")

    engine = _engine(clock)
    engine.register_consumer(broken)
    engine.register_consumer(recorder)
    engine.register_consumer(seen.append)

    result = engine.apply_adjustments({"toneType": {"gong": 0.9}})

    assert result.committed is True
    assert len(recorder.snapshots) == 1
    assert len(seen) == 1
    assert seen[0] == engine.snapshot()


def test_reload_resumes_latest_version_and_cooldown(clock):
    backend = InMemoryVersionStore()
    engine = _engine(clock, backend=backend)
    committed = engine.apply_adjustments({"toneType": {"gong": 0.9}})

    clock.advance(hours=2)
    reloaded = _engine(clock, backend=backend)
    assert reloaded.current_version == committed.version
    assert reloaded.last_commit_time == engine.last_commit_time
    assert reloaded.apply_adjustments({"toneType": {"gong": 0.1}}).committed is False


def test_dangling_previous_version_is_fatal_on_load(clock):
    backend = InMemoryVersionStore()
    ParameterStore(backend, clock=clock).initialize()
    clock.advance(minutes=1)
    backend.save(
        ParameterVersionRecord(
            version="v-orphan",
            parameters={"toneType": {"gong": 1.0}},
            created_at=clock(),
            previous_version="v-missing",
        )
    )
    with pytest.raises(VersionHistoryCorruptedError):
        _engine(clock, backend=backend)


def test_parameter_history_summaries(clock):
    engine = _engine(clock, cooldown_seconds=0, max_version_history=2)
    versions = []
    for gong in (0.5, 0.9, 0.1):
        clock.advance(minutes=1)
        versions.append(engine.apply_adjustments({"toneType": {"gong": gong}}, force_save=True).version)

    summaries = engine.parameter_history(2)
    assert [s.version for s in summaries] == [versions[2], versions[1]]
    assert not hasattr(summaries[0], "parameters")

    full = engine.parameter_history(5, full=True)
    assert [r.version for r in full] == list(reversed(versions))
    assert "toneType" in full[0].parameters


def test_extract_validation_adjustments_sums_match_scores():
    voice = VoiceDiagnosisResult(dominant_tone="gong", timbre_features=["hoarse", "weak"])
    outcomes = [
        ValidationOutcome(case_id="c1", diagnosis="脾虚", voice_diagnosis=voice, match_score=0.8),
        ValidationOutcome(case_id="c2", diagnosis="脾虚", voice_diagnosis=voice, match_score=None),
        ValidationOutcome(case_id="c3", diagnosis="肺虚", voice_diagnosis=voice, match_score=0.0),
        ValidationOutcome(case_id="c4", diagnosis="肺虚", voice_diagnosis=None, match_score=0.9),
    ]

    payload = extract_validation_adjustments(outcomes)

    assert payload["toneDisharmonyMapping"] == {"gong": pytest.approx({"脾虚": 1.3, "肺虚": 0.0})}
    assert payload["featureDisharmonyMapping"]["脾虚"] == pytest.approx({"hoarse": 1.3, "weak": 1.3})
    assert payload["featureDisharmonyMapping"]["肺虚"] == {"hoarse": 0.0, "weak": 0.0}


def test_clinical_validation_update_commits_expert_version(clock):
    engine = _engine(clock)
    voice = VoiceDiagnosisResult(dominant_tone="shang", timbre_features=["breathy"])

    result = engine.on_clinical_validation_update(
        [ValidationOutcome(case_id="c1", diagnosis="肺气虚", voice_diagnosis=voice, match_score=0.7)]
    )

    assert result.committed is True
    snapshot = engine.snapshot()
    assert snapshot["toneDisharmonyMapping"]["shang"]["肺气虚"] == pytest.approx(0.7)
    assert snapshot["featureDisharmonyMapping"]["肺气虚"]["breathy"] == pytest.approx(0.7)
    assert engine.store.get_by_id(result.version).is_expert_adjustment is True


def test_clinical_validation_update_rejects_empty_input(clock):
    engine = _engine(clock)
    with pytest.raises(ValidationError):
        engine.on_clinical_validation_update([])
    with pytest.raises(ValidationError):
        engine.on_clinical_validation_update([ValidationOutcome(case_id="c1", diagnosis="脾虚")])


def test_engine_requires_load(clock):
    engine = AdjustmentEngine(ParameterStore(InMemoryVersionStore(), clock=clock), clock=clock)
    with pytest.raises(InvalidStateError):
        engine.apply_adjustments({"toneType": {"gong": 0.5}})


def test_parallel_adjustments_commit_every_fifth_edit(clock):
    engine = _engine(clock, adjustment_threshold=0.9, cooldown_seconds=0)
    edits = 20
    barrier = threading.Barrier(edits)
    results = []
    errors = []

    def adjust(step):
        try:
            barrier.wait()
            results.append(engine.apply_adjustments({"toneType": {"gong": 0.2 + 0.001 * step}}))
            engine.parameter_history(3)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=adjust, args=(step,)) for step in range(edits)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(results) == edits
    assert sum(1 for r in results if r.committed) == edits // 5
    assert _version_count(engine) == 1 + edits // 5
    assert engine.adjustment_counter == 0
