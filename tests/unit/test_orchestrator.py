from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Set

import pytest

from arn_reconciler.domain.errors import (
    ConfigurationError,
    EndpointNotFoundError,
    PersistenceError,
    RemoteCallError,
    ResumeError,
)
from arn_reconciler.domain.models import (
    EndpointAttributes,
    Grant,
    Outcome,
    OutcomeKind,
    Record,
    Run,
    RunMode,
    RunState,
    SourceDescriptor,
    WatermarkInfo,
)
from arn_reconciler.engine.credentials import CredentialManager
from arn_reconciler.engine.retry import RetryController
from arn_reconciler.orchestrator import ReconciliationOrchestrator

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
SOURCE = SourceDescriptor(table="push_notifications", arn_column="arn", id_column="id")
CHUNK_SIZE = 4
BATCH_SIZE = 2
MISSING = {7}
DISABLED = {3, 9}


def _arn(ordinal: int) -> str:
    return f"arn:aws:sns:us-east-1:123456789012:endpoint/GCM/app/{ordinal:04d}"


class _FakeStore:
    """In-memory ReconciliationStore with the same idempotency rules as Postgres."""

    def __init__(self, ordinals: Sequence[int]) -> None:
        self.records = [Record(ordinal=o, arn=_arn(o)) for o in ordinals]
        self.runs: Dict[str, Run] = {}
        self.outcomes: Dict[tuple, Outcome] = {}
        self.append_calls = 0
        self.fail_appends: List[Exception] = []
        self.crash_after_append: Optional[int] = None
        self.crash_on_exhaust = False

    def fetch_records(self, source: SourceDescriptor, after_id: Optional[int], limit: int) -> List[Record]:
        rows = [r for r in self.records if after_id is None or r.ordinal > after_id]
        return rows[:limit]

    def fetch_deletion_candidates(self, check_run_id: str, after_id: Optional[int], limit: int) -> List[Record]:
        rows = sorted(
            (
                o
                for o in self.outcomes.values()
                if o.run_id == check_run_id
                and o.kind is OutcomeKind.DISABLED
                and (after_id is None or o.ordinal > after_id)
            ),
            key=lambda o: o.ordinal,
        )
        return [Record(ordinal=o.ordinal, arn=o.arn) for o in rows[:limit]]

    def append_outcomes(self, outcomes: Sequence[Outcome]) -> None:
        self.append_calls += 1
        if self.fail_appends:
            raise self.fail_appends.pop(0)
        for outcome in outcomes:
            self.outcomes.setdefault((outcome.run_id, outcome.ordinal), outcome)
        if self.crash_after_append == self.append_calls:
            raise RuntimeError("process killed")

    def create_run(self, run: Run) -> None:
        self.runs[run.run_id] = run

    def get_run(self, run_id: str) -> Optional[Run]:
        return self.runs.get(run_id)

    def mark_run_exhausted(self, run_id: str, at: datetime) -> None:
        if self.crash_on_exhaust:
            raise RuntimeError("process killed")
        self.runs[run_id] = self.runs[run_id].model_copy(update={"exhausted_at": at})

    def get_watermark(self, run_id: str) -> WatermarkInfo:
        rows = [o for o in self.outcomes.values() if o.run_id == run_id]
        if not rows:
            return WatermarkInfo()
        return WatermarkInfo(
            max_ordinal=max(o.ordinal for o in rows),
            outcome_count=len(rows),
            max_batch=max(o.batch_number for o in rows),
        )

    def list_runs(self) -> list:
        return []

    def outcomes_for(self, run_id: str) -> List[Outcome]:
        return sorted((o for o in self.outcomes.values() if o.run_id == run_id), key=lambda o: o.ordinal)


class _FakeService:
    def __init__(self, stop_after: Optional[int] = None, stop_event: Optional[threading.Event] = None) -> None:
        self._lock = threading.Lock()
        self.checked: List[str] = []
        self.deleted: List[str] = []
        self.flaky: Dict[str, int] = {}
        self.gone: Set[str] = set()
        self.broken: Set[int] = set()
        self._stop_after = stop_after
        self._stop_event = stop_event

    def check_status(self, arn: str, grant: Grant) -> Optional[EndpointAttributes]:
        ordinal = int(arn.rsplit("/", 1)[1])
        with self._lock:
            self.checked.append(arn)
            if self._stop_event is not None and ordinal == self._stop_after:
                self._stop_event.set()
            if self.flaky.get(arn, 0) > 0:
                self.flaky[arn] -= 1
                raise RemoteCallError("Rate exceeded", code="Throttling")
        if ordinal in self.broken:
            raise KeyError("Attributes")
        if ordinal in MISSING:
            raise EndpointNotFoundError("Endpoint does not exist", code="NotFound")
        if ordinal in DISABLED:
            return EndpointAttributes(enabled=False, token="device-token")
        return EndpointAttributes(enabled=True, token="device-token")

    def delete_endpoint(self, arn: str, grant: Grant) -> None:
        with self._lock:
            self.deleted.append(arn)
        if arn in self.gone:
            raise EndpointNotFoundError("Endpoint does not exist", code="NotFound")


class _FakeBroker:
    def __init__(self) -> None:
        self.calls = 0

    def acquire(self) -> Grant:
        self.calls += 1
        return Grant(material={"session_token": "t"})


def _orchestrator(
    store: _FakeStore,
    service: _FakeService,
    sleeps: Optional[List[float]] = None,
    stop_event: Optional[threading.Event] = None,
) -> ReconciliationOrchestrator:
    sleeps = sleeps if sleeps is not None else []
    controller = RetryController(CredentialManager(_FakeBroker()), base_delay=0.01, sleep=sleeps.append)
    return ReconciliationOrchestrator(
        store=store,
        controller=controller,
        service=service,
        batch_size=BATCH_SIZE,
        chunk_size=CHUNK_SIZE,
        max_concurrency=4,
        batch_pause=0.5,
        chunk_pause=1.0,
        stop_event=stop_event,
        sleep=sleeps.append,
        clock=lambda: NOW,
    )


@pytest.fixture
def store() -> _FakeStore:
    return _FakeStore(range(1, 11))


def test_full_run_records_one_outcome_per_record(store: _FakeStore) -> None:
    sleeps: List[float] = []

    summary = _orchestrator(store, _FakeService(), sleeps).run(SOURCE)

    outcomes = store.outcomes_for(summary.run_id)
    assert [o.ordinal for o in outcomes] == list(range(1, 11))
    assert summary.chunks == 3
    assert summary.batches == 5
    assert summary.total_processed == 10
    assert summary.final_watermark == 10
    assert summary.state is RunState.EXHAUSTED
    assert not summary.stopped
    assert summary.counts == {"ENABLED": 7, "DISABLED": 2, "NOT_FOUND": 1}
    assert store.runs[summary.run_id].exhausted_at == NOW

    by_ordinal = {o.ordinal: o for o in outcomes}
    assert by_ordinal[7].kind is OutcomeKind.NOT_FOUND
    assert by_ordinal[3].kind is OutcomeKind.DISABLED
    assert sorted({o.batch_number for o in outcomes}) == [1, 2, 3, 4, 5]
    # One pause between the two batches of each full chunk, one between chunks.
    assert Counter(sleeps) == Counter({0.5: 2, 1.0: 2})


def test_transient_failures_are_retried_and_counted(store: _FakeStore) -> None:
    service = _FakeService()
    service.flaky[_arn(2)] = 1

    summary = _orchestrator(store, service).run(SOURCE)

    outcome = {o.ordinal: o for o in store.outcomes_for(summary.run_id)}[2]
    assert outcome.kind is OutcomeKind.ENABLED
    assert outcome.retry_count == 1


def test_unexpected_service_error_becomes_error_outcome(store: _FakeStore) -> None:
    service = _FakeService()
    service.broken.add(5)

    summary = _orchestrator(store, service).run(SOURCE)

    outcomes = {o.ordinal: o for o in store.outcomes_for(summary.run_id)}
    assert sorted(outcomes) == list(range(1, 11))
    assert outcomes[5].kind is OutcomeKind.ERROR
    assert outcomes[5].retry_count == 3
    assert summary.counts["ERROR"] == 1
    assert summary.state is RunState.EXHAUSTED


def test_limit_stops_early_without_exhausting(store: _FakeStore) -> None:
    summary = _orchestrator(store, _FakeService()).run(SOURCE, limit=5)

    assert summary.total_processed == 5
    assert summary.final_watermark == 5
    assert summary.state is RunState.ACTIVE
    assert store.runs[summary.run_id].exhausted_at is None


def test_resume_from_id_starts_new_run_after_ordinal(store: _FakeStore) -> None:
    summary = _orchestrator(store, _FakeService()).run(SOURCE, resume_from_id=6)

    assert [o.ordinal for o in store.outcomes_for(summary.run_id)] == [7, 8, 9, 10]
    assert summary.state is RunState.EXHAUSTED


def test_resume_after_crash_processes_only_missing_records(store: _FakeStore) -> None:
    store.crash_after_append = 3
    with pytest.raises(RuntimeError, match="process killed"):
        _orchestrator(store, _FakeService()).run(SOURCE)
    (run_id,) = store.runs
    assert [o.ordinal for o in store.outcomes_for(run_id)] == [1, 2, 3, 4, 5, 6]

    store.crash_after_append = None
    service = _FakeService()
    summary = _orchestrator(store, service).run(SOURCE, resume_run_id=run_id)

    assert summary.run_id == run_id
    assert summary.total_processed == 4
    assert sorted(service.checked) == [_arn(o) for o in (7, 8, 9, 10)]
    outcomes = store.outcomes_for(run_id)
    assert [o.ordinal for o in outcomes] == list(range(1, 11))
    assert {o.batch_number for o in outcomes if o.ordinal > 6} == {4, 5}
    assert summary.state is RunState.EXHAUSTED


def test_resume_rejects_completed_run(store: _FakeStore) -> None:
    summary = _orchestrator(store, _FakeService()).run(SOURCE)

    with pytest.raises(ResumeError):
        _orchestrator(store, _FakeService()).run(SOURCE, resume_run_id=summary.run_id)


def test_resume_records_exhaustion_missed_by_crash(store: _FakeStore) -> None:
    store.crash_on_exhaust = True
    with pytest.raises(RuntimeError, match="process killed"):
        _orchestrator(store, _FakeService()).run(SOURCE)
    (run_id,) = store.runs
    assert store.runs[run_id].exhausted_at is None

    store.crash_on_exhaust = False
    with pytest.raises(ResumeError, match="already complete"):
        _orchestrator(store, _FakeService()).run(SOURCE, resume_run_id=run_id)

    assert store.runs[run_id].exhausted_at == NOW


def test_resume_records_exhaustion_after_exact_limit(store: _FakeStore) -> None:
    summary = _orchestrator(store, _FakeService()).run(SOURCE, limit=10)
    assert summary.state is RunState.ACTIVE

    with pytest.raises(ResumeError):
        _orchestrator(store, _FakeService()).run(SOURCE, resume_run_id=summary.run_id)

    assert store.runs[summary.run_id].exhausted_at == NOW


def test_resume_and_resume_from_id_are_exclusive(store: _FakeStore) -> None:
    with pytest.raises(ConfigurationError):
        _orchestrator(store, _FakeService()).run(
            SOURCE, resume_run_id="run-20240501T000000Z-0a1b2c3d", resume_from_id=3
        )


def test_stop_signal_honoured_at_batch_boundary(store: _FakeStore) -> None:
    stop_event = threading.Event()
    service = _FakeService(stop_after=3, stop_event=stop_event)

    summary = _orchestrator(store, service, stop_event=stop_event).run(SOURCE)

    assert summary.stopped
    assert summary.total_processed == 4
    assert summary.final_watermark == 4
    assert summary.state is RunState.ACTIVE
    assert [o.ordinal for o in store.outcomes_for(summary.run_id)] == [1, 2, 3, 4]


def test_persistence_failure_is_retried(store: _FakeStore) -> None:
    store.fail_appends.append(PersistenceError("connection reset"))

    summary = _orchestrator(store, _FakeService()).run(SOURCE)

    assert summary.total_processed == 10
    assert len(store.outcomes_for(summary.run_id)) == 10


def test_persistent_persistence_failure_aborts_run(store: _FakeStore) -> None:
    store.fail_appends.extend(PersistenceError("database down") for _ in range(3))

    with pytest.raises(PersistenceError):
        _orchestrator(store, _FakeService()).run(SOURCE)

    (run_id,) = store.runs
    assert store.outcomes_for(run_id) == []


def test_empty_source_is_exhausted_immediately() -> None:
    store = _FakeStore([])

    summary = _orchestrator(store, _FakeService()).run(SOURCE)

    assert summary.total_processed == 0
    assert summary.chunks == 1
    assert summary.batches == 0
    assert summary.state is RunState.EXHAUSTED


class TestDeletion:
    def test_deletes_disabled_endpoints_of_check_run(self, store: _FakeStore) -> None:
        check = _orchestrator(store, _FakeService()).run(SOURCE)
        service = _FakeService()
        service.gone.add(_arn(9))

        summary = _orchestrator(store, service).delete(check.run_id)

        assert summary.mode is RunMode.DELETE
        assert sorted(service.deleted) == [_arn(3), _arn(9)]
        assert summary.counts == {"DELETED": 1, "ALREADY_DELETED": 1}
        assert store.runs[summary.run_id].parent_run_id == check.run_id
        assert summary.state is RunState.EXHAUSTED

    def test_dry_run_makes_no_remote_calls(self, store: _FakeStore) -> None:
        check = _orchestrator(store, _FakeService()).run(SOURCE)
        service = _FakeService()

        summary = _orchestrator(store, service).delete(check.run_id, dry_run=True)

        assert service.deleted == []
        assert summary.counts == {"DRY_RUN": 2}

    def test_unknown_check_run(self, store: _FakeStore) -> None:
        with pytest.raises(ConfigurationError):
            _orchestrator(store, _FakeService()).delete("run-20240501T000000Z-0a1b2c3d")

    def test_deletion_run_cannot_be_parent(self, store: _FakeStore) -> None:
        check = _orchestrator(store, _FakeService()).run(SOURCE)
        deletion = _orchestrator(store, _FakeService()).delete(check.run_id, dry_run=True)

        with pytest.raises(ConfigurationError):
            _orchestrator(store, _FakeService()).delete(deletion.run_id)

    def test_check_run_and_resume_are_exclusive(self, store: _FakeStore) -> None:
        check = _orchestrator(store, _FakeService()).run(SOURCE)
        deletion = _orchestrator(store, _FakeService()).delete(check.run_id, limit=1)

        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            _orchestrator(store, _FakeService()).delete(check.run_id, resume_run_id=deletion.run_id)

    def test_check_run_cannot_be_resumed_as_deletion(self, store: _FakeStore) -> None:
        check = _orchestrator(store, _FakeService()).run(SOURCE, limit=4)

        with pytest.raises(ResumeError):
            _orchestrator(store, _FakeService()).delete(resume_run_id=check.run_id)


def test_invalid_sizes_rejected(store: _FakeStore) -> None:
    controller = RetryController(CredentialManager(_FakeBroker()))
    with pytest.raises(ConfigurationError):
        ReconciliationOrchestrator(store, controller, _FakeService(), batch_size=0)
