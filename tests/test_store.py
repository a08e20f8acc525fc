from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

import pytest

from leakbench.domain import Classification, Sample, SessionStatus, TestSession
from leakbench.errors import MissingModelError, PreconditionError, SessionAlreadyRunningError
from leakbench.sessions import SessionManager
from leakbench.store import InMemoryBackend, RingBuffer, SampleStore

T0 = datetime(2024, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


def _samples(count: int, start: int = 0) -> list[Sample]:
    return [Sample(timestamp=T0 + timedelta(seconds=start + i), value=float(start + i)) for i in range(count)]


class FlakyBackend(InMemoryBackend):
    """Fails the n-th single-sample append."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def append_sample(self, session_id: Optional[str], sample: Sample, sensor_config_id: Optional[str] = None) -> None:
        self.calls += 1
        if self.calls == self.fail_on:
            raise IOError("store unavailable")
        super().append_sample(session_id, sample, sensor_config_id)


class CountingBackend(InMemoryBackend):
    def __init__(self) -> None:
        super().__init__()
        self.batches: list[int] = []

    def append_samples(
        self, session_id: Optional[str], samples: Sequence[Sample], sensor_config_id: Optional[str] = None
    ) -> None:
        self.batches.append(len(samples))
        super().append_samples(session_id, samples, sensor_config_id)


def test_ring_buffer_drops_oldest_on_overflow():
    ring = RingBuffer(1000)
    samples = _samples(1001)
    for sample in samples:
        ring.append(sample)
    assert len(ring) == 1000
    snapshot = ring.snapshot()
    assert samples[0] not in snapshot
    assert snapshot[0] == samples[-1]


def test_ephemeral_store_reads_newest_first():
    store = SampleStore(None, capacity=10)
    for sample in _samples(5):
        store.accept(sample)
    assert store.is_durable is False
    values = [s.value for s in store.read()]
    assert values == [4.0, 3.0, 2.0, 1.0, 0.0]


def test_durable_store_tags_with_running_session():
    backend = InMemoryBackend()
    sessions = SessionManager(backend)
    store = SampleStore(backend, "cfg-1", session_provider=sessions.current_session_id)
    try:
        for sample in _samples(3):
            store.accept(sample)
        session = sessions.start_session("vt-1", "cfg-1")
        for sample in _samples(4, start=10):
            store.accept(sample)
        sessions.complete_session()
        store.accept(_samples(1, start=100)[0])

        tagged = store.read(session.id)
        untagged = store.read()
    finally:
        store.close()
    assert [s.value for s in tagged] == [13.0, 12.0, 11.0, 10.0]
    assert [s.value for s in untagged] == [100.0, 2.0, 1.0, 0.0]


def test_durable_write_failure_is_isolated():
    backend = FlakyBackend(fail_on=2)
    store = SampleStore(backend, "cfg-1")
    try:
        for sample in _samples(3):
            store.accept(sample)
        remaining = store.read()
        stats = store.durable.stats()
    finally:
        store.close()
    assert [s.value for s in remaining] == [2.0, 0.0]
    assert stats["failures"] == 1
    assert stats["written"] == 2


def test_import_is_one_batch_for_active_session():
    backend = CountingBackend()
    sessions = SessionManager(backend)
    store = SampleStore(backend, "cfg-1", session_provider=sessions.current_session_id)
    session = sessions.start_session("vt-1", "cfg-1")
    try:
        assert store.import_samples(_samples(50)) == 50
    finally:
        store.close()
    assert backend.batches == [50]
    assert len(backend.list_samples(session.id)) == 50


def test_only_one_running_session():
    backend = InMemoryBackend()
    manager = SessionManager(backend)
    first = manager.start_session("vt-1", "cfg-1")
    with pytest.raises(SessionAlreadyRunningError):
        manager.start_session("vt-2", "cfg-1")

    # a second manager over the same store sees the persisted RUNNING session
    with pytest.raises(SessionAlreadyRunningError):
        SessionManager(backend).start_session("vt-2", "cfg-1")

    finished = manager.scrap_session(first.id)
    assert finished.status is SessionStatus.SCRAPPED
    assert finished.end_time is not None
    assert manager.current_session_id() is None
    manager.start_session("vt-2", "cfg-1")


def test_manual_classification_only_on_completed_sessions():
    backend = InMemoryBackend()
    manager = SessionManager(backend)
    session = manager.start_session("vt-1", "cfg-1")
    with pytest.raises(PreconditionError):
        manager.set_classification(session.id, Classification.LEAK)
    manager.complete_session()
    assert manager.set_classification(session.id, Classification.LEAK).classification is Classification.LEAK
    assert backend.list_unclassified() == []
    manager.set_classification(session.id, None)
    assert [s.id for s in backend.list_unclassified()] == [session.id]


def test_import_session_rejects_running():
    manager = SessionManager(InMemoryBackend())
    running = TestSession(
        id="s1", vessel_type_id="vt", sensor_config_id="cfg", status=SessionStatus.RUNNING, start_time=T0
    )
    with pytest.raises(PreconditionError):
        manager.import_session(running, _samples(3))


def test_active_model_must_exist():
    with pytest.raises(MissingModelError):
        InMemoryBackend().set_active_model("nope")
