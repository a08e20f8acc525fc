from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from leakbench.bulk import BulkResult, bulk_classify, classify_session
from leakbench.domain import Classification, SessionStatus, TestSession
from leakbench.errors import ClassificationInProgressError, MissingGuidelineError, PreconditionError
from leakbench.store import InMemoryBackend

T0 = datetime(2024, 7, 4, 10, 0, tzinfo=timezone.utc)


class ScriptedStrategy:
    name = "scripted"

    def __init__(self, fail_ids: set[str]):
        self.fail_ids = fail_ids
        self.seen: list[str] = []

    def classify(self, session: TestSession) -> Classification:
        self.seen.append(session.id)
        if session.id in self.fail_ids:
            raise MissingGuidelineError("no curve")
        return Classification.DIFFUSION


def _session(session_id: str, **kwargs) -> TestSession:
    fields = dict(
        id=session_id, vessel_type_id="vt", sensor_config_id="raw", status=SessionStatus.COMPLETED, start_time=T0
    )
    fields.update(kwargs)
    return TestSession(**fields)


def test_bulk_isolates_a_failing_item():
    backend = InMemoryBackend()
    for i in range(1, 6):
        backend.put_session(_session(f"s{i}"))
    strategy = ScriptedStrategy({"s3"})
    delays: list[float] = []

    result = bulk_classify(backend, strategy, 0.25, sleep=delays.append)

    assert result == BulkResult(succeeded=4, failed=1)
    assert strategy.seen == ["s1", "s2", "s3", "s4", "s5"]
    assert delays == [0.25] * 4
    labels = {s.id: s.classification for s in backend.list_sessions()}
    assert labels == {
        "s1": Classification.DIFFUSION,
        "s2": Classification.DIFFUSION,
        "s3": None,
        "s4": Classification.DIFFUSION,
        "s5": Classification.DIFFUSION,
    }


def test_bulk_only_selects_completed_unclassified():
    backend = InMemoryBackend()
    backend.put_session(_session("done", classification=Classification.LEAK))
    backend.put_session(_session("live", status=SessionStatus.RUNNING))
    backend.put_session(_session("scrap", status=SessionStatus.SCRAPPED))
    backend.put_session(_session("todo"))
    strategy = ScriptedStrategy(set())

    result = bulk_classify(backend, strategy)

    assert strategy.seen == ["todo"]
    assert result.total == 1
    assert backend.get_session("done").classification is Classification.LEAK


def test_same_session_cannot_be_classified_twice_at_once():
    backend = InMemoryBackend()
    session = _session("s1")
    backend.put_session(session)
    entered = threading.Event()
    release = threading.Event()

    class BlockingStrategy:
        name = "blocking"

        def classify(self, session: TestSession) -> Classification:
            entered.set()
            release.wait(timeout=5.0)
            return Classification.LEAK

    worker = threading.Thread(target=classify_session, args=(session, BlockingStrategy(), backend))
    worker.start()
    try:
        assert entered.wait(timeout=5.0)
        with pytest.raises(ClassificationInProgressError):
            classify_session(session, ScriptedStrategy(set()), backend)
    finally:
        release.set()
        worker.join(timeout=5.0)
    assert backend.get_session("s1").classification is Classification.LEAK


def test_classify_session_requires_completed():
    backend = InMemoryBackend()
    running = _session("r", status=SessionStatus.RUNNING)
    backend.put_session(running)
    with pytest.raises(PreconditionError):
        classify_session(running, ScriptedStrategy(set()), backend)
