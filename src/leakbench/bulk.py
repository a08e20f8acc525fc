"""Sequential bulk classification of completed, unclassified sessions."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol, Set

from .domain import Classification, SessionStatus, TestSession
from .errors import ClassificationInProgressError, PreconditionError
from .store import SessionBackend

logger = logging.getLogger(__name__)


class ClassificationStrategy(Protocol):
    name: str

    def classify(self, session: TestSession) -> Classification:
        ...


@dataclass
class BulkResult:
    succeeded: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.succeeded + self.failed


_in_flight: Set[str] = set()
_in_flight_lock = threading.Lock()


def classify_session(
    session: TestSession, strategy: ClassificationStrategy, backend: SessionBackend
) -> TestSession:
    """Classify one completed session and store the result; last write wins."""
    if session.status is not SessionStatus.COMPLETED:
        raise PreconditionError(f"Session '{session.id}' is {session.status.value}, not COMPLETED")
    with _in_flight_lock:
        if session.id in _in_flight:
            raise ClassificationInProgressError(f"Session '{session.id}' is already being classified")
        _in_flight.add(session.id)
    try:
        result = strategy.classify(session)
        current = backend.get_session(session.id) or session
        updated = replace(current, classification=result)
        backend.put_session(updated)
    finally:
        with _in_flight_lock:
            _in_flight.discard(session.id)
    logger.info("Session %s classified as %s (%s)", session.id, result.value, strategy.name)
    return updated


def bulk_classify(
    backend: SessionBackend,
    strategy: ClassificationStrategy,
    delay_sec: float = 0.0,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_item: Optional[Callable[[int, int, TestSession], None]] = None,
) -> BulkResult:
    pending = backend.list_unclassified()
    result = BulkResult()
    logger.info("Bulk %s classification of %d session(s)", strategy.name, len(pending))
    for index, session in enumerate(pending):
        if index and delay_sec > 0:
            sleep(delay_sec)
        if on_item is not None:
            on_item(index + 1, len(pending), session)
        try:
            classify_session(session, strategy, backend)
        except Exception as exc:  # one bad session must not abort the batch
            result.failed += 1
            logger.warning("Classification of session %s failed: %s", session.id, exc)
        else:
            result.succeeded += 1
    logger.info("Bulk classification done: %d succeeded, %d failed", result.succeeded, result.failed)
    return result
