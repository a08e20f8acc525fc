"""Test session lifecycle and the system-wide "one running session" rule."""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Sequence

from .domain import Classification, Sample, SessionStatus, TestSession, utc_now
from .errors import PreconditionError, SessionAlreadyRunningError
from .store import SessionBackend

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Holds the single "current session" slot. Starting a session while another
    is RUNNING (in this process or already persisted) is rejected, never queued.
    """

    def __init__(self, backend: SessionBackend, clock: Callable[[], datetime] = utc_now):
        self.backend = backend
        self._clock = clock
        self._lock = threading.Lock()
        running = self._persisted_running()
        self._current: Optional[str] = running.id if running is not None else None

    def _persisted_running(self) -> Optional[TestSession]:
        return next(
            (s for s in self.backend.list_sessions() if s.status is SessionStatus.RUNNING),
            None,
        )

    def current_session_id(self) -> Optional[str]:
        return self._current

    def running_session(self) -> Optional[TestSession]:
        current = self._current
        return self.backend.get_session(current) if current is not None else None

    def start_session(
        self,
        vessel_type_id: str,
        sensor_config_id: str,
        session_id: Optional[str] = None,
    ) -> TestSession:
        with self._lock:
            if self._current is not None:
                raise SessionAlreadyRunningError(f"Session '{self._current}' is still running")
            running = self._persisted_running()
            if running is not None:
                self._current = running.id
                raise SessionAlreadyRunningError(f"Session '{running.id}' is still running")
            session = TestSession(
                id=session_id or uuid.uuid4().hex,
                vessel_type_id=vessel_type_id,
                sensor_config_id=sensor_config_id,
                status=SessionStatus.RUNNING,
                start_time=self._clock(),
            )
            self.backend.put_session(session)
            self._current = session.id
        logger.info("Started session %s (vessel_type=%s)", session.id, vessel_type_id)
        return session

    def complete_session(self, session_id: Optional[str] = None) -> TestSession:
        return self._finish(session_id, SessionStatus.COMPLETED)

    def scrap_session(self, session_id: Optional[str] = None) -> TestSession:
        return self._finish(session_id, SessionStatus.SCRAPPED)

    def _finish(self, session_id: Optional[str], status: SessionStatus) -> TestSession:
        with self._lock:
            target = session_id or self._current
            if target is None:
                raise PreconditionError("No running session")
            session = self.backend.get_session(target)
            if session is None:
                raise PreconditionError(f"Unknown session '{target}'")
            if session.status is not SessionStatus.RUNNING:
                raise PreconditionError(f"Session '{target}' is already {session.status.value}")
            updated = replace(session, status=status, end_time=self._clock())
            self.backend.put_session(updated)
            if self._current == target:
                self._current = None
        logger.info("Session %s -> %s", target, status.value)
        return updated

    def set_classification(
        self, session_id: str, classification: Optional[Classification]
    ) -> TestSession:
        """Manually set or clear a classification; later passes may overwrite it."""
        session = self.backend.get_session(session_id)
        if session is None:
            raise PreconditionError(f"Unknown session '{session_id}'")
        if session.status is not SessionStatus.COMPLETED:
            raise PreconditionError(
                f"Session '{session_id}' is {session.status.value}; only completed sessions are classified"
            )
        updated = replace(session, classification=classification)
        self.backend.put_session(updated)
        return updated

    def import_session(self, session: TestSession, samples: Sequence[Sample]) -> TestSession:
        """Register a finished session together with its samples in one batch."""
        if session.status is SessionStatus.RUNNING:
            raise PreconditionError("Imported sessions must not be RUNNING")
        self.backend.put_session(session)
        self.backend.append_samples(session.id, samples, session.sensor_config_id)
        logger.info("Imported session %s with %d samples", session.id, len(samples))
        return session
