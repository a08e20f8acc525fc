"""Sample and session persistence.

`SessionBackend` is the only surface the rest of the package talks to; any
database can sit behind it. `InMemoryBackend` is the reference implementation
used by the CLI and the tests.

`SampleStore` picks exactly one sink: a bounded newest-first ring buffer when
no backend is available, otherwise a durable sink that tags each sample with
the session running at write time and appends it through a single ordered
writer thread.
"""
from __future__ import annotations

import abc
import logging
import queue
import threading
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

from .domain import (
    GuidelineCurve,
    MLModel,
    Sample,
    SensorConfig,
    SessionStatus,
    TestSession,
    VesselType,
)
from .errors import MissingModelError

logger = logging.getLogger(__name__)

DEFAULT_RING_CAPACITY = 1000


class SessionBackend(abc.ABC):
    @abc.abstractmethod
    def append_sample(
        self, session_id: Optional[str], sample: Sample, sensor_config_id: Optional[str] = None
    ) -> None:
        ...

    @abc.abstractmethod
    def append_samples(
        self, session_id: Optional[str], samples: Sequence[Sample], sensor_config_id: Optional[str] = None
    ) -> None:
        """Append all *samples* in one atomic batch."""

    @abc.abstractmethod
    def list_samples(self, session_id: str) -> List[Sample]:
        """Samples of one session in ascending timestamp order (ties keep insertion order)."""

    @abc.abstractmethod
    def list_untagged_samples(self, sensor_config_id: str) -> List[Sample]:
        ...

    @abc.abstractmethod
    def get_session(self, session_id: str) -> Optional[TestSession]:
        ...

    @abc.abstractmethod
    def put_session(self, session: TestSession) -> None:
        ...

    @abc.abstractmethod
    def list_sessions(self) -> List[TestSession]:
        ...

    def list_unclassified(self) -> List[TestSession]:
        return [
            session
            for session in self.list_sessions()
            if session.status is SessionStatus.COMPLETED and session.classification is None
        ]

    @abc.abstractmethod
    def get_vessel_type(self, vessel_type_id: str) -> Optional[VesselType]:
        ...

    @abc.abstractmethod
    def find_vessel_type(self, name: str) -> Optional[VesselType]:
        ...

    @abc.abstractmethod
    def put_vessel_type(self, vessel_type: VesselType) -> None:
        ...

    def get_vessel_type_curves(self, vessel_type_id: str) -> Optional[GuidelineCurve]:
        vessel_type = self.get_vessel_type(vessel_type_id)
        return vessel_type.curve if vessel_type is not None else None

    @abc.abstractmethod
    def get_sensor_config(self, sensor_config_id: str) -> Optional[SensorConfig]:
        ...

    @abc.abstractmethod
    def put_sensor_config(self, config: SensorConfig) -> None:
        ...

    @abc.abstractmethod
    def put_model(self, model: MLModel) -> None:
        ...

    @abc.abstractmethod
    def get_model(self, model_id: str) -> Optional[MLModel]:
        ...

    @abc.abstractmethod
    def list_models(self) -> List[MLModel]:
        """Models ordered by version, newest first."""

    @abc.abstractmethod
    def set_active_model(self, model_id: str) -> None:
        ...

    @abc.abstractmethod
    def get_active_model_id(self) -> Optional[str]:
        ...


class InMemoryBackend(SessionBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: Dict[Tuple[Optional[str], Optional[str]], List[Sample]] = {}
        self._sessions: Dict[str, TestSession] = {}
        self._vessel_types: Dict[str, VesselType] = {}
        self._sensor_configs: Dict[str, SensorConfig] = {}
        self._models: Dict[str, MLModel] = {}
        self._active_model_id: Optional[str] = None

    def append_sample(
        self, session_id: Optional[str], sample: Sample, sensor_config_id: Optional[str] = None
    ) -> None:
        with self._lock:
            self._samples.setdefault((session_id, sensor_config_id), []).append(sample)

    def append_samples(
        self, session_id: Optional[str], samples: Sequence[Sample], sensor_config_id: Optional[str] = None
    ) -> None:
        batch = list(samples)
        with self._lock:
            self._samples.setdefault((session_id, sensor_config_id), []).extend(batch)

    def list_samples(self, session_id: str) -> List[Sample]:
        with self._lock:
            collected = [
                sample
                for (sid, _config_id), samples in self._samples.items()
                if sid == session_id
                for sample in samples
            ]
        return sorted(collected, key=lambda sample: sample.timestamp)

    def list_untagged_samples(self, sensor_config_id: str) -> List[Sample]:
        with self._lock:
            collected = list(self._samples.get((None, sensor_config_id), []))
        return sorted(collected, key=lambda sample: sample.timestamp)

    def get_session(self, session_id: str) -> Optional[TestSession]:
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session is not None else None

    def put_session(self, session: TestSession) -> None:
        with self._lock:
            self._sessions[session.id] = replace(session)

    def list_sessions(self) -> List[TestSession]:
        with self._lock:
            return [replace(session) for session in self._sessions.values()]

    def get_vessel_type(self, vessel_type_id: str) -> Optional[VesselType]:
        with self._lock:
            return self._vessel_types.get(vessel_type_id)

    def find_vessel_type(self, name: str) -> Optional[VesselType]:
        with self._lock:
            return next((vt for vt in self._vessel_types.values() if vt.name == name), None)

    def put_vessel_type(self, vessel_type: VesselType) -> None:
        with self._lock:
            self._vessel_types[vessel_type.id] = vessel_type

    def get_sensor_config(self, sensor_config_id: str) -> Optional[SensorConfig]:
        with self._lock:
            return self._sensor_configs.get(sensor_config_id)

    def put_sensor_config(self, config: SensorConfig) -> None:
        with self._lock:
            self._sensor_configs[config.id] = config

    def put_model(self, model: MLModel) -> None:
        with self._lock:
            if model.id in self._models:
                raise ValueError(f"Model '{model.id}' already exists; models are immutable")
            self._models[model.id] = model

    def get_model(self, model_id: str) -> Optional[MLModel]:
        with self._lock:
            return self._models.get(model_id)

    def list_models(self) -> List[MLModel]:
        with self._lock:
            models = list(self._models.values())
        return sorted(models, key=lambda model: model.version, reverse=True)

    def set_active_model(self, model_id: str) -> None:
        with self._lock:
            if model_id not in self._models:
                raise MissingModelError(f"Unknown model '{model_id}'")
            self._active_model_id = model_id

    def get_active_model_id(self) -> Optional[str]:
        with self._lock:
            return self._active_model_id


class RingBuffer:
    """Fixed-capacity, newest-first sample buffer. Overflow drops the oldest sample."""

    def __init__(self, capacity: int = DEFAULT_RING_CAPACITY):
        if capacity <= 0:
            raise ValueError("ring buffer capacity must be positive")
        self.capacity = capacity
        self._items: Deque[Sample] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def append(self, sample: Sample) -> None:
        with self._lock:
            self._items.appendleft(sample)

    def extend(self, samples: Iterable[Sample]) -> None:
        with self._lock:
            for sample in samples:
                self._items.appendleft(sample)

    def snapshot(self) -> List[Sample]:
        with self._lock:
            return list(self._items)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


@dataclass
class _PendingWrite:
    session_id: Optional[str]
    sensor_config_id: Optional[str]
    sample: Sample


class DurableSink:
    """
    Fire-and-forget writer. `submit` never blocks on the backend; one worker
    thread drains a FIFO queue, so submission order is write order.
    """

    def __init__(self, backend: SessionBackend):
        self.backend = backend
        self._queue: "queue.Queue[Optional[_PendingWrite]]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self._written = 0
        self._failures = 0

    def submit(self, session_id: Optional[str], sensor_config_id: Optional[str], sample: Sample) -> None:
        self._ensure_worker()
        self._queue.put_nowait(_PendingWrite(session_id, sensor_config_id, sample))

    def flush(self) -> None:
        """Block until every submitted write has been attempted."""
        if self._worker is not None:
            self._queue.join()

    def close(self) -> None:
        with self._start_lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(None)
        worker.join(timeout=5.0)

    def stats(self) -> Dict[str, int]:
        return {"written": self._written, "failures": self._failures, "pending": self._queue.qsize()}

    def _ensure_worker(self) -> None:
        with self._start_lock:
            if self._worker is None:
                self._worker = threading.Thread(target=self._run, daemon=True, name="durable-sink")
                self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                self.backend.append_sample(item.session_id, item.sample, item.sensor_config_id)
                self._written += 1
            except Exception:
                self._failures += 1
                logger.exception("Durable write failed (session=%s)", item.session_id if item else None)
            finally:
                self._queue.task_done()


class SampleStore:
    def __init__(
        self,
        backend: Optional[SessionBackend],
        sensor_config_id: Optional[str] = None,
        *,
        session_provider: Callable[[], Optional[str]] = lambda: None,
        capacity: int = DEFAULT_RING_CAPACITY,
    ):
        self.backend = backend
        self.sensor_config_id = sensor_config_id
        self._session_provider = session_provider
        self.ring: Optional[RingBuffer] = None if backend is not None else RingBuffer(capacity)
        self.durable: Optional[DurableSink] = DurableSink(backend) if backend is not None else None

    @property
    def is_durable(self) -> bool:
        return self.durable is not None

    def accept(self, sample: Sample) -> None:
        if self.durable is not None:
            self.durable.submit(self._session_provider(), self.sensor_config_id, sample)
        else:
            assert self.ring is not None
            self.ring.append(sample)

    def import_samples(self, samples: Sequence[Sample]) -> int:
        """Insert a bulk import as one batch tagged with the active session id."""
        batch = list(samples)
        if self.durable is not None:
            self.durable.flush()
            self.durable.backend.append_samples(self._session_provider(), batch, self.sensor_config_id)
        else:
            assert self.ring is not None
            self.ring.extend(batch)
        logger.info("Imported %d samples", len(batch))
        return len(batch)

    def read(self, session_id: Optional[str] = None) -> List[Sample]:
        """Samples newest-first. Without *session_id* the durable store returns the untagged view."""
        if self.durable is not None:
            self.durable.flush()
            backend = self.durable.backend
            if session_id is not None:
                ascending = backend.list_samples(session_id)
            elif self.sensor_config_id is not None:
                ascending = backend.list_untagged_samples(self.sensor_config_id)
            else:
                ascending = []
            return list(reversed(ascending))
        assert self.ring is not None
        return sorted(self.ring.snapshot(), key=lambda sample: sample.timestamp, reverse=True)

    def close(self) -> None:
        if self.durable is not None:
            self.durable.close()
