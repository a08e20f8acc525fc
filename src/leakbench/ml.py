"""Trace classifier: a small dense network trained on labelled sessions.

Features are the raw sample values in timestamp order, zero-padded on the
right. The network is Linear(L, 128) -> ReLU -> Dropout(0.2) -> Linear(128, 64)
-> ReLU -> Linear(64, 2); softmax over the two logits gives P(diffusion) in
column 0 and P(leak) in column 1. Trained weights are stored as plain float32
tensors taken from the module's ``state_dict``.
"""
from __future__ import annotations

import base64
import json
import logging
import struct
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
from torch import nn, optim

from .config import TrainingConfig
from .domain import Classification, MLModel, Sample, SessionStatus, TestSession, describe_layers, utc_now
from .errors import (
    CorpusTooSmallError,
    InsufficientSamplesError,
    MissingModelError,
    TrainingInProgressError,
)
from .store import SessionBackend

logger = logging.getLogger(__name__)

LABELS = {Classification.DIFFUSION: 0, Classification.LEAK: 1}
NUM_CLASSES = 2
EPSILON = 1e-7

ProgressCallback = Callable[[str, float, str], None]

# One training run per process, whichever coordinator or caller starts it.
_training_lock = threading.Lock()


def build_topology(input_length: int) -> Dict[str, Any]:
    return {
        "name": "leak-classifier",
        "layers": [
            {"type": "dense", "units": 128, "activation": "relu", "input_dim": int(input_length)},
            {"type": "dropout", "rate": 0.2},
            {"type": "dense", "units": 64, "activation": "relu"},
            {"type": "dense", "units": NUM_CLASSES, "activation": "softmax"},
        ],
    }


def build_network(topology: Dict[str, Any], input_length: Optional[int] = None) -> nn.Sequential:
    """Turn a topology dict into an ``nn.Sequential`` that outputs logits.

    The softmax of the last dense layer is applied at inference time and by
    ``nn.CrossEntropyLoss`` during training, so it is not a module here.
    """
    spec = list(topology["layers"])
    dense = [layer for layer in spec if layer["type"] == "dense"]
    if not dense:
        raise ValueError("Topology needs at least one dense layer")
    if dense[-1].get("activation") != "softmax" or spec[-1] is not dense[-1]:
        raise ValueError("Topology must end with a softmax dense layer")
    fan_in = input_length if input_length is not None else dense[0].get("input_dim")
    if fan_in is None:
        raise ValueError("Topology needs a first dense layer with 'input_dim'")
    fan_in = int(fan_in)

    modules: List[nn.Module] = []
    for layer in spec:
        if layer["type"] == "dense":
            units = int(layer["units"])
            modules.append(nn.Linear(fan_in, units))
            activation = layer.get("activation")
            if activation == "relu":
                modules.append(nn.ReLU())
            elif activation not in (None, "linear", "softmax"):
                raise ValueError(f"Unsupported activation {activation!r}")
            fan_in = units
        elif layer["type"] == "dropout":
            modules.append(nn.Dropout(float(layer["rate"])))
        else:
            raise ValueError(f"Unsupported layer type {layer['type']!r}")
    return nn.Sequential(*modules)


def input_width(network: nn.Module) -> int:
    for module in network.modules():
        if isinstance(module, nn.Linear):
            return int(module.in_features)
    raise ValueError("Network has no Linear layer")


# ---------------------------------------------------------------------------
# Feature encoding


def trace_values(samples: Sequence[Sample]) -> List[float]:
    return [float(sample.value) for sample in sorted(samples, key=lambda sample: sample.timestamp)]


def encode_batch(traces: Sequence[Sequence[float]]) -> np.ndarray:
    """Right-pad every trace with zeros to the longest trace in the batch."""
    if not traces:
        raise ValueError("Cannot encode an empty batch")
    length = max(len(trace) for trace in traces)
    x = np.zeros((len(traces), length), dtype=np.float32)
    for row, trace in enumerate(traces):
        x[row, : len(trace)] = trace
    return x


def encode_trace(values: Sequence[float], length: int) -> np.ndarray:
    """Pad or truncate one trace to the model's input length."""
    x = np.zeros((1, length), dtype=np.float32)
    clipped = np.asarray(values[:length], dtype=np.float32)
    x[0, : clipped.size] = clipped
    return x


# ---------------------------------------------------------------------------
# Training loop and prediction


def predict_proba(network: nn.Module, x: np.ndarray) -> np.ndarray:
    network.eval()
    with torch.no_grad():
        logits = network(torch.from_numpy(np.asarray(x, dtype=np.float32)).float())
        return torch.softmax(logits, dim=1).numpy()


def evaluate(network: nn.Module, x: np.ndarray, y: np.ndarray) -> Tuple[float, float]:
    crit = nn.CrossEntropyLoss()
    network.eval()
    with torch.no_grad():
        xb = torch.from_numpy(x).float()
        yb = torch.from_numpy(y).long()
        logits = network(xb)
        loss = crit(logits, yb).item()
        accuracy = (logits.argmax(dim=1) == yb).float().mean().item()
    return float(loss), float(accuracy)


def fit(
    network: nn.Module,
    x: np.ndarray,
    y: np.ndarray,
    *,
    epochs: int,
    batch_size: int = 32,
    validation_split: float = 0.2,
    learning_rate: float = 0.001,
    on_epoch: Optional[Callable[[int, int, Dict[str, float]], None]] = None,
) -> List[Dict[str, float]]:
    """Train in place on class indices *y*. The last `validation_split` fraction of rows is held out."""
    split_at = int(x.shape[0] * (1.0 - validation_split))
    x_train, y_train = x[:split_at], y[:split_at]
    x_val, y_val = x[split_at:], y[split_at:]

    crit = nn.CrossEntropyLoss()
    opt = optim.Adam(network.parameters(), lr=learning_rate, betas=(0.9, 0.999), eps=EPSILON)
    history: List[Dict[str, float]] = []
    for epoch in range(1, epochs + 1):
        network.train()
        order = torch.randperm(x_train.shape[0]).numpy()
        losses = []
        for start in range(0, len(order), batch_size):
            sl = order[start : start + batch_size]
            xb = torch.from_numpy(x_train[sl]).float()
            yb = torch.from_numpy(y_train[sl]).long()
            opt.zero_grad()
            loss = crit(network(xb), yb)
            loss.backward()
            opt.step()
            losses.append(loss.item())
        logs = {"loss": float(np.mean(losses)) if losses else float("nan")}
        if x_val.shape[0]:
            logs["val_loss"], logs["val_accuracy"] = evaluate(network, x_val, y_val)
        history.append(logs)
        if on_epoch is not None:
            on_epoch(epoch, epochs, logs)
    network.eval()
    return history


# ---------------------------------------------------------------------------
# Serialisation


def encode_weights(arrays: Sequence[np.ndarray]) -> str:
    """Length-prefixed float32 tensors with a JSON shape/dtype header, base64 encoded."""
    buf = bytearray(struct.pack("<I", len(arrays)))
    for array in arrays:
        data = np.ascontiguousarray(array, dtype="<f4")
        header = json.dumps({"shape": list(data.shape), "dtype": "float32"}).encode("utf-8")
        buf += struct.pack("<I", len(header))
        buf += header
        buf += struct.pack("<I", data.nbytes)
        buf += data.tobytes()
    return base64.b64encode(bytes(buf)).decode("ascii")


def decode_weights(blob: str) -> List[np.ndarray]:
    raw = base64.b64decode(blob, validate=True)
    offset = 0

    def take(size: int) -> bytes:
        nonlocal offset
        if offset + size > len(raw):
            raise ValueError("Weight blob is truncated")
        chunk = raw[offset : offset + size]
        offset += size
        return chunk

    (count,) = struct.unpack("<I", take(4))
    arrays: List[np.ndarray] = []
    for _ in range(count):
        (header_len,) = struct.unpack("<I", take(4))
        header = json.loads(take(header_len).decode("utf-8"))
        (nbytes,) = struct.unpack("<I", take(4))
        dtype = np.dtype(header.get("dtype", "float32")).newbyteorder("<")
        shape = tuple(int(dim) for dim in header["shape"])
        array = np.frombuffer(take(nbytes), dtype=dtype).reshape(shape)
        arrays.append(array.astype(np.float32))
    if offset != len(raw):
        raise ValueError(f"{len(raw) - offset} trailing bytes in weight blob")
    return arrays


def state_arrays(network: nn.Module) -> List[np.ndarray]:
    return [tensor.detach().cpu().numpy() for tensor in network.state_dict().values()]


def load_arrays(network: nn.Module, arrays: Sequence[np.ndarray]) -> None:
    """Load decoded tensors into *network* in ``state_dict`` order."""
    state = network.state_dict()
    if len(state) != len(arrays):
        raise ValueError(f"Expected {len(state)} weight tensors, got {len(arrays)}")
    for (key, tensor), array in zip(state.items(), arrays):
        if tuple(tensor.shape) != tuple(array.shape):
            raise ValueError(f"Tensor {key}: weights {tuple(array.shape)} do not match {tuple(tensor.shape)}")
    network.load_state_dict({key: torch.from_numpy(np.array(array)) for key, array in zip(state, arrays)})


def _model_version(clock: Callable[[], datetime]) -> str:
    return clock().strftime("%Y%m%dT%H%M%S%fZ")


def serialize_model(
    network: nn.Module,
    topology: Dict[str, Any],
    *,
    model_id: Optional[str] = None,
    version: Optional[str] = None,
    clock: Callable[[], datetime] = utc_now,
) -> MLModel:
    return MLModel(
        id=model_id or uuid.uuid4().hex,
        version=version or _model_version(clock),
        input_length=input_width(network),
        topology=json.loads(json.dumps(topology)),
        weights=encode_weights(state_arrays(network)),
    )


def model_from_payload(payload: Dict[str, Any]) -> MLModel:
    """Build an `MLModel` whose input length is the first Linear weight's in_features."""
    arrays = decode_weights(payload["weights"])
    if not arrays or arrays[0].ndim != 2:
        raise ValueError("First weight tensor must be a 2-D Linear weight")
    input_length = int(arrays[0].shape[1])
    topology = payload["topology"]
    declared = topology["layers"][0].get("input_dim")
    if declared is not None and int(declared) != input_length:
        raise ValueError(f"Topology input_dim {declared} disagrees with weights ({input_length})")
    return MLModel(
        id=str(payload["id"]),
        version=str(payload["version"]),
        input_length=input_length,
        topology=topology,
        weights=payload["weights"],
    )


def deserialize_model(model: MLModel) -> nn.Sequential:
    arrays = decode_weights(model.weights)
    if arrays and int(arrays[0].shape[1]) != model.input_length:
        raise ValueError(
            f"Model {model.id}: input_length {model.input_length} disagrees with weights ({arrays[0].shape[1]})"
        )
    network = build_network(model.topology, input_length=model.input_length)
    load_arrays(network, arrays)
    network.eval()
    return network


# ---------------------------------------------------------------------------
# Training


def _notify(progress: Optional[ProgressCallback], step: str, percent: float, detail: str) -> None:
    logger.info("[%s %3.0f%%] %s", step, percent, detail)
    if progress is not None:
        progress(step, percent, detail)


def eligible_sessions(
    backend: SessionBackend, min_samples: int
) -> List[Tuple[TestSession, List[float]]]:
    corpus = []
    for session in backend.list_sessions():
        if session.status is not SessionStatus.COMPLETED or session.classification is None:
            continue
        samples = backend.list_samples(session.id)
        if len(samples) < min_samples:
            continue
        corpus.append((session, trace_values(samples)))
    return corpus


def train_model(
    backend: SessionBackend,
    config: Optional[TrainingConfig] = None,
    progress: Optional[ProgressCallback] = None,
    *,
    clock: Callable[[], datetime] = utc_now,
) -> MLModel:
    """
    Train a fresh network on every eligible session and persist it.
    The new model is stored but not made active. Only one run may be active
    in the process; a concurrent call raises `TrainingInProgressError`.
    """
    if not _training_lock.acquire(blocking=False):
        raise TrainingInProgressError("A training run is already active")
    try:
        return _train(backend, config or TrainingConfig(), progress, clock)
    finally:
        _training_lock.release()


def _train(
    backend: SessionBackend,
    cfg: TrainingConfig,
    progress: Optional[ProgressCallback],
    clock: Callable[[], datetime],
) -> MLModel:
    _notify(progress, "Preparing Data", 0, "Collecting labelled sessions")
    corpus = eligible_sessions(backend, cfg.min_samples)
    if len(corpus) < cfg.min_corpus:
        raise CorpusTooSmallError(
            f"Need at least {cfg.min_corpus} classified sessions with >= {cfg.min_samples} samples, found {len(corpus)}"
        )
    x = encode_batch([values for _session, values in corpus])
    y = np.asarray([LABELS[session.classification] for session, _values in corpus], dtype=np.int64)
    _notify(progress, "Preparing Data", 20, f"{x.shape[0]} sessions, input length {x.shape[1]}")

    if cfg.seed is not None:
        torch.manual_seed(cfg.seed)
    topology = build_topology(x.shape[1])
    network = build_network(topology)
    _notify(progress, "Building Model", 25, " -> ".join(describe_layers(topology["layers"])))

    def on_epoch(epoch: int, epochs: int, logs: Dict[str, float]) -> None:
        detail = f"Epoch {epoch}/{epochs} loss={logs['loss']:.4f}"
        if "val_loss" in logs:
            detail += f" val_loss={logs['val_loss']:.4f} val_accuracy={logs['val_accuracy']:.2f}"
        _notify(progress, "Training Model", 30 + epoch / epochs * 60, detail)

    fit(
        network,
        x,
        y,
        epochs=cfg.epochs,
        batch_size=cfg.batch_size,
        validation_split=cfg.validation_split,
        learning_rate=cfg.learning_rate,
        on_epoch=on_epoch,
    )

    model = serialize_model(network, topology, clock=clock)
    _notify(progress, "Saving Model", 95, f"Saving model version {model.version}")
    backend.put_model(model)
    _notify(progress, "Completed", 100, f"Model {model.version} saved ({model.id})")
    return model


def training_running() -> bool:
    return _training_lock.locked()


class TrainingCoordinator:
    """Starts training for one backend; a second request anywhere in the process is rejected, not queued."""

    def __init__(self, backend: SessionBackend, config: Optional[TrainingConfig] = None):
        self.backend = backend
        self.config = config or TrainingConfig()

    @property
    def running(self) -> bool:
        return training_running()

    def train(self, progress: Optional[ProgressCallback] = None) -> MLModel:
        return train_model(self.backend, self.config, progress)


# ---------------------------------------------------------------------------
# Inference


def resolve_active_model(backend: SessionBackend) -> MLModel:
    active_id = backend.get_active_model_id()
    if active_id is not None:
        model = backend.get_model(active_id)
        if model is None:
            raise MissingModelError(f"Active model '{active_id}' no longer exists")
        return model
    models = backend.list_models()
    if not models:
        raise MissingModelError("No trained model available")
    logger.info("No active model selected; using most recent version %s", models[0].version)
    return models[0]


class ModelClassifier:
    """Classifies sessions with a trained model. The model is never modified."""

    name = "model"

    def __init__(self, backend: SessionBackend, model: MLModel, min_samples: int = 5):
        self.backend = backend
        self.model = model
        self.min_samples = min_samples
        self._network = deserialize_model(model)

    def predict(self, samples: Sequence[Sample]) -> Tuple[Classification, np.ndarray]:
        if len(samples) < self.min_samples:
            raise InsufficientSamplesError(
                f"Need at least {self.min_samples} samples for model inference, got {len(samples)}"
            )
        x = encode_trace(trace_values(samples), self.model.input_length)
        probs = predict_proba(self._network, x)[0]
        label = (
            Classification.LEAK
            if probs[LABELS[Classification.LEAK]] > probs[LABELS[Classification.DIFFUSION]]
            else Classification.DIFFUSION
        )
        return label, probs

    def classify(self, session: TestSession) -> Classification:
        label, probs = self.predict(self.backend.list_samples(session.id))
        logger.debug("Session %s: p=%s -> %s", session.id, np.round(probs, 4).tolist(), label.value)
        return label
