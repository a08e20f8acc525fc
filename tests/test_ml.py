from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import numpy as np
import pytest
import torch

from leakbench.config import TrainingConfig
from leakbench.data import load_model, save_model
from leakbench.domain import Classification, MLModel, Sample, SessionStatus, TestSession
from leakbench.errors import (
    CorpusTooSmallError,
    InsufficientSamplesError,
    MissingModelError,
    TrainingInProgressError,
)
from leakbench.ml import (
    ModelClassifier,
    TrainingCoordinator,
    build_network,
    build_topology,
    decode_weights,
    deserialize_model,
    encode_batch,
    encode_trace,
    encode_weights,
    model_from_payload,
    predict_proba,
    resolve_active_model,
    serialize_model,
    train_model,
)
from leakbench.store import InMemoryBackend

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
FAST = TrainingConfig(epochs=3, batch_size=4, seed=7)


def _add_session(
    backend: InMemoryBackend,
    session_id: str,
    values: list[float],
    classification: Optional[Classification],
    status: SessionStatus = SessionStatus.COMPLETED,
) -> TestSession:
    session = TestSession(
        id=session_id,
        vessel_type_id="vt",
        sensor_config_id="raw",
        status=status,
        start_time=T0,
        classification=classification,
    )
    backend.put_session(session)
    samples = [Sample(timestamp=T0 + timedelta(milliseconds=500 * i), value=v) for i, v in enumerate(values)]
    backend.append_samples(session_id, samples, "raw")
    return session


def _corpus(backend: InMemoryBackend, count: int = 12) -> None:
    for i in range(count):
        length = 6 + i % 4
        if i % 2:
            values = [800.0 - 40.0 * k for k in range(length)]
            label = Classification.LEAK
        else:
            values = [800.0 - 2.0 * k for k in range(length)]
            label = Classification.DIFFUSION
        _add_session(backend, f"s{i:02d}", values, label)


def _network(input_length: int = 8, seed: int = 0) -> torch.nn.Sequential:
    torch.manual_seed(seed)
    return build_network(build_topology(input_length))


def _serialize(network: torch.nn.Sequential, model_id: str, version: str) -> MLModel:
    return serialize_model(network, build_topology(network[0].in_features), model_id=model_id, version=version)


def test_encode_batch_right_pads_to_longest():
    x = encode_batch([[1, 2, 3], [4], [5, 6]])
    assert x.shape == (3, 3)
    assert x.tolist() == [[1, 2, 3], [4, 0, 0], [5, 6, 0]]


def test_encode_trace_pads_and_truncates():
    assert encode_trace([1, 2], 4).tolist() == [[1, 2, 0, 0]]
    assert encode_trace([1, 2, 3, 4, 5, 6], 4).tolist() == [[1, 2, 3, 4]]


def test_weight_blob_round_trip():
    arrays = [np.arange(6, dtype=np.float32).reshape(2, 3), np.array([0.5, -1.25], dtype=np.float32)]
    decoded = decode_weights(encode_weights(arrays))
    assert [a.shape for a in decoded] == [(2, 3), (2,)]
    for original, restored in zip(arrays, decoded):
        np.testing.assert_array_equal(original, restored)


def test_decode_rejects_truncated_blob():
    blob = encode_weights([np.ones((4, 4), dtype=np.float32)])
    raw = base64.b64decode(blob)
    with pytest.raises(ValueError):
        decode_weights(base64.b64encode(raw[:-3]).decode("ascii"))


def test_serialised_model_predicts_identically(tmp_path: Path):
    network = _network(8, seed=3)
    model = _serialize(network, "m1", "v1")
    assert model.input_length == 8

    path = tmp_path / "model.json"
    save_model(model, path)
    loaded = load_model(path)
    assert loaded.input_length == 8
    assert loaded.describe() == ["dense(128)", "dropout(0.2)", "dense(64)", "dense(2)"]

    x = encode_trace([700, 690, 650, 600, 580, 540], 8)
    before = predict_proba(network, x)
    after = predict_proba(deserialize_model(loaded), x)
    np.testing.assert_allclose(before, after, rtol=0, atol=1e-6)
    # inference leaves parameters untouched
    np.testing.assert_allclose(predict_proba(network, x), before)


def test_input_length_comes_from_first_linear_weight():
    model = _serialize(_network(8), "m1", "v1")
    shapes = [array.shape for array in decode_weights(model.weights)]
    assert shapes == [(128, 8), (128,), (64, 128), (64,), (2, 64), (2,)]
    payload = {"id": "m1", "version": "v1", "topology": dict(model.topology), "weights": model.weights}
    payload["topology"] = {"layers": [dict(model.topology["layers"][0], input_dim=None)] + model.topology["layers"][1:]}
    assert model_from_payload(payload).input_length == 8

    payload["topology"] = {"layers": [dict(model.topology["layers"][0], input_dim=9)] + model.topology["layers"][1:]}
    with pytest.raises(ValueError):
        model_from_payload(payload)


def test_tie_defaults_to_diffusion():
    network = _network(5)
    with torch.no_grad():
        for param in network.parameters():
            param.zero_()
    backend = InMemoryBackend()
    session = _add_session(backend, "s1", [100.0] * 5, None)

    model = _serialize(network, "tie", "v1")
    label, probs = ModelClassifier(backend, model).predict(backend.list_samples(session.id))
    assert probs.tolist() == [0.5, 0.5]
    assert label is Classification.DIFFUSION

    with torch.no_grad():
        network[-1].bias.copy_(torch.tensor([0.0, 1.0]))
    leaning = _serialize(network, "leak", "v2")
    assert ModelClassifier(backend, leaning).classify(session) is Classification.LEAK


def test_inference_needs_five_samples():
    backend = InMemoryBackend()
    session = _add_session(backend, "short", [1.0, 2.0, 3.0, 4.0], None)
    classifier = ModelClassifier(backend, _serialize(_network(5), "m", "v"))
    with pytest.raises(InsufficientSamplesError):
        classifier.classify(session)


def test_training_refuses_small_corpus():
    backend = InMemoryBackend()
    _corpus(backend, count=9)
    _add_session(backend, "too-short", [1.0] * 5, Classification.LEAK)
    _add_session(backend, "unlabelled", [1.0] * 8, None)
    _add_session(backend, "running", [1.0] * 8, Classification.LEAK, status=SessionStatus.RUNNING)
    with pytest.raises(CorpusTooSmallError):
        train_model(backend, FAST)
    assert backend.list_models() == []


def test_training_reports_progress_and_stores_model():
    backend = InMemoryBackend()
    _corpus(backend)
    events: list[tuple[str, float, str]] = []

    model = train_model(backend, FAST, lambda step, percent, detail: events.append((step, percent, detail)))

    steps = [step for step, _, _ in events]
    percents = [percent for _, percent, _ in events]
    assert steps[0] == "Preparing Data"
    assert steps.count("Training Model") == FAST.epochs
    assert steps[-2:] == ["Saving Model", "Completed"]
    assert percents == sorted(percents)
    assert percents[-1] == 100
    assert model.input_length == 9
    assert backend.get_model(model.id) == model
    assert backend.get_active_model_id() is None
    assert resolve_active_model(backend) == model


def test_second_training_run_is_rejected():
    backend = InMemoryBackend()
    _corpus(backend)
    coordinator = TrainingCoordinator(backend, FAST)
    rejected: list[Exception] = []

    def progress(step: str, percent: float, detail: str) -> None:
        if step == "Building Model":
            assert coordinator.running
            try:
                coordinator.train()
            except TrainingInProgressError as exc:
                rejected.append(exc)

    coordinator.train(progress)
    assert len(rejected) == 1
    assert not coordinator.running
    assert len(backend.list_models()) == 1


def test_active_model_selection():
    backend = InMemoryBackend()
    with pytest.raises(MissingModelError):
        resolve_active_model(backend)
    older = _serialize(_network(5), "old", "20240101T000000000000Z")
    newer = _serialize(_network(5), "new", "20240201T000000000000Z")
    backend.put_model(older)
    backend.put_model(newer)
    assert resolve_active_model(backend).id == "new"
    backend.set_active_model("old")
    assert resolve_active_model(backend).id == "old"


def test_network_layers_match_topology():
    network = _network(6)
    kinds = [type(module).__name__ for module in network]
    assert kinds == ["Linear", "ReLU", "Dropout", "Linear", "ReLU", "Linear"]
    assert network[0].in_features == 6
    assert network[2].p == pytest.approx(0.2)
    assert list(network.state_dict()) == ["0.weight", "0.bias", "3.weight", "3.bias", "5.weight", "5.bias"]


def test_deserialize_rejects_mismatched_weights():
    model = _serialize(_network(5), "m", "v")
    wrong = MLModel(
        id=model.id,
        version=model.version,
        input_length=5,
        topology=build_topology(5),
        weights=encode_weights([np.zeros((128, 5), dtype=np.float32)]),
    )
    with pytest.raises(ValueError):
        deserialize_model(wrong)


def test_training_is_exclusive_across_coordinators():
    first_backend = InMemoryBackend()
    second_backend = InMemoryBackend()
    _corpus(first_backend)
    _corpus(second_backend)
    first = TrainingCoordinator(first_backend, FAST)
    second = TrainingCoordinator(second_backend, FAST)
    rejected: list[Exception] = []

    def progress(step: str, percent: float, detail: str) -> None:
        if step == "Building Model":
            assert second.running
            try:
                second.train()
            except TrainingInProgressError as exc:
                rejected.append(exc)
            try:
                train_model(second_backend, FAST)
            except TrainingInProgressError as exc:
                rejected.append(exc)

    first.train(progress)
    assert len(rejected) == 2
    assert second_backend.list_models() == []
    assert not first.running

    second.train()
    assert len(second_backend.list_models()) == 1
