from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence


@dataclass
class SerialConfig:
    port: Optional[str] = None
    baudrate: int = 9600
    timeout: float = 0.5
    chunk_size: int = 64


@dataclass
class DemoConfig:
    tick_sec: float = 0.5
    seed: Optional[int] = None
    trend_low: float = 150.0
    trend_high: float = 1020.0
    noise_sigma: float = 4.0


@dataclass
class StoreConfig:
    ring_capacity: int = 1000


@dataclass
class ClassifyConfig:
    guideline_delay_sec: float = 0.2
    model_delay_sec: float = 0.5
    min_model_samples: int = 5


@dataclass
class TrainingConfig:
    epochs: int = 50
    validation_split: float = 0.2
    batch_size: int = 32
    learning_rate: float = 0.001
    min_corpus: int = 10
    min_samples: int = 6
    seed: Optional[int] = None


@dataclass
class LeakBenchConfig:
    serial: SerialConfig = field(default_factory=SerialConfig)
    demo: DemoConfig = field(default_factory=DemoConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    classify: ClassifyConfig = field(default_factory=ClassifyConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> LeakBenchConfig:
    """
    Load the bench configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["training.epochs=5", "serial.port=/dev/ttyACM0"]
    A missing *path* yields the defaults with overrides applied.
    """
    data: Dict[str, Any] = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)

    serial = merged.get("serial") or {}
    demo = merged.get("demo") or {}
    store = merged.get("store") or {}
    classify = merged.get("classify") or {}
    training = merged.get("training") or {}
    return LeakBenchConfig(
        serial=SerialConfig(
            port=str(serial["port"]) if serial.get("port") else None,
            baudrate=int(serial.get("baudrate", 9600)),
            timeout=float(serial.get("timeout", 0.5)),
            chunk_size=int(serial.get("chunk_size", 64)),
        ),
        demo=DemoConfig(
            tick_sec=float(demo.get("tick_sec", 0.5)),
            seed=_optional_int(demo.get("seed")),
            trend_low=float(demo.get("trend_low", 150.0)),
            trend_high=float(demo.get("trend_high", 1020.0)),
            noise_sigma=float(demo.get("noise_sigma", 4.0)),
        ),
        store=StoreConfig(ring_capacity=int(store.get("ring_capacity", 1000))),
        classify=ClassifyConfig(
            guideline_delay_sec=float(classify.get("guideline_delay_sec", 0.2)),
            model_delay_sec=float(classify.get("model_delay_sec", 0.5)),
            min_model_samples=int(classify.get("min_model_samples", 5)),
        ),
        training=TrainingConfig(
            epochs=int(training.get("epochs", 50)),
            validation_split=float(training.get("validation_split", 0.2)),
            batch_size=int(training.get("batch_size", 32)),
            learning_rate=float(training.get("learning_rate", 0.001)),
            min_corpus=int(training.get("min_corpus", 10)),
            min_samples=int(training.get("min_samples", 6)),
            seed=_optional_int(training.get("seed")),
        ),
    )


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower() in {"null", "none"}:
        return None
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if (raw.startswith("[") and raw.endswith("]")) or (raw.startswith("{") and raw.endswith("}")):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
