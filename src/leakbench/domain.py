"""Core records exchanged between acquisition, storage and classification."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

ADC_SAMPLE_MIN = 0
ADC_SAMPLE_MAX = 1023


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversionMode(str, enum.Enum):
    RAW = "RAW"
    VOLTAGE = "VOLTAGE"
    CUSTOM = "CUSTOM"


class SessionStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    SCRAPPED = "SCRAPPED"


class Classification(str, enum.Enum):
    LEAK = "LEAK"
    DIFFUSION = "DIFFUSION"


@dataclass(frozen=True)
class Sample:
    """One raw reading. `value` is never unit-converted."""

    timestamp: datetime
    value: float


@dataclass(frozen=True)
class SensorConfig:
    id: str
    mode: ConversionMode = ConversionMode.RAW
    reference_voltage: float = 5.0
    min: float = 0.0
    max: float = 1023.0
    adc_bits: int = 10
    decimals: int = 2
    unit: str = "RAW"
    unit_min: float = 0.0
    unit_max: float = 1023.0

    @staticmethod
    def from_mapping(data: Dict[str, Any]) -> "SensorConfig":
        if "id" not in data:
            raise ValueError("sensor config requires an 'id' field")
        return SensorConfig(
            id=str(data["id"]),
            mode=ConversionMode(str(data.get("mode", "RAW")).upper()),
            reference_voltage=float(data.get("reference_voltage", 5.0)),
            min=float(data.get("min", 0.0)),
            max=float(data.get("max", 1023.0)),
            adc_bits=int(data.get("adc_bits", 10)),
            decimals=int(data.get("decimals", 2)),
            unit=str(data.get("unit", "RAW")),
            unit_min=float(data.get("unit_min", 0.0)),
            unit_max=float(data.get("unit_max", 1023.0)),
        )


def convert_raw_value(raw_value: float, config: Optional[SensorConfig]) -> float:
    """Project a raw ADC reading into display units. Pure; no config means RAW."""
    if config is None:
        return float(raw_value)
    if config.mode is ConversionMode.VOLTAGE:
        max_adc = float(2 ** (config.adc_bits or 10) - 1)
        return raw_value / max_adc * config.reference_voltage
    if config.mode is ConversionMode.CUSTOM:
        raw_range = config.max - config.min
        if raw_range == 0:
            return config.unit_min
        fraction = (raw_value - config.min) / raw_range
        return config.unit_min + fraction * (config.unit_max - config.unit_min)
    return float(raw_value)


def format_value(raw_value: float, config: Optional[SensorConfig]) -> str:
    converted = convert_raw_value(raw_value, config)
    decimals = config.decimals if config is not None else 0
    return f"{converted:.{decimals}f}"


@dataclass
class TestSession:
    __test__ = False  # keep pytest from collecting this record

    id: str
    vessel_type_id: str
    sensor_config_id: str
    status: SessionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    classification: Optional[Classification] = None


@dataclass(frozen=True)
class CurvePoint:
    x: float  # elapsed seconds
    y: float  # pressure in display units


@dataclass(frozen=True)
class GuidelineCurve:
    min_curve: Tuple[CurvePoint, ...] = ()
    max_curve: Tuple[CurvePoint, ...] = ()

    @property
    def is_complete(self) -> bool:
        return bool(self.min_curve) and bool(self.max_curve)

    @staticmethod
    def from_points(
        min_points: Sequence[Tuple[float, float]], max_points: Sequence[Tuple[float, float]]
    ) -> "GuidelineCurve":
        return GuidelineCurve(
            min_curve=tuple(CurvePoint(float(x), float(y)) for x, y in min_points),
            max_curve=tuple(CurvePoint(float(x), float(y)) for x, y in max_points),
        )


@dataclass
class VesselType:
    id: str
    name: str
    curve: GuidelineCurve = field(default_factory=GuidelineCurve)


@dataclass(frozen=True)
class MLModel:
    """Immutable snapshot of a trained classifier."""

    id: str
    version: str
    input_length: int
    topology: Dict[str, Any]
    weights: str  # base64 blob, see leakbench.ml.encode_weights

    def describe(self) -> List[str]:
        return describe_layers(self.topology["layers"])


def describe_layers(layers: Sequence[Dict[str, Any]]) -> List[str]:
    return [f"{layer['type']}({layer.get('units', layer.get('rate'))})" for layer in layers]
