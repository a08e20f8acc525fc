"""Guideline curves: interpolation, validation and envelope classification.

A guideline is a pair of piecewise-linear curves (min and max pressure over
elapsed seconds). Editors may author each boundary as a cubic Bézier; it is
flattened to a polyline with `flatten_bezier` before it is stored, so the
classifier only ever sees sampled points.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .data import read_guideline_csv, write_guideline_csv
from .domain import (
    Classification,
    CurvePoint,
    GuidelineCurve,
    Sample,
    SensorConfig,
    TestSession,
    convert_raw_value,
)
from .errors import InsufficientSamplesError, MissingGuidelineError, MissingSensorConfigError
from .store import SessionBackend

logger = logging.getLogger(__name__)

Point = Tuple[float, float]


def interpolate(curve: Sequence[CurvePoint], x: float) -> float:
    """Linear interpolation with flat extrapolation beyond either end."""
    if not curve:
        raise ValueError("Cannot interpolate an empty curve")
    if x <= curve[0].x:
        return curve[0].y
    if x >= curve[-1].x:
        return curve[-1].y
    for left, right in zip(curve, curve[1:]):
        if left.x <= x <= right.x:
            t = (x - left.x) / (right.x - left.x)
            return left.y + t * (right.y - left.y)
    # Only reachable for curves that were never validated.
    raise ValueError(f"x={x} not bracketed; curve is not x-monotonic")


def validate_curve(points: Sequence[CurvePoint], label: str = "curve") -> None:
    xs = [point.x for point in points]
    for left, right in zip(xs, xs[1:]):
        if not right > left:
            raise ValueError(f"{label}: x values must be strictly increasing ({left} then {right})")


def validate_guideline(curve: GuidelineCurve) -> None:
    validate_curve(curve.min_curve, "min curve")
    validate_curve(curve.max_curve, "max curve")


def flatten_bezier(p0: Point, p1: Point, p2: Point, p3: Point, samples: int = 20) -> List[CurvePoint]:
    """
    Sample a cubic Bézier into `samples + 1` evenly spaced (in t) points.
    Control points that fold the curve back on itself in x are rejected.
    """
    if samples < 1:
        raise ValueError("samples must be >= 1")
    control = np.array([p0, p1, p2, p3], dtype=float)
    t = np.linspace(0.0, 1.0, samples + 1)[:, None]
    mt = 1.0 - t
    pts = (
        mt**3 * control[0]
        + 3.0 * mt**2 * t * control[1]
        + 3.0 * mt * t**2 * control[2]
        + t**3 * control[3]
    )
    points = [CurvePoint(float(x), float(y)) for x, y in pts]
    validate_curve(points, "bezier")
    return points


def elapsed_seconds(samples: Sequence[Sample]) -> np.ndarray:
    """Seconds since the earliest sample, in the order the samples are given."""
    first = min(sample.timestamp for sample in samples)
    return np.array([(sample.timestamp - first).total_seconds() for sample in samples], dtype=float)


def classify_trace(
    samples: Sequence[Sample],
    curve: GuidelineCurve,
    sensor_config: Optional[SensorConfig],
) -> Classification:
    if not curve.is_complete:
        raise MissingGuidelineError("Guideline needs both a min and a max curve")
    if not samples:
        raise InsufficientSamplesError("Session has no samples")
    elapsed = elapsed_seconds(samples)
    for sample, seconds in zip(samples, elapsed):
        value = convert_raw_value(sample.value, sensor_config)
        if value < interpolate(curve.min_curve, seconds) or value > interpolate(curve.max_curve, seconds):
            return Classification.LEAK
    return Classification.DIFFUSION


class GuidelineClassifier:
    """Classifies a session against its vessel type's guideline envelope."""

    name = "guideline"

    def __init__(self, backend: SessionBackend):
        self.backend = backend

    def classify(self, session: TestSession) -> Classification:
        curve = self.backend.get_vessel_type_curves(session.vessel_type_id)
        if curve is None or not curve.is_complete:
            raise MissingGuidelineError(
                f"Vessel type '{session.vessel_type_id}' has no complete guideline curve"
            )
        sensor_config = self.backend.get_sensor_config(session.sensor_config_id)
        if sensor_config is None:
            raise MissingSensorConfigError(f"Unknown sensor config '{session.sensor_config_id}'")
        samples = self.backend.list_samples(session.id)
        result = classify_trace(samples, curve, sensor_config)
        logger.debug("Session %s: %d samples -> %s", session.id, len(samples), result.value)
        return result


def import_guidelines(backend: SessionBackend, path: str | Path) -> int:
    """
    Replace the stored curves of every vessel type named in *path*.
    Unknown vessel types are skipped. Returns the number of types updated.
    """
    curves = read_guideline_csv(path)
    for curve in curves.values():
        validate_guideline(curve)
    updated = 0
    for name, curve in curves.items():
        vessel_type = backend.find_vessel_type(name)
        if vessel_type is None:
            logger.warning("Skipping guideline for unknown vessel type %r", name)
            continue
        backend.put_vessel_type(replace(vessel_type, curve=curve))
        updated += 1
    logger.info("Imported guidelines for %d vessel type(s) from %s", updated, path)
    return updated


def export_guidelines(backend: SessionBackend, vessel_type_ids: Iterable[str], path: str | Path) -> int:
    curves: Dict[str, GuidelineCurve] = {}
    for vessel_type_id in vessel_type_ids:
        vessel_type = backend.get_vessel_type(vessel_type_id)
        if vessel_type is None:
            raise MissingGuidelineError(f"Unknown vessel type '{vessel_type_id}'")
        curves[vessel_type.name] = vessel_type.curve
    return write_guideline_csv(curves, path)
