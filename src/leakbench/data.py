"""File formats: session CSV, guideline CSV, model JSON and sensor-config JSON."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .domain import GuidelineCurve, MLModel, Sample, SensorConfig
from .ml import model_from_payload

logger = logging.getLogger(__name__)

SESSION_COLUMNS = ["timestamp", "value"]
GUIDELINE_COLUMNS = ["vesselType", "timestamp", "minPressure", "maxPressure"]


def read_session_csv(path: str | Path) -> List[Sample]:
    """Load raw samples from *path*.

    Parameters
    ----------
    path:
        CSV with an ISO-8601 `timestamp` column and a raw numeric `value`
        column. Any other columns are ignored.

    Returns
    -------
    list of Sample
        Rows in file order; timestamps are timezone-aware (naive values are
        read as UTC).
    """

    df = pd.read_csv(path)
    missing = set(SESSION_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")
    if df["value"].isna().any():
        raise ValueError("Every row requires a 'value'")

    timestamps = pd.to_datetime(df["timestamp"], utc=True, format="ISO8601")
    values = pd.to_numeric(df["value"])
    return [
        Sample(timestamp=ts.to_pydatetime(), value=float(value))
        for ts, value in zip(timestamps, values)
    ]


def write_session_csv(samples: Sequence[Sample], path: str | Path) -> None:
    """Export raw values in ascending time order; display conversion is never applied."""
    ordered = sorted(samples, key=lambda sample: sample.timestamp)
    df = pd.DataFrame(
        {
            "timestamp": [sample.timestamp.isoformat() for sample in ordered],
            "value": [sample.value for sample in ordered],
        },
        columns=SESSION_COLUMNS,
    )
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(target, index=False)
    logger.debug("Wrote %d samples to %s", len(ordered), target)


def read_guideline_csv(path: str | Path) -> Dict[str, GuidelineCurve]:
    """Parse guideline rows into one curve pair per vessel type name.

    Blank `minPressure`/`maxPressure` cells contribute no point to that curve.
    """

    df = pd.read_csv(path, dtype={"vesselType": str})
    missing = set(GUIDELINE_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Missing required columns: {sorted(missing)}")

    df = df.dropna(subset=["vesselType"])
    df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
    df = df.dropna(subset=["timestamp"])
    df["minPressure"] = pd.to_numeric(df["minPressure"], errors="coerce")
    df["maxPressure"] = pd.to_numeric(df["maxPressure"], errors="coerce")

    curves: Dict[str, GuidelineCurve] = {}
    for name, group in df.groupby("vesselType", sort=False):
        group = group.sort_values("timestamp", kind="mergesort")
        min_points = _points(group, "minPressure")
        max_points = _points(group, "maxPressure")
        curves[str(name)] = GuidelineCurve.from_points(min_points, max_points)
    return curves


def _points(group: pd.DataFrame, column: str) -> List[Tuple[float, float]]:
    subset = group.dropna(subset=[column])
    return list(zip(subset["timestamp"].astype(float), subset[column].astype(float)))


def write_guideline_csv(curves: Mapping[str, GuidelineCurve], path: str | Path) -> int:
    """Write one row per distinct x per vessel type; returns the row count."""
    rows: List[Dict[str, object]] = []
    for name, curve in curves.items():
        points: Dict[float, Dict[str, float]] = {}
        for point in curve.min_curve:
            points.setdefault(point.x, {})["min"] = point.y
        for point in curve.max_curve:
            points.setdefault(point.x, {})["max"] = point.y
        for x in sorted(points):
            rows.append(
                {
                    "vesselType": name,
                    "timestamp": x,
                    "minPressure": points[x].get("min"),
                    "maxPressure": points[x].get("max"),
                }
            )
    df = pd.DataFrame(rows, columns=GUIDELINE_COLUMNS)
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(target, index=False)
    logger.info("Wrote %d guideline row(s) for %d vessel type(s) to %s", len(rows), len(curves), target)
    return len(rows)



def save_model(model: MLModel, path: str | Path) -> None:
    payload = {
        "id": model.id,
        "version": model.version,
        "topology": model.topology,
        "weights": model.weights,
    }
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)


def load_model(path: str | Path) -> MLModel:
    """Read a model file. `input_length` is recovered from the weights, not the file."""
    with Path(path).open("r", encoding="utf-8") as fh:
        payload = json.load(fh)
    return model_from_payload(payload)


def load_sensor_config(path: Optional[str | Path]) -> Optional[SensorConfig]:
    if path is None:
        return None
    with Path(path).open("r", encoding="utf-8") as fh:
        return SensorConfig.from_mapping(json.load(fh))
