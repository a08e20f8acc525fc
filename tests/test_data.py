from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pandas as pd
import pytest

from leakbench.data import load_sensor_config, read_session_csv, write_session_csv
from leakbench.domain import ConversionMode, Sample


def test_session_csv_export_is_raw_and_ascending(tmp_path: Path):
    t0 = datetime(2024, 2, 1, 6, 0, tzinfo=timezone.utc)
    samples = [Sample(t0 + timedelta(seconds=2), 300), Sample(t0, 512), Sample(t0 + timedelta(seconds=1), 401)]
    out = tmp_path / "session.csv"
    write_session_csv(samples, out)

    df = pd.read_csv(out)
    assert list(df.columns) == ["timestamp", "value"]
    assert df["value"].tolist() == [512, 401, 300]

    loaded = read_session_csv(out)
    assert [s.timestamp for s in loaded] == sorted(s.timestamp for s in samples)


def test_session_csv_import_ignores_extra_columns(tmp_path: Path):
    path = tmp_path / "import.csv"
    path.write_text(
        "timestamp,value,display\n"
        "2024-02-01T06:00:00Z,100,0.49 V\n"
        "2024-02-01T06:00:00.500000+00:00,101,0.49 V\n",
        encoding="utf-8",
    )
    samples = read_session_csv(path)
    assert [s.value for s in samples] == [100.0, 101.0]
    assert samples[1].timestamp - samples[0].timestamp == timedelta(milliseconds=500)
    assert samples[0].timestamp.tzinfo is not None


def test_session_csv_requires_value_column(tmp_path: Path):
    path = tmp_path / "bad.csv"
    path.write_text("timestamp,pressure\n2024-02-01T06:00:00Z,1\n", encoding="utf-8")
    with pytest.raises(ValueError, match="value"):
        read_session_csv(path)


def test_sensor_config_json(tmp_path: Path):
    path = tmp_path / "sensor.json"
    path.write_text(
        json.dumps({"id": "bar", "mode": "custom", "min": 102, "max": 921, "unit": "bar", "unit_min": 0, "unit_max": 10}),
        encoding="utf-8",
    )
    config = load_sensor_config(path)
    assert config is not None
    assert config.mode is ConversionMode.CUSTOM
    assert config.unit == "bar"
    assert load_sensor_config(None) is None
