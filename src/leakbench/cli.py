"""Command line interface for the leakbench package."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pandas as pd
import typer

from .bulk import bulk_classify
from .config import LeakBenchConfig, load_config
from .data import load_model, load_sensor_config, read_guideline_csv, read_session_csv, save_model
from .demo import DemoProfile, run_demo
from .device import device_app
from .domain import (
    Classification,
    GuidelineCurve,
    SensorConfig,
    SessionStatus,
    TestSession,
    VesselType,
    format_value,
    utc_now,
)
from .errors import LeakBenchError
from .guideline import GuidelineClassifier, export_guidelines, import_guidelines
from .logging_setup import configure_logging
from .ml import ModelClassifier, TrainingCoordinator
from .sessions import SessionManager
from .store import InMemoryBackend

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})
classify_app = typer.Typer(help="Classify recorded sessions.")
guidelines_app = typer.Typer(help="Guideline curve import/export.")
app.add_typer(device_app, name="device")
app.add_typer(classify_app, name="classify")
app.add_typer(guidelines_app, name="guidelines")

DEFAULT_SENSOR_CONFIG_ID = "default"


@app.callback()
def main(
    log_level: str = typer.Option("INFO", "--log-level", help="Root log level."),
    log_json: bool = typer.Option(False, "--log-json", help="Emit JSON log lines."),
) -> None:
    """Pressure-decay leak bench: acquisition, guideline and model classification."""

    configure_logging(log_level, json_format=log_json)


def _config(path: Optional[Path], overrides: Optional[List[str]]) -> LeakBenchConfig:
    try:
        return load_config(path, overrides or [])
    except (OSError, ValueError) as exc:
        raise typer.BadParameter(str(exc), param_hint="--config/--set") from exc


def _sessions_from_traces(
    backend: InMemoryBackend,
    traces: List[Path],
    vessel_type: VesselType,
    sensor_config: SensorConfig,
    labels: Optional[Dict[str, Classification]] = None,
) -> List[TestSession]:
    """Register each trace CSV as a completed session named after its file stem."""
    backend.put_vessel_type(vessel_type)
    backend.put_sensor_config(sensor_config)
    manager = SessionManager(backend)
    sessions = []
    for trace in traces:
        samples = read_session_csv(trace)
        start = min((s.timestamp for s in samples), default=None)
        end = max((s.timestamp for s in samples), default=None)
        session = TestSession(
            id=trace.stem,
            vessel_type_id=vessel_type.id,
            sensor_config_id=sensor_config.id,
            status=SessionStatus.COMPLETED,
            start_time=start if start is not None else utc_now(),
            end_time=end,
            classification=(labels or {}).get(trace.stem),
        )
        sessions.append(manager.import_session(session, samples))
    return sessions


def _report(backend: InMemoryBackend, sessions: List[TestSession]) -> None:
    for session in sessions:
        stored = backend.get_session(session.id)
        label = stored.classification.value if stored and stored.classification else "UNCLASSIFIED"
        typer.echo(f"{session.id}: {label}")


@app.command()
def demo(
    out: Path = typer.Option(Path("demo_output/demo_trace.csv"), "--out", help="Destination CSV."),
    ticks: int = typer.Option(240, "--ticks", min=1, help="Number of 500 ms ticks to synthesise."),
    seed: Optional[int] = typer.Option(42, "--seed", help="Random seed (omit for a random trace)."),
    profile: Optional[DemoProfile] = typer.Option(
        None, "--profile", case_sensitive=False, help="Labelled decay curve (leak or diffusion); at most 240 ticks."
    ),
) -> None:
    """Write a synthetic pressure trace from the demo generator."""

    samples = run_demo(out, ticks=ticks, seed=seed, profile=profile)
    label = f" ({profile.value})" if profile is not None else ""
    typer.echo(f"Demo trace{label} with {len(samples)} samples written to {out}")


@classify_app.command("guideline")
def classify_guideline(
    traces: List[Path] = typer.Argument(..., exists=True, readable=True, help="Session CSV files."),
    guidelines: Path = typer.Option(..., "--guidelines", exists=True, help="Guideline CSV."),
    vessel_type: str = typer.Option(..., "--vessel-type", help="Vessel type name in the guideline CSV."),
    sensor_config_path: Optional[Path] = typer.Option(
        None, "--sensor-config", exists=True, help="Sensor config JSON (defaults to RAW)."
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON config file."),
    overrides: Optional[List[str]] = typer.Option(None, "--set", help="Override config (key=value)."),
) -> None:
    """Classify session traces against a vessel type's guideline envelope."""

    cfg = _config(config_path, overrides)
    backend = InMemoryBackend()
    sensor_config = load_sensor_config(sensor_config_path) or SensorConfig(id=DEFAULT_SENSOR_CONFIG_ID)
    try:
        sessions = _sessions_from_traces(
            backend, traces, VesselType(id=vessel_type, name=vessel_type), sensor_config
        )
        if import_guidelines(backend, guidelines) == 0:
            raise typer.BadParameter(f"No guideline rows for vessel type {vessel_type!r}", param_hint="--vessel-type")
        result = bulk_classify(backend, GuidelineClassifier(backend), cfg.classify.guideline_delay_sec)
    except (LeakBenchError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc
    _report(backend, sessions)
    typer.echo(f"Classified {result.succeeded}, failed {result.failed}")
    if result.failed:
        raise typer.Exit(code=1)


@classify_app.command("model")
def classify_model(
    traces: List[Path] = typer.Argument(..., exists=True, readable=True, help="Session CSV files."),
    model_path: Path = typer.Option(..., "--model", exists=True, help="Model JSON written by 'train'."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON config file."),
    overrides: Optional[List[str]] = typer.Option(None, "--set", help="Override config (key=value)."),
) -> None:
    """Classify session traces with a trained model."""

    cfg = _config(config_path, overrides)
    backend = InMemoryBackend()
    try:
        model = load_model(model_path)
        backend.put_model(model)
        backend.set_active_model(model.id)
        sessions = _sessions_from_traces(
            backend, traces, VesselType(id="unknown", name="unknown"), SensorConfig(id=DEFAULT_SENSOR_CONFIG_ID)
        )
        classifier = ModelClassifier(backend, model, cfg.classify.min_model_samples)
        result = bulk_classify(backend, classifier, cfg.classify.model_delay_sec)
    except (LeakBenchError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Model {model.version}: {' -> '.join(model.describe())}")
    _report(backend, sessions)
    typer.echo(f"Classified {result.succeeded}, failed {result.failed}")
    if result.failed:
        raise typer.Exit(code=1)


def _read_labels(path: Path) -> Dict[Path, Classification]:
    df = pd.read_csv(path)
    missing = {"file", "classification"} - set(df.columns)
    if missing:
        raise typer.BadParameter(f"Missing columns: {sorted(missing)}", param_hint="--labels")
    labels: Dict[Path, Classification] = {}
    for file_name, label in zip(df["file"], df["classification"]):
        trace = Path(str(file_name))
        if not trace.is_absolute():
            trace = path.parent / trace
        try:
            labels[trace] = Classification(str(label).strip().upper())
        except ValueError as exc:
            raise typer.BadParameter(f"Unknown classification {label!r} for {file_name}", param_hint="--labels") from exc
    return labels


@app.command()
def train(
    labels_path: Path = typer.Option(
        ..., "--labels", exists=True, help="CSV with 'file' and 'classification' (LEAK/DIFFUSION) columns."
    ),
    out: Path = typer.Option(Path("model.json"), "--out", help="Destination model JSON."),
    config_path: Optional[Path] = typer.Option(None, "--config", help="JSON config file."),
    overrides: Optional[List[str]] = typer.Option(None, "--set", help="Override config (key=value)."),
) -> None:
    """Train a leak classifier from labelled session traces."""

    cfg = _config(config_path, overrides)
    labels = _read_labels(labels_path)
    backend = InMemoryBackend()
    coordinator = TrainingCoordinator(backend, cfg.training)

    def progress(step: str, percent: float, detail: str) -> None:
        typer.echo(f"[{percent:5.1f}%] {step}: {detail}")

    try:
        _sessions_from_traces(
            backend,
            list(labels),
            VesselType(id="training", name="training"),
            SensorConfig(id=DEFAULT_SENSOR_CONFIG_ID),
            labels={trace.stem: label for trace, label in labels.items()},
        )
        model = coordinator.train(progress)
    except (LeakBenchError, ValueError, OSError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc
    save_model(model, out)
    typer.echo(f"Model {model.version} (input length {model.input_length}) written to {out}")


def _guideline_backend(path: Path) -> tuple[InMemoryBackend, Dict[str, GuidelineCurve]]:
    """Backend holding one vessel type per name found in a guideline CSV."""
    backend = InMemoryBackend()
    curves = read_guideline_csv(path)
    for name in curves:
        backend.put_vessel_type(VesselType(id=name, name=name))
    import_guidelines(backend, path)
    return backend, curves


@guidelines_app.command("import")
def guidelines_import(
    path: Path = typer.Argument(..., exists=True, readable=True, help="Guideline CSV."),
) -> None:
    """Validate a guideline CSV and list the vessel types it defines."""

    try:
        _backend, curves = _guideline_backend(path)
    except ValueError as exc:
        typer.echo(f"Invalid guideline file: {exc}")
        raise typer.Exit(code=1) from exc
    for name, curve in curves.items():
        typer.echo(f"{name}: {len(curve.min_curve)} min point(s), {len(curve.max_curve)} max point(s)")


@guidelines_app.command("export")
def guidelines_export(
    source: Path = typer.Argument(..., exists=True, readable=True, help="Guideline CSV to re-export."),
    out: Path = typer.Option(..., "--out", help="Destination CSV."),
    vessel_types: Optional[List[str]] = typer.Option(
        None, "--vessel-type", help="Restrict to these vessel types (repeatable)."
    ),
) -> None:
    """Normalise a guideline CSV (sorted, one row per distinct time point)."""

    try:
        backend, curves = _guideline_backend(source)
        selected = vessel_types or list(curves)
        rows = export_guidelines(backend, selected, out)
    except (LeakBenchError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Wrote {rows} row(s) for {len(selected)} vessel type(s) to {out}")


@app.command()
def convert(
    value: float = typer.Argument(..., help="Raw ADC reading."),
    sensor_config_path: Optional[Path] = typer.Option(None, "--sensor-config", exists=True),
) -> None:
    """Show a raw reading in the sensor's display unit."""

    sensor_config = load_sensor_config(sensor_config_path)
    unit = sensor_config.unit if sensor_config is not None else "RAW"
    typer.echo(f"{format_value(value, sensor_config)} {unit}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
