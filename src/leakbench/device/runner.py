from __future__ import annotations

import enum
import logging
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

import serial  # type: ignore[import]
import typer
from serial.tools import list_ports  # type: ignore[import]

from ..config import LeakBenchConfig, SerialConfig, load_config
from ..data import write_session_csv
from ..demo import DemoProfile, DemoTicker, SampleSource, make_generator
from ..domain import Sample, utc_now
from ..errors import (
    CommandFailedError,
    ConnectionLostError,
    DeviceBusyError,
    LeakBenchError,
    TransientIOError,
)
from ..sessions import SessionManager
from ..store import InMemoryBackend, SampleStore
from .decoder import LineDecoder

logger = logging.getLogger(__name__)

CMD_START = b"s"
CMD_PAUSE = b"p"


class DeviceState(str, enum.Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTED = "CONNECTED"
    DEMO = "DEMO"


class DeviceLink(Protocol):
    def read(self, size: int) -> bytes:
        ...

    def write(self, payload: bytes) -> None:
        ...

    def close(self) -> None:
        ...


class SerialLink:
    """pyserial-backed link. Errors surface as TransientIOError."""

    def __init__(self, port: str, settings: SerialConfig):
        self.port = port
        try:
            self._serial = serial.Serial(port=port, baudrate=settings.baudrate, timeout=settings.timeout)
        except serial.SerialException as exc:  # type: ignore[attr-defined]
            raise TransientIOError(f"Cannot open {port}: {exc}") from exc

    def read(self, size: int) -> bytes:
        try:
            waiting = self._serial.in_waiting
            return self._serial.read(min(max(waiting, 1), size))
        except serial.SerialException as exc:  # type: ignore[attr-defined]
            raise ConnectionLostError(str(exc)) from exc

    def write(self, payload: bytes) -> None:
        try:
            self._serial.write(payload)
            self._serial.flush()
        except serial.SerialException as exc:  # type: ignore[attr-defined]
            raise CommandFailedError(str(exc)) from exc

    def close(self) -> None:
        self._serial.close()


def list_serial_ports() -> List[str]:
    return [port.device for port in list_ports.comports()]


LinkFactory = Callable[[str, SerialConfig], DeviceLink]
PortChooser = Callable[[], Optional[str]]
Notifier = Callable[[LeakBenchError], None]


class AcquisitionMachine:
    """
    Device lifecycle: DISCONNECTED -> CONNECTED -> DISCONNECTED and
    DISCONNECTED -> DEMO -> DISCONNECTED.

    `measuring` is orthogonal to the state: it gates sample emission and maps
    to the device's 's'/'p' commands. Accepted samples go to *sink*.
    """

    def __init__(
        self,
        sink: Callable[[Sample], None],
        config: Optional[LeakBenchConfig] = None,
        *,
        link_factory: LinkFactory = SerialLink,
        port_chooser: Optional[PortChooser] = None,
        clock: Callable[[], datetime] = utc_now,
        notify: Optional[Notifier] = None,
    ) -> None:
        self.config = config or LeakBenchConfig()
        self._sink = sink
        self._link_factory = link_factory
        self._port_chooser = port_chooser
        self._clock = clock
        self._notify = notify
        self._lock = threading.RLock()
        self._state = DeviceState.DISCONNECTED
        self._measuring = False
        self._link: Optional[DeviceLink] = None
        self._reader: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._ticker: Optional[DemoTicker] = None
        self._generator: Optional[SampleSource] = None
        self._on_demo_complete: Optional[Callable[[], None]] = None
        self.decoder = LineDecoder()
        self.last_exception: Optional[Exception] = None
        self._emitted = 0
        self._sink_errors = 0

    @property
    def state(self) -> DeviceState:
        return self._state

    @property
    def measuring(self) -> bool:
        return self._measuring

    @property
    def is_reading(self) -> bool:
        reader = self._reader
        return reader is not None and reader.is_alive()

    def stats(self) -> Dict[str, int]:
        stats = self.decoder.stats()
        stats["emitted"] = self._emitted
        stats["sink_errors"] = self._sink_errors
        return stats

    def connect(self, port: Optional[str] = None) -> bool:
        """Open the link and start the read loop. Returns False when no port was chosen."""
        with self._lock:
            if self._state is not DeviceState.DISCONNECTED:
                raise DeviceBusyError(f"Device is {self._state.value}; disconnect first")
            target = port or self.config.serial.port
            if not target and self._port_chooser is not None:
                target = self._port_chooser()
            if not target:
                logger.info("Connect cancelled: no port selected")
                return False
            link = self._link_factory(target, self.config.serial)
            self._link = link
            self._stop_event = threading.Event()
            self.decoder.reset()
            self.last_exception = None
            self._state = DeviceState.CONNECTED
            self._measuring = True
            logger.info("Connected to %s", target)
            self.start_read_loop()
        return True

    def start_read_loop(self) -> bool:
        """Start the reader thread unless one is already active."""
        with self._lock:
            if self.is_reading:
                return False
            if self._state is not DeviceState.CONNECTED or self._link is None:
                return False
            self._reader = threading.Thread(
                target=self._read_loop,
                args=(self._link, self._stop_event),
                daemon=True,
                name="bench-reader",
            )
            self._reader.start()
            return True

    def _read_loop(self, link: DeviceLink, stop_event: threading.Event) -> None:
        chunk_size = max(self.config.serial.chunk_size, 1)
        try:
            while not stop_event.is_set():
                chunk = link.read(chunk_size)
                if not chunk or stop_event.is_set():
                    continue
                for sample in self.decoder.decode([chunk], self._clock):
                    self._emit(sample)
        except Exception as exc:
            if stop_event.is_set():
                logger.debug("Reader stopped: %s", exc)
                return
            self._connection_lost(exc)

    def _connection_lost(self, exc: Exception) -> None:
        logger.warning("Connection lost: %s", exc)
        self.last_exception = exc
        self.disconnect()
        if self._notify is not None:
            error = exc if isinstance(exc, ConnectionLostError) else ConnectionLostError(str(exc))
            self._notify(error)

    def _emit(self, sample: Sample) -> None:
        if not self._measuring:
            return
        try:
            self._sink(sample)
            self._emitted += 1
        except Exception:
            self._sink_errors += 1
            logger.exception("Sample sink rejected a sample")

    def toggle_measurement(self) -> bool:
        """Flip `measuring`; the flag only changes once the device command was written."""
        with self._lock:
            if self._state is DeviceState.CONNECTED:
                assert self._link is not None
                target = not self._measuring
                command = CMD_START if target else CMD_PAUSE
                try:
                    self._link.write(command)
                except Exception as exc:
                    logger.warning("Command %r failed: %s", command, exc)
                    raise CommandFailedError(f"Failed to send {command!r}: {exc}") from exc
                self._measuring = target
            elif self._state is DeviceState.DEMO:
                self._measuring = not self._measuring
            else:
                raise TransientIOError("Device is not connected")
            logger.info("Measuring=%s", self._measuring)
            return self._measuring

    def start_demo(
        self,
        generator: Optional[SampleSource] = None,
        profile: Optional[DemoProfile] = None,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Emit synthetic samples. A labelled *profile* (or a profile generator)
        stops on its own after its last value: the machine disconnects and
        then calls *on_complete*.
        """
        with self._lock:
            if self._state is not DeviceState.DISCONNECTED:
                raise DeviceBusyError(f"Device is {self._state.value}; disconnect first")
            self._generator = generator or make_generator(self.config.demo, profile)
            self._on_demo_complete = on_complete
            self._state = DeviceState.DEMO
            self._measuring = True
            self._ticker = DemoTicker(self.config.demo.tick_sec, self._demo_tick)
            self._ticker.start()
            logger.info("Demo mode started (tick=%.3fs)", self.config.demo.tick_sec)

    def _demo_tick(self) -> None:
        generator = self._generator
        if generator is None or not self._measuring:
            return
        self._emit(Sample(timestamp=self._clock(), value=generator.next_value()))
        if generator.finished:
            self._finish_demo()

    def _finish_demo(self) -> None:
        on_complete = self._on_demo_complete
        logger.info("Demo profile finished")
        self.disconnect()
        if on_complete is not None:
            on_complete()

    def disconnect(self) -> None:
        """Idempotent. Always ends DISCONNECTED with measuring=False."""
        reader: Optional[threading.Thread] = None
        with self._lock:
            previous = self._state
            if previous is DeviceState.CONNECTED:
                self._stop_event.set()
                link, self._link = self._link, None
                reader = self._reader
                if link is not None:
                    try:
                        link.write(CMD_PAUSE)
                    except Exception as exc:
                        logger.debug("Pause before disconnect failed: %s", exc)
                    try:
                        link.close()
                    except Exception as exc:
                        logger.debug("Closing link failed: %s", exc)
            elif previous is DeviceState.DEMO:
                ticker, self._ticker = self._ticker, None
                if ticker is not None:
                    ticker.stop()
                self._generator = None
                self._on_demo_complete = None
            self._state = DeviceState.DISCONNECTED
            self._measuring = False
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=max(self.config.serial.timeout * 4, 1.0))
        if previous is not DeviceState.DISCONNECTED:
            stats = self.stats()
            logger.info(
                "Disconnected from %s mode (lines=%d samples=%d dropped=%d emitted=%d)",
                previous.value,
                stats["lines"],
                stats["samples"],
                stats["dropped"],
                stats["emitted"],
            )

    def close(self) -> None:
        self.disconnect()


def _prompt_for_port() -> Optional[str]:
    ports = list_serial_ports()
    if not ports:
        return None
    if len(ports) == 1:
        return ports[0]
    for index, device in enumerate(ports):
        typer.echo(f"[{index}] {device}")
    choice = typer.prompt("Select port (blank to cancel)", default="", show_default=False)
    try:
        return ports[int(choice)]
    except (ValueError, IndexError):
        return None


device_app = typer.Typer(help="Bench device acquisition.")


@device_app.command("ports")
def ports() -> None:
    """List serial ports visible to pyserial."""
    for device in list_serial_ports():
        typer.echo(device)


@device_app.command("run")
def run(
    port: Optional[str] = typer.Option(None, "--port", "-p", help="Serial device; prompts when omitted."),
    demo: bool = typer.Option(False, "--demo", help="Use the synthetic generator instead of a device."),
    profile: Optional[DemoProfile] = typer.Option(
        None,
        "--profile",
        case_sensitive=False,
        help="Labelled demo (implies --demo): runs its fixed number of steps, then stops and classifies the session.",
    ),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="JSON bench config."),
    override: Optional[List[str]] = typer.Option(
        None, "--set", help="Override config keys, e.g. --set serial.baudrate=115200"
    ),
    duration: float = typer.Option(0.0, "--duration", help="Stop after N seconds (0 = until Ctrl+C)."),
    out: Optional[Path] = typer.Option(None, "--out", help="Write the recorded session to this CSV."),
    vessel_type: str = typer.Option("default", "--vessel-type", help="Vessel type id for the session."),
    sensor_config_id: str = typer.Option("default", "--sensor-config-id", help="Sensor config id."),
) -> None:
    """Record one session from the device (or demo generator) until stopped."""
    cfg = load_config(config_path, override or None)
    backend = InMemoryBackend()
    sessions = SessionManager(backend)
    store = SampleStore(
        backend,
        sensor_config_id,
        session_provider=sessions.current_session_id,
        capacity=cfg.store.ring_capacity,
    )
    done = threading.Event()

    def on_error(error: LeakBenchError) -> None:
        typer.echo(f"[warning] {error}", err=True)
        done.set()

    machine = AcquisitionMachine(store.accept, cfg, port_chooser=_prompt_for_port, notify=on_error)
    session = sessions.start_session(vessel_type, sensor_config_id)
    started = False
    exit_code = 0
    try:
        if demo or profile is not None:
            machine.start_demo(profile=profile, on_complete=done.set)
            started = True
        else:
            started = machine.connect(port)
        if not started:
            typer.echo("No port selected; nothing recorded.")
        deadline = time.monotonic() + duration if duration > 0 else None
        while started and not done.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                break
            done.wait(0.2)
    except KeyboardInterrupt:
        logger.info("Stopping acquisition (Ctrl+C)")
    except LeakBenchError as exc:
        typer.echo(f"Error: {exc}", err=True)
        started = False
        exit_code = 1
    finally:
        machine.disconnect()
        store.close()

    if not started:
        sessions.scrap_session(session.id)
        raise typer.Exit(code=exit_code)
    sessions.complete_session(session.id)
    if profile is not None:
        sessions.set_classification(session.id, profile.classification)
        typer.echo(f"Session {session.id} labelled {profile.classification.value}")
    samples = backend.list_samples(session.id)
    typer.echo(f"Recorded {len(samples)} samples in session {session.id}")
    if out is not None:
        write_session_csv(samples, out)
        typer.echo(f"Session written to {out}")
