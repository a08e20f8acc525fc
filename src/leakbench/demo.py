"""Synthetic sample source standing in for a physical bench."""
from __future__ import annotations

import enum
import logging
import math
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Deque, List, Optional, Union

import numpy as np

from .config import DemoConfig
from .data import write_session_csv
from .domain import ADC_SAMPLE_MAX, ADC_SAMPLE_MIN, Classification, Sample

logger = logging.getLogger(__name__)


class DemoGenerator:
    """
    Mean-reverting random walk with reflecting bounds.

    `trend` drifts in its current direction, is pulled back towards the centre
    of `[low, high]`, and flips direction whenever it hits either bound. Each
    emitted value is `trend` plus Gaussian noise, rounded and clamped to the
    ADC domain. Everything is driven by one numpy Generator, so a fixed seed
    gives a fixed sequence.
    """

    finished = False

    def __init__(
        self,
        rng: np.random.Generator,
        *,
        low: float = 150.0,
        high: float = 1020.0,
        max_step: float = 12.0,
        reversion: float = 0.02,
        noise_sigma: float = 4.0,
        flip_probability: float = 0.05,
    ) -> None:
        if low >= high:
            raise ValueError("demo trend bounds must satisfy low < high")
        self._rng = rng
        self.low = low
        self.high = high
        self._max_step = max_step
        self._reversion = reversion
        self._noise_sigma = noise_sigma
        self._flip_probability = flip_probability
        self._mean = (low + high) / 2.0
        self.trend = float(rng.uniform(low, high))
        self.direction = 1.0 if rng.random() < 0.5 else -1.0

    @classmethod
    def from_config(cls, config: DemoConfig, seed: Optional[int] = None) -> "DemoGenerator":
        rng = np.random.default_rng(config.seed if seed is None else seed)
        return cls(rng, low=config.trend_low, high=config.trend_high, noise_sigma=config.noise_sigma)

    def next_value(self) -> int:
        if self._rng.random() < self._flip_probability:
            self.direction = -self.direction
        step = self.direction * float(self._rng.uniform(0.0, self._max_step))
        self.trend += step + self._reversion * (self._mean - self.trend)
        if self.trend >= self.high:
            self.trend = self.high
            self.direction = -1.0
        elif self.trend <= self.low:
            self.trend = self.low
            self.direction = 1.0
        noisy = self.trend + float(self._rng.normal(0.0, self._noise_sigma))
        return int(min(ADC_SAMPLE_MAX, max(ADC_SAMPLE_MIN, round(noisy))))


PROFILE_STEPS = 240


class DemoProfile(str, enum.Enum):
    LEAK = "LEAK"
    DIFFUSION = "DIFFUSION"

    @property
    def classification(self) -> Classification:
        return Classification(self.value)


class ProfileGenerator:
    """
    Scripted pressure decay for a labelled demo session.

    LEAK falls linearly from 900 to 200 over `steps` values, with Gaussian
    noise (sigma 0.5) smoothed by a 10-sample moving average. DIFFUSION decays
    exponentially from 950 towards 800 with time constant `steps / 4` and
    noise sigma 0.3. After `steps` values the generator is `finished`.
    """

    def __init__(self, profile: DemoProfile, rng: np.random.Generator, *, steps: int = PROFILE_STEPS) -> None:
        if steps < 1:
            raise ValueError("profile needs at least one step")
        self.profile = DemoProfile(profile)
        self.steps = steps
        self.step = 0
        self._rng = rng
        self._window: Deque[float] = deque(maxlen=10)

    @classmethod
    def from_config(
        cls, profile: DemoProfile, config: DemoConfig, seed: Optional[int] = None, steps: int = PROFILE_STEPS
    ) -> "ProfileGenerator":
        rng = np.random.default_rng(config.seed if seed is None else seed)
        return cls(profile, rng, steps=steps)

    @property
    def finished(self) -> bool:
        return self.step >= self.steps

    def next_value(self) -> int:
        if self.finished:
            raise RuntimeError(f"{self.profile.value} profile already produced {self.steps} values")
        progress = self.step / self.steps
        if self.profile is DemoProfile.LEAK:
            base = 900.0 - 700.0 * progress
            self._window.append(base + float(self._rng.normal(0.0, 0.5)))
            raw = sum(self._window) / len(self._window)
        else:
            raw = 800.0 + 150.0 * math.exp(-self.step / (self.steps / 4.0))
            raw += float(self._rng.normal(0.0, 0.3))
        self.step += 1
        return int(min(ADC_SAMPLE_MAX, max(ADC_SAMPLE_MIN, round(raw))))


SampleSource = Union[DemoGenerator, ProfileGenerator]


def make_generator(
    config: DemoConfig, profile: Optional[DemoProfile] = None, seed: Optional[int] = None
) -> SampleSource:
    if profile is None:
        return DemoGenerator.from_config(config, seed=seed)
    return ProfileGenerator.from_config(profile, config, seed=seed)


class DemoTicker(threading.Thread):
    """Calls *on_tick* every *interval* seconds until stopped."""

    def __init__(self, interval: float, on_tick: Callable[[], None]) -> None:
        super().__init__(daemon=True, name="demo-ticker")
        self.interval = max(interval, 0.001)
        self._on_tick = on_tick
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self._on_tick()
            except Exception:
                logger.exception("Demo tick failed")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=timeout)


def demo_trace(
    ticks: int,
    *,
    seed: Optional[int] = 42,
    start: Optional[datetime] = None,
    tick_sec: float = 0.5,
    config: Optional[DemoConfig] = None,
    profile: Optional[DemoProfile] = None,
) -> List[Sample]:
    """Generate a finite trace with evenly spaced timestamps.

    With a *profile* the trace ends when the profile does, even if *ticks* is larger.
    """
    generator = make_generator(config or DemoConfig(), profile, seed=seed)
    if isinstance(generator, ProfileGenerator):
        ticks = min(ticks, generator.steps)
    origin = start or datetime.now(timezone.utc)
    return [
        Sample(timestamp=origin + timedelta(seconds=i * tick_sec), value=generator.next_value())
        for i in range(ticks)
    ]


def run_demo(
    out_path: Path, ticks: int = 240, seed: Optional[int] = 42, profile: Optional[DemoProfile] = None
) -> List[Sample]:
    samples = demo_trace(ticks, seed=seed, profile=profile)
    write_session_csv(samples, out_path)
    logger.info(
        "Wrote %d demo samples (%s) to %s", len(samples), profile.value if profile else "random walk", out_path
    )
    return samples
