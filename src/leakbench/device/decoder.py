from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List

from ..domain import Sample, utc_now


class LineDecoder:
    """
    Streaming decoder for the bench's ASCII protocol: one unsigned integer per
    `\\n`-terminated line. Chunks may split a line anywhere; only complete
    lines are parsed, and lines that are not plain ASCII digit runs (banners,
    noise, blanks, signed or underscored numbers, bytes that are not ASCII)
    are dropped without raising.
    """

    def __init__(self) -> None:
        self._pending = ""
        self._stats: Dict[str, int] = {"lines": 0, "samples": 0, "dropped": 0}
        self._log = logging.getLogger(__name__)

    def feed(self, chunk: str | bytes) -> List[int]:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("ascii", errors="replace")
        if not chunk:
            return []
        parts = (self._pending + chunk).split("\n")
        self._pending = parts.pop()
        values: List[int] = []
        for part in parts:
            self._stats["lines"] += 1
            line = part.strip()
            # int() alone would also accept signs and underscores
            if not (line.isascii() and line.isdigit()):
                self._stats["dropped"] += 1
                if line:
                    self._log.debug("Dropping non-numeric line: %r", line)
                continue
            value = int(line)
            self._stats["samples"] += 1
            values.append(value)
        return values

    def decode(
        self,
        chunks: Iterable[str | bytes],
        clock: Callable[[], datetime] = utc_now,
    ) -> Iterator[Sample]:
        """Yield one Sample per parsed integer, stamped with its arrival time."""
        for chunk in chunks:
            values = self.feed(chunk)
            if not values:
                continue
            arrived = clock()
            for value in values:
                yield Sample(timestamp=arrived, value=value)

    @property
    def pending(self) -> str:
        return self._pending

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def reset(self) -> None:
        self._pending = ""
        self._stats = {"lines": 0, "samples": 0, "dropped": 0}
