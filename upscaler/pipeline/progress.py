"""
Progress Reporting

The enhance binary's only progress signal is a "<float>%" token on its
diagnostic stream (e.g. "23.45%"). parse_progress_token extracts it; lines
without a token carry no signal and are ignored.

ProgressReporter is the callback handed to strategies. It persists values to
the job store, coalescing writes and dropping anything that would move
progress backwards.
"""

import re
import time
from typing import Callable, Optional

from upscaler.core.logging import get_logger

logger = get_logger(__name__)

ProgressCallback = Callable[[float], None]

PROGRESS_TOKEN = re.compile(r"(\d+(?:\.\d+)?)%")


def parse_progress_token(line: str) -> Optional[float]:
    """Return the last percentage on the line, or None when there is none."""
    matches = PROGRESS_TOKEN.findall(line)
    if not matches:
        return None
    try:
        value = float(matches[-1])
    except ValueError:
        return None
    if value < 0 or value > 100:
        return None
    return value


class ProgressReporter:
    """
    Throttled, monotonic progress sink.

    Args:
        sink: Persists an integer percentage (e.g. JobStore.update_progress bound to a job)
        min_interval: Seconds between two persisted writes
        min_step: Smallest increase worth persisting
        clock: Injectable monotonic clock
    """

    def __init__(
        self,
        sink: Callable[[int], bool],
        min_interval: float = 0.5,
        min_step: int = 1,
        clock: Callable[[], float] = time.monotonic
    ):
        self._sink = sink
        self._min_interval = min_interval
        self._min_step = max(min_step, 1)
        self._clock = clock
        self._last_written = 0
        self._last_write_at: Optional[float] = None
        self._pending: Optional[int] = None
        self.calls = 0

    @property
    def last_written(self) -> int:
        return self._last_written

    def __call__(self, percent: float) -> None:
        self.calls += 1
        try:
            value = int(percent)
        except (TypeError, ValueError):
            return
        # 100 belongs to the success transition
        value = max(0, min(value, 99))
        if value < self._last_written + self._min_step:
            return

        now = self._clock()
        if self._last_write_at is not None and now - self._last_write_at < self._min_interval:
            self._pending = value
            return
        self._write(value, now)

    def flush(self) -> None:
        """Persist a value held back by throttling."""
        if self._pending is not None and self._pending > self._last_written:
            self._write(self._pending, self._clock())
        self._pending = None

    def _write(self, value: int, now: float) -> None:
        self._sink(value)
        self._last_written = value
        self._last_write_at = now
        self._pending = None
        logger.debug("job_progress", progress_percent=value)
