"""
Timing helpers for audited operations.

Execution and merge log rows carry wall-clock start/end times plus a
monotonic duration. timed_section() captures all three around a block.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Generator

from loguru import logger


@dataclass
class SectionTiming:
    """Start, end and duration of a timed block."""

    name: str
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None
    elapsed_seconds: float = 0.0

    def log(self, level: str = "debug") -> None:
        """Log the elapsed time at the given level."""
        getattr(logger, level)(f"Timing [{self.name}]: {self.elapsed_seconds:.3f}s")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_seconds": self.elapsed_seconds,
        }


@contextmanager
def timed_section(name: str) -> Generator[SectionTiming, None, None]:
    """
    Time a block of work.

    Usage:
        with timed_section("compress P_2024_01") as timing:
            catalog.recompress(...)
        log_row.duration_seconds = timing.elapsed_seconds

    Args:
        name: Label used when logging

    Yields:
        SectionTiming, completed when the block exits (also on error)
    """
    timing = SectionTiming(name=name)
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing.elapsed_seconds = round(time.perf_counter() - start, 6)
        timing.finished_at = datetime.now()


class Timer:
    """
    Stopwatch for a whole batch run.

    Usage:
        timer = Timer()
        ...
        logger.info(f"Run finished in {timer.stop():.2f}s")
    """

    def __init__(self, auto_start: bool = True):
        self._start_time: float | None = None
        self._stop_time: float | None = None
        if auto_start:
            self.start()

    def start(self) -> "Timer":
        self._start_time = time.perf_counter()
        self._stop_time = None
        return self

    def stop(self) -> float:
        """Stop the timer and return elapsed seconds."""
        if self._start_time is None:
            raise RuntimeError("Timer was never started")
        self._stop_time = time.perf_counter()
        return self._stop_time - self._start_time

    def elapsed(self) -> float:
        """Elapsed seconds so far, without stopping."""
        if self._start_time is None:
            raise RuntimeError("Timer was never started")
        end = self._stop_time if self._stop_time is not None else time.perf_counter()
        return end - self._start_time
