"""
Timed steps of a benchmark case.

Every case produces one record for setup, one per iteration and one for
teardown. A step that raised is still recorded, with the exception type.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from benchmark.metrics import MetricsCollector


@dataclass
class TimingRecord:
    case: str
    phase: str  # "setup", "iteration" or "teardown"
    start_ns: int
    end_ns: int
    iteration: int | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def duration_ns(self) -> int:
        return self.end_ns - self.start_ns

    @property
    def duration_ms(self) -> float:
        return self.duration_ns / 1_000_000

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "duration_ms": self.duration_ms}


class TimingContext:
    """Times the body of a with block and hands the record to the collector.

    Exceptions are recorded, never suppressed:

        with collector.time("basic-gets", "iteration", iteration=3):
            await db.get(create_doc_id(3))
    """

    def __init__(self, case: str, phase: str, collector: MetricsCollector, iteration: int | None = None):
        self.case = case
        self.phase = phase
        self.iteration = iteration
        self.collector = collector
        self.record: TimingRecord | None = None
        self._start_ns = 0

    def __enter__(self) -> TimingContext:
        self._start_ns = time.perf_counter_ns()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.record = TimingRecord(
            case=self.case,
            phase=self.phase,
            start_ns=self._start_ns,
            end_ns=time.perf_counter_ns(),
            iteration=self.iteration,
            error=exc_type.__name__ if exc_type is not None else None,
        )
        self.collector.record(self.record)
