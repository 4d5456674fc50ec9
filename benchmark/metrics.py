"""
Metrics collection and aggregation for benchmarking.
"""

from __future__ import annotations

import json
import platform
import statistics
import sys
import threading
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any

from benchmark.timing import TimingRecord, TimingContext


def percentile(data: list[float], p: float) -> float:
    """Linear-interpolated percentile of already sorted data."""
    if not data:
        return 0.0
    k = (len(data) - 1) * p / 100
    f = int(k)
    c = min(f + 1, len(data) - 1)
    return data[f] + (k - f) * (data[c] - data[f])


@dataclass
class PhaseStats:
    """Statistical summary of the iteration durations of one case."""

    name: str
    mean_ms: float
    std_ms: float
    min_ms: float
    max_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    total_ms: float
    count: int

    @classmethod
    def from_durations(cls, name: str, durations_ms: list[float]) -> PhaseStats:
        """Create stats from a list of durations in milliseconds."""
        if not durations_ms:
            return cls(name, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0)

        sorted_durations = sorted(durations_ms)
        return cls(
            name=name,
            mean_ms=statistics.mean(durations_ms),
            std_ms=statistics.stdev(durations_ms) if len(durations_ms) > 1 else 0.0,
            min_ms=sorted_durations[0],
            max_ms=sorted_durations[-1],
            p50_ms=percentile(sorted_durations, 50),
            p95_ms=percentile(sorted_durations, 95),
            p99_ms=percentile(sorted_durations, 99),
            total_ms=sum(durations_ms),
            count=len(durations_ms),
        )


@dataclass
class CaseMetrics:
    """Outcome of one benchmark case."""

    name: str
    iterations: int
    ok: bool
    setup_ms: float
    teardown_ms: float
    iteration_stats: PhaseStats
    error: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SystemInfo:
    """Environment the benchmark ran in."""

    couch_host: str
    couch_version: str | None
    python_version: str
    platform: str

    @classmethod
    def collect(cls, couch_host: str, couch_version: str | None = None) -> SystemInfo:
        return cls(
            couch_host=couch_host,
            couch_version=couch_version,
            python_version=sys.version,
            platform=platform.platform(),
        )


@dataclass
class AggregateMetrics:
    """Summary across all cases of a run."""

    total_cases: int
    failed_cases: int
    total_time_s: float
    cases: list[CaseMetrics]
    system_info: SystemInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_cases": self.total_cases,
            "failed_cases": self.failed_cases,
            "total_time_s": self.total_time_s,
            "cases": {case.name: case.to_dict() for case in self.cases},
            "system_info": asdict(self.system_info),
        }


class MetricsCollector:
    """Collects timing records and per-case results.

    Thread-safe for future parallel processing support.
    """

    def __init__(self) -> None:
        self._records: list[TimingRecord] = []
        self._case_metrics: list[CaseMetrics] = []
        self._lock = threading.Lock()

    def record(self, record: TimingRecord) -> None:
        """Thread-safe recording of timing data."""
        with self._lock:
            self._records.append(record)

    def time(self, case: str, phase: str, iteration: int | None = None) -> TimingContext:
        """Create a timing context manager."""
        return TimingContext(case, phase, self, iteration)

    def get_records_for_case(self, case: str, phase: str | None = None) -> list[TimingRecord]:
        with self._lock:
            return [
                r for r in self._records
                if r.case == case and (phase is None or r.phase == phase)
            ]

    def add_case_metrics(self, metrics: CaseMetrics) -> None:
        with self._lock:
            self._case_metrics.append(metrics)

    def get_all_case_metrics(self) -> list[CaseMetrics]:
        with self._lock:
            return list(self._case_metrics)

    def get_all_records(self) -> list[TimingRecord]:
        with self._lock:
            return list(self._records)

    def summarize_case(
        self,
        name: str,
        iterations: int,
        error: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> CaseMetrics:
        """Build and store CaseMetrics from the records of one case."""
        setup = self.get_records_for_case(name, "setup")
        teardown = self.get_records_for_case(name, "teardown")
        durations = [r.duration_ms for r in self.get_records_for_case(name, "iteration") if r.ok]
        metrics = CaseMetrics(
            name=name,
            iterations=iterations,
            ok=error is None,
            setup_ms=sum(r.duration_ms for r in setup),
            teardown_ms=sum(r.duration_ms for r in teardown),
            iteration_stats=PhaseStats.from_durations(name, durations),
            error=error,
            parameters=parameters or {},
        )
        self.add_case_metrics(metrics)
        return metrics

    def compute_aggregate(self, system_info: SystemInfo) -> AggregateMetrics:
        with self._lock:
            cases = list(self._case_metrics)
            total_ns = sum(r.duration_ns for r in self._records)
        return AggregateMetrics(
            total_cases=len(cases),
            failed_cases=sum(1 for c in cases if not c.ok),
            total_time_s=total_ns / 1_000_000_000,
            cases=cases,
            system_info=system_info,
        )

    def export_json(self, path: Path) -> None:
        """Export all raw metrics to JSON."""
        with self._lock:
            data = {
                "records": [r.to_dict() for r in self._records],
                "cases": [c.to_dict() for c in self._case_metrics],
            }
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def export_chrome_trace(self, path: Path) -> None:
        """Export timeline as Chrome Trace format for Perfetto/Chrome DevTools.

        One track per case, every setup/iteration/teardown as a complete event.
        """
        with self._lock:
            records = list(self._records)

        origin_ns = min((r.start_ns for r in records), default=0)
        tracks: dict[str, int] = {}
        events = []
        for r in records:
            tid = tracks.setdefault(r.case, len(tracks) + 1)
            events.append({
                "name": r.phase if r.iteration is None else f"{r.phase} {r.iteration}",
                "cat": "ok" if r.ok else "failed",
                "ph": "X",
                "ts": (r.start_ns - origin_ns) / 1000,
                "dur": r.duration_ns / 1000,
                "pid": 1,
                "tid": tid,
                "args": {"case": r.case, "error": r.error},
            })
        for case, tid in tracks.items():
            events.append({"name": "thread_name", "ph": "M", "pid": 1, "tid": tid, "args": {"name": case}})

        trace_data = {
            "traceEvents": events,
            "displayTimeUnit": "ms",
            "metadata": {"benchmark": "replication-bench"},
        }
        with open(path, "w") as f:
            json.dump(trace_data, f, indent=2)
