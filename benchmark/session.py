"""
Benchmark session orchestrator.

Runs each case through setup, timed iterations and teardown, then writes the
reports.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

import httpx

from config import couch_host as default_couch_host, safe_random_db_name
from couch import redact_url
from database import LocalDatabase
from benchmark.cases import BenchmarkCase, default_cases, duplicate_case_names
from benchmark.metrics import AggregateMetrics, CaseMetrics, MetricsCollector, SystemInfo

logger = logging.getLogger(__name__)


@dataclass
class BenchmarkConfig:
    """Configuration for a benchmark run."""

    output_dir: Path
    couch_host: str = field(default_factory=default_couch_host)
    grep: str | None = None  # only run cases whose name matches this regex
    write_reports: bool = True

    def __post_init__(self) -> None:
        """Convert paths to Path objects if needed."""
        if isinstance(self.output_dir, str):
            self.output_dir = Path(self.output_dir)
        self.couch_host = self.couch_host.rstrip("/")


@dataclass
class BenchmarkResult:
    """Result of a benchmark run."""

    metrics: AggregateMetrics
    output_dir: Path
    start_time: datetime
    end_time: datetime

    @property
    def wall_time_s(self) -> float:
        """Total wall clock time in seconds."""
        return (self.end_time - self.start_time).total_seconds()

    @property
    def ok(self) -> bool:
        return self.metrics.failed_cases == 0


class BenchmarkSession:
    """Manages a complete benchmark run.

    Orchestrates:
    - Output directory and log file setup
    - Case selection
    - Per case: a fresh local database, setup, timed iterations, teardown
    - Report generation

    A failing case is logged and recorded as failed; the remaining cases
    still run. Teardown is awaited whatever happened in setup or the test.
    """

    def __init__(
        self,
        config: BenchmarkConfig,
        cases: list[BenchmarkCase] | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None,
    ):
        """Initialize benchmark session.

        Args:
            config: Benchmark configuration
            cases: Cases to run, the default suite if None. Names must be
                   unique, ValueError otherwise.
            progress_callback: Optional callback for progress updates.
                              Called with (current, total, message).
        """
        self.config = config
        self.cases = cases if cases is not None else default_cases()
        duplicates = duplicate_case_names(case.name for case in self.cases)
        if duplicates:
            raise ValueError(f"Case names must be unique; duplicated: {', '.join(duplicates)}")
        self.collector = MetricsCollector()
        self._progress_callback = progress_callback
        self._log_handler: logging.Handler | None = None

    def _report_progress(self, current: int, total: int, message: str) -> None:
        """Report progress if callback is set."""
        if self._progress_callback:
            self._progress_callback(current, total, message)

    def setup(self) -> None:
        """Create the output directory and attach the run log file."""
        self.config.output_dir.mkdir(parents=True, exist_ok=True)
        (self.config.output_dir / "logs").mkdir(exist_ok=True)
        (self.config.output_dir / "traces").mkdir(exist_ok=True)

        log_path = self.config.output_dir / "logs" / "benchmark.log"
        self._log_handler = logging.FileHandler(log_path)
        self._log_handler.setLevel(logging.DEBUG)
        self._log_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logging.getLogger().addHandler(self._log_handler)

    def _close_log(self) -> None:
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def select_cases(self) -> list[BenchmarkCase]:
        if not self.config.grep:
            return list(self.cases)
        pattern = re.compile(self.config.grep)
        return [case for case in self.cases if pattern.search(case.name)]

    async def run_case(self, case: BenchmarkCase) -> CaseMetrics:
        """Run one case and record its metrics."""
        logger.info(f"Running {case.name} ({case.iterations} iteration(s))")
        db = LocalDatabase(safe_random_db_name())
        error: str | None = None
        try:
            with self.collector.time(case.name, "setup"):
                await case.setup(db)
            for itr in range(case.iterations):
                with self.collector.time(case.name, "iteration", iteration=itr):
                    await case.test(db, itr)
                self._report_progress(itr + 1, case.iterations, case.name)
        except Exception as e:
            logger.exception(f"Case {case.name} failed")
            error = f"{type(e).__name__}: {e}"
        finally:
            try:
                with self.collector.time(case.name, "teardown"):
                    await case.teardown(db)
            except Exception as e:
                logger.error(f"Teardown of {case.name} failed: {e}")
                error = error or f"teardown {type(e).__name__}: {e}"
            await db.destroy()

        metrics = self.collector.summarize_case(case.name, case.iterations, error, case.parameters())
        if metrics.ok:
            logger.info(
                f"{case.name}: mean={metrics.iteration_stats.mean_ms:.1f}ms "
                f"total={metrics.iteration_stats.total_ms:.1f}ms"
            )
        return metrics

    async def run_async(self) -> BenchmarkResult:
        start_time = datetime.now()
        logger.info(f"Starting benchmark at {start_time} against {redact_url(self.config.couch_host)}")
        self.setup()
        try:
            cases = self.select_cases()
            if not cases:
                logger.warning("No benchmark cases selected!")
            for case in cases:
                await self.run_case(case)

            end_time = datetime.now()
            logger.info(f"Benchmark completed at {end_time}")

            system_info = await self._collect_system_info()
            metrics = self.collector.compute_aggregate(system_info)
            if self.config.write_reports:
                self._generate_reports(metrics)

            return BenchmarkResult(
                metrics=metrics,
                output_dir=self.config.output_dir,
                start_time=start_time,
                end_time=end_time,
            )
        finally:
            self._close_log()

    def run(self) -> BenchmarkResult:
        """Execute the full benchmark on a fresh event loop."""
        return asyncio.run(self.run_async())

    async def _collect_system_info(self) -> SystemInfo:
        version = None
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(self.config.couch_host + "/")
                response.raise_for_status()
                version = response.json().get("version")
        except httpx.HTTPError as e:
            logger.warning(f"Could not read CouchDB version from {redact_url(self.config.couch_host)}: {e}")
        return SystemInfo.collect(redact_url(self.config.couch_host), version)

    def _generate_reports(self, metrics: AggregateMetrics) -> None:
        from benchmark.report import ReportGenerator

        generator = ReportGenerator(self.config.output_dir, self.collector, metrics)
        generator.generate_all()

        self.collector.export_json(self.config.output_dir / "raw_metrics.json")
        self.collector.export_chrome_trace(
            self.config.output_dir / "traces" / "benchmark_timeline.json"
        )
        logger.info(f"Reports generated in {self.config.output_dir}")
