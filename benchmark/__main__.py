#!/usr/bin/env python3
"""
CLI entry point for the benchmarking system.

Usage:
    python -m benchmark
    python -m benchmark --grep pull-replication --output ./results
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from config import couch_host
from couch import redact_url
from benchmark.cases import default_cases
from benchmark.plan import load_plan
from benchmark.session import BenchmarkConfig, BenchmarkResult, BenchmarkSession

console = Console()


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the benchmark run."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    # Request logging from the clients is too chatty even for -v
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_progress_callback():
    """Create a rich progress callback with one task per case."""
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
    )
    tasks: dict[str, int] = {}

    def callback(current: int, total: int, message: str) -> None:
        if message not in tasks:
            if not tasks:
                progress.start()
            tasks[message] = progress.add_task(message, total=total)
        progress.update(tasks[message], completed=current)

    return callback, progress.stop


def print_results(result: BenchmarkResult) -> None:
    table = Table(title="Benchmark Results")
    table.add_column("Case")
    table.add_column("Iterations", justify="right")
    table.add_column("Mean (ms)", justify="right")
    table.add_column("P95 (ms)", justify="right")
    table.add_column("Total (ms)", justify="right")
    table.add_column("Status")

    for case in result.metrics.cases:
        stats = case.iteration_stats
        status = "[green]ok[/green]" if case.ok else f"[red]{case.error}[/red]"
        table.add_row(
            case.name,
            str(stats.count),
            f"{stats.mean_ms:.2f}",
            f"{stats.p95_ms:.2f}",
            f"{stats.total_ms:.1f}",
            status,
        )

    console.print(table)
    console.print(f"Wall clock time: {result.wall_time_s:.2f}s")
    console.print(f"Results saved to: {result.output_dir}")
    console.print(f"  - HTML Report:  {result.output_dir / 'report.html'}")
    console.print(f"  - Summary JSON: {result.output_dir / 'summary.json'}")
    console.print(f"  - Trace:        {result.output_dir / 'traces' / 'benchmark_timeline.json'}")


def main() -> int:
    """Main entry point for the benchmark CLI."""
    parser = argparse.ArgumentParser(
        description="Benchmark document database replication",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Run the default suite against the local CouchDB
    python -m benchmark

    # Only the replication cases, against another server
    python -m benchmark --grep pull-replication --couch-host http://admin:pass@db:5984

    # Run the cases described in a plan file
    python -m benchmark --plan plans/latency.json -o ./results
        """,
    )

    parser.add_argument(
        "--couch-host",
        default=couch_host(),
        help="CouchDB server to benchmark against (default: $COUCH_HOST or http://localhost:5984)",
    )

    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Output directory for results (default: benchmark_YYYYMMDD_HHMMSS)",
    )

    parser.add_argument(
        "--grep",
        default=None,
        help="Only run cases whose name matches this regular expression",
    )

    parser.add_argument(
        "--plan",
        type=Path,
        default=None,
        help="JSON plan file listing the cases to run instead of the default suite",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    setup_logging(args.verbose)

    # Cases resolve the server through the environment
    os.environ["COUCH_HOST"] = args.couch_host

    if args.plan is not None:
        try:
            cases = load_plan(args.plan)
        except (OSError, ValueError, ValidationError) as e:
            print(f"Error: Invalid plan {args.plan}: {e}", file=sys.stderr)
            return 1
    else:
        cases = default_cases()

    output_dir = args.output or Path(f"benchmark_{datetime.now():%Y%m%d_%H%M%S}")
    config = BenchmarkConfig(output_dir=output_dir, couch_host=args.couch_host, grep=args.grep)

    console.rule("Replication Benchmark")
    console.print(f"  CouchDB:          {redact_url(config.couch_host)}")
    console.print(f"  Output directory: {config.output_dir}")
    console.print(f"  Cases:            {len(cases)}" + (f" (grep {config.grep!r})" if config.grep else ""))
    console.rule()

    progress_callback, cleanup = create_progress_callback()

    try:
        session = BenchmarkSession(config, cases=cases, progress_callback=progress_callback)
        result = session.run()
        cleanup()
        print_results(result)
        return 0 if result.ok else 1

    except KeyboardInterrupt:
        cleanup()
        print("\nBenchmark interrupted by user")
        return 130

    except Exception as e:
        cleanup()
        logging.exception("Benchmark failed with error")
        print(f"\nError: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
