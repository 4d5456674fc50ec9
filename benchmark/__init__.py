"""
Benchmarking system for document database replication.

This module times one-shot pull replications from a (throttled) remote CouchDB
database into local databases, alongside a few basic local document operations.

Usage:
    python -m benchmark
    python -m benchmark --grep pull-replication --output ./results
    python -m benchmark --plan plan.json --couch-host http://localhost:5984
"""

from benchmark.timing import TimingRecord, TimingContext
from benchmark.metrics import (
    CaseMetrics,
    PhaseStats,
    AggregateMetrics,
    MetricsCollector,
)
from benchmark.fixtures import create_doc_id, generate_docs, build_fixture
from benchmark.cases import (
    BenchmarkCase,
    PullReplicationCase,
    RemoteReplicationCase,
    default_cases,
)
from benchmark.session import BenchmarkConfig, BenchmarkSession, BenchmarkResult
from benchmark.report import ReportGenerator

__all__ = [
    # Timing primitives
    "TimingRecord",
    "TimingContext",
    # Metrics
    "CaseMetrics",
    "PhaseStats",
    "AggregateMetrics",
    "MetricsCollector",
    # Fixtures
    "create_doc_id",
    "generate_docs",
    "build_fixture",
    # Cases
    "BenchmarkCase",
    "PullReplicationCase",
    "RemoteReplicationCase",
    "default_cases",
    # Session management
    "BenchmarkConfig",
    "BenchmarkSession",
    "BenchmarkResult",
    # Reporting
    "ReportGenerator",
]
