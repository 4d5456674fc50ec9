"""
Report generation for benchmark results.
"""

from __future__ import annotations

import html
import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from benchmark.metrics import AggregateMetrics, CaseMetrics, MetricsCollector

logger = logging.getLogger(__name__)


class ReportGenerator:
    """Generates benchmark reports and visualizations."""

    def __init__(
        self,
        output_dir: Path,
        collector: MetricsCollector,
        metrics: AggregateMetrics,
    ):
        self.output_dir = output_dir
        self.collector = collector
        self.metrics = metrics

    def generate_all(self) -> None:
        """Generate all report artifacts."""
        logger.info("Generating benchmark reports...")

        self.generate_summary_json()
        self.generate_case_chart()
        self.generate_html_report()

        logger.info("Report generation complete")

    def generate_summary_json(self) -> None:
        """Write aggregate metrics to summary.json."""
        path = self.output_dir / "summary.json"
        with open(path, "w") as f:
            json.dump(self.metrics.to_dict(), f, indent=2)
        logger.info(f"Wrote summary to {path}")

    def generate_case_chart(self) -> None:
        """Horizontal bar chart of mean iteration time per case."""
        try:
            import matplotlib
            matplotlib.use('Agg')  # Non-interactive backend
            import matplotlib.pyplot as plt
        except ImportError:
            logger.warning("matplotlib not available, skipping case chart")
            return

        cases = [c for c in self.metrics.cases if c.ok and c.iteration_stats.count]
        if not cases:
            logger.warning("No successful cases to chart")
            return

        names = [c.name for c in cases]
        means = [c.iteration_stats.mean_ms for c in cases]
        p95s = [c.iteration_stats.p95_ms for c in cases]

        fig, ax = plt.subplots(figsize=(10, max(3, len(cases) * 0.6)))
        y = range(len(cases))
        ax.barh(y, means, color='#3498db', label='Mean')
        ax.scatter(p95s, list(y), color='#e94560', zorder=3, label='P95')
        ax.set_yticks(list(y))
        ax.set_yticklabels(names)
        ax.set_xlabel('Iteration time (ms)')
        ax.set_title('Mean iteration time per case')
        ax.legend()
        plt.tight_layout()

        charts_dir = self.output_dir / "charts"
        charts_dir.mkdir(exist_ok=True)
        chart_path = charts_dir / "case_times.png"
        plt.savefig(chart_path, dpi=150)
        plt.close(fig)
        logger.info(f"Saved case chart to {chart_path}")

    def generate_html_report(self) -> None:
        """Single-page HTML report with one row per case."""
        rows = "".join(self._render_case_row(case) for case in self.metrics.cases)
        chart_exists = (self.output_dir / "charts" / "case_times.png").exists()
        chart = (
            '<div class="chart"><img src="charts/case_times.png" alt="Case times"></div>'
            if chart_exists else ""
        )
        info = self.metrics.system_info

        page = f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Benchmark Report - Replication</title>
    <style>
        body {{ font-family: -apple-system, sans-serif; background: #1a1a2e; color: #eee; margin: 40px; }}
        table {{ border-collapse: collapse; width: 100%; }}
        th, td {{ padding: 8px 12px; border-bottom: 1px solid #333; text-align: right; }}
        th:first-child, td:first-child {{ text-align: left; }}
        .failed {{ color: #e94560; }}
        .chart img {{ max-width: 100%; }}
        dt {{ color: #aaa; }}
    </style>
</head>
<body>
    <h1>Replication Benchmark</h1>
    <p>{self.metrics.total_cases} case(s), {self.metrics.failed_cases} failed,
       {self.metrics.total_time_s:.2f}s timed.</p>
    <table>
        <tr>
            <th>Case</th><th>Iterations</th><th>Setup (ms)</th><th>Mean (ms)</th>
            <th>P50 (ms)</th><th>P95 (ms)</th><th>Total (ms)</th><th>Teardown (ms)</th>
        </tr>
        {rows}
    </table>
    {chart}
    <dl>
        <dt>CouchDB</dt><dd>{html.escape(info.couch_host)} ({html.escape(info.couch_version or "unknown")})</dd>
        <dt>Python</dt><dd>{html.escape(info.python_version)}</dd>
        <dt>Platform</dt><dd>{html.escape(info.platform)}</dd>
    </dl>
</body>
</html>
"""
        report_path = self.output_dir / "report.html"
        with open(report_path, "w") as f:
            f.write(page)
        logger.info(f"Generated HTML report at {report_path}")

    def _render_case_row(self, case: CaseMetrics) -> str:
        if not case.ok:
            return f"""
        <tr class="failed">
            <td>{html.escape(case.name)}</td><td colspan="7">{html.escape(case.error or "failed")}</td>
        </tr>"""
        stats = case.iteration_stats
        return f"""
        <tr>
            <td>{html.escape(case.name)}</td><td>{stats.count}</td><td>{case.setup_ms:.1f}</td>
            <td>{stats.mean_ms:.2f}</td><td>{stats.p50_ms:.2f}</td><td>{stats.p95_ms:.2f}</td>
            <td>{stats.total_ms:.1f}</td><td>{case.teardown_ms:.1f}</td>
        </tr>"""
