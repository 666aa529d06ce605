"""
Text and JSON report generation for finished runs.
"""

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from .collector import RunSummary

logger = structlog.get_logger(__name__)

REPORT_PERCENTILES = (50.0, 90.0, 95.0, 99.0)


def run_directory(
    log_dir: Union[str, Path],
    kind: str,
    run_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Path:
    """Create and return ``<log_dir>/<kind>_test_<YYYYmmdd_HHMMSS>_<run_id8>``."""
    run_id = (run_id or uuid.uuid4().hex)[:8]
    stamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
    path = Path(log_dir) / f"{kind}_test_{stamp}_{run_id}"
    path.mkdir(parents=True, exist_ok=True)
    return path


class ReportGenerator:
    """
    Writes ``<kind>_report.txt`` and ``<kind>_data.json`` for a run summary.

    Example:
        paths = ReportGenerator(output_dir).generate(summary)
        paths['text_report']
    """

    def __init__(self, output_dir: Union[str, Path]):
        self.output_dir = Path(output_dir)

    def generate(self, summary: RunSummary) -> Dict[str, str]:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        reports = {
            'text_report': self._write_text_report(summary),
            'json_report': self._write_json_report(summary),
        }
        logger.info("Reports generated", kind=summary.kind, output_dir=str(self.output_dir))
        return reports

    def _write_json_report(self, summary: RunSummary) -> str:
        json_path = self.output_dir / f"{summary.kind}_data.json"
        with open(json_path, 'w', encoding='utf-8') as f:
            json.dump(summary.to_dict(), f, indent=2, default=str)
        logger.debug("JSON report written", path=str(json_path))
        return str(json_path)

    def _write_text_report(self, summary: RunSummary) -> str:
        text_path = self.output_dir / f"{summary.kind}_report.txt"
        with open(text_path, 'w', encoding='utf-8') as f:
            f.write(self.render_text(summary))
        logger.debug("Text report written", path=str(text_path))
        return str(text_path)

    def render_text(self, summary: RunSummary) -> str:
        lines: List[str] = []
        title = f"{summary.kind.upper()} TEST REPORT"
        lines.extend([title, "=" * len(title), ""])

        if summary.started_at:
            lines.append(f"Started:   {summary.started_at.isoformat()}")
        if summary.finished_at:
            lines.append(f"Finished:  {summary.finished_at.isoformat()}")
        lines.append(f"Elapsed:   {summary.elapsed_seconds:.2f}s")
        lines.append("")

        if summary.configuration:
            lines.append("Configuration")
            lines.append("-" * 13)
            for key, value in sorted(summary.configuration.items()):
                lines.append(f"  {key}: {_format_value(value)}")
            lines.append("")

        lines.append("Totals")
        lines.append("-" * 6)
        lines.append(f"  Total:        {summary.total}")
        lines.append(f"  Passed:       {summary.passed}")
        lines.append(f"  Failed:       {summary.failed}")
        if summary.kind != "stress":
            lines.append(f"  Skipped:      {summary.skipped}")
            lines.append(f"  Errors:       {summary.errored}")
        lines.append(f"  Success rate: {summary.success_rate:.2f}%")
        lines.append(f"  Throughput:   {summary.operations_per_second:.2f}/s")
        if summary.dropped_after_finalize:
            lines.append(f"  Late results dropped: {summary.dropped_after_finalize}")
        lines.append("")

        lines.append("Latency (ms)")
        lines.append("-" * 12)
        lines.append(f"  Samples: {len(summary.samples)}")
        lines.append(f"  Mean:    {summary.mean_latency_ms:.2f}")
        lines.append(f"  Min:     {summary.min_latency_ms:.2f}")
        lines.append(f"  Max:     {summary.max_latency_ms:.2f}")
        for label, value in summary.percentiles(REPORT_PERCENTILES).items():
            lines.append(f"  {label.upper() + ':':<8} {value:.2f}")
        lines.append("")

        if summary.operations:
            lines.append("Operations")
            lines.append("-" * 10)
            for stats in summary.operations:
                lines.append(
                    f"  {stats.name}: {stats.success_count} ok, {stats.failure_count} failed, "
                    f"mean {stats.mean_latency_ms:.2f}ms"
                )
                if stats.last_error:
                    lines.append(f"    last error: {stats.last_error}")
            lines.append("")

        if summary.records:
            lines.append("Tests")
            lines.append("-" * 5)
            for record in summary.records:
                detail = ""
                if record.outcome is not None:
                    detail = f" ({record.outcome.duration_ms:.1f}ms, {record.attempts} attempt(s))"
                    if not record.outcome.success:
                        detail += f" - {record.outcome.message}"
                elif record.case.skip_reason:
                    detail = f" - {record.case.skip_reason}"
                lines.append(f"  [{record.status.value.upper()}] {record.identifier}{detail}")
            lines.append("")

        if summary.warnings:
            lines.append("Warnings")
            lines.append("-" * 8)
            for warning in summary.warnings:
                lines.append(f"  {warning}")
            lines.append("")

        if summary.error is not None:
            lines.append("Harness error")
            lines.append("-" * 13)
            lines.append(f"  {type(summary.error).__name__}: {summary.error}")
            lines.append("")

        return "\n".join(lines)


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value)
