"""Run reporting: status, exit codes, human summary, JSON and report files."""

import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from reconcile.state import Outcome, Result, RunReport, RunStatus

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_ABORTED = 2
EXIT_USAGE = 3

_EXIT_CODES = {
    RunStatus.ALL_SUCCEEDED: EXIT_OK,
    RunStatus.COMPLETED_WITH_FAILURES: EXIT_FAILURES,
    RunStatus.ABORTED_EARLY: EXIT_ABORTED,
}

_MARKS = {
    Result.SUCCESS: '[ OK ]',
    Result.SKIPPED: '[SKIP]',
    Result.FAILED: '[FAIL]',
    Result.PLANNED: '[PLAN]',
}

RULE = '=' * 63


def compute_status(outcomes: Iterable[Outcome], aborted: bool = False) -> RunStatus:
    """Overall status of a run.

    AllSucceeded iff every outcome is success, skipped or planned and the run
    was not aborted. An aborted run is AbortedEarly regardless of outcomes.
    """
    if aborted:
        return RunStatus.ABORTED_EARLY
    if any(o.failed for o in outcomes):
        return RunStatus.COMPLETED_WITH_FAILURES
    return RunStatus.ALL_SUCCEEDED


class Reporter:
    """Renders a finalized RunReport.

    Attributes:
        report_dir: Directory for .json/.md report files (None disables files)
        host: Host name recorded in report files
    """

    def __init__(self, report_dir: Optional[Path] = None, host: str = ''):
        self.report_dir = report_dir
        self.host = host

    @staticmethod
    def exit_code(report: RunReport) -> int:
        """Process exit code for a finalized report."""
        if report.status is None:
            return EXIT_ABORTED
        return _EXIT_CODES[report.status]

    @staticmethod
    def records(report: RunReport) -> list[dict]:
        """Machine-checkable per-action records, in execution order."""
        return [o.to_dict() for o in report.outcomes]

    def to_dict(self, report: RunReport) -> dict:
        result = {
            'target': report.target,
            'status': report.status.value if report.status else None,
            'dry_run': report.dry_run,
            'exit_code': self.exit_code(report),
            'duration_seconds': round(report.duration, 1),
            'actions': self.records(report),
        }
        if report.error:
            result['error'] = report.error
        return result

    def to_json(self, report: RunReport) -> str:
        return json.dumps(self.to_dict(report), indent=2)

    def render_summary(self, report: RunReport) -> str:
        """Human-readable, numbered step summary."""
        mode = 'DRY-RUN ' if report.dry_run else ''
        lines = [
            '',
            RULE,
            f"  {mode}{report.target.upper()} summary",
            RULE,
        ]

        width = len(str(len(report.outcomes))) if report.outcomes else 1
        for number, outcome in enumerate(report.outcomes, 1):
            mark = _MARKS[outcome.result]
            line = f"  {number:>{width}}. {mark} {outcome.action}"
            if outcome.result != Result.PLANNED:
                line += f" ({outcome.duration:.1f}s)"
            lines.append(line)
            if outcome.reason and outcome.result in (Result.SKIPPED, Result.FAILED):
                lines.append(f"  {'':>{width}}         {outcome.reason}")

        if not report.outcomes:
            lines.append("  (no actions run)")

        lines.append(RULE)
        counts = ', '.join(
            f"{report.count(r)} {r.value}"
            for r in (Result.SUCCESS, Result.SKIPPED, Result.FAILED, Result.PLANNED)
            if report.count(r)
        )
        status = report.status.value if report.status else 'unfinished'
        lines.append(f"  Status: {status}" + (f" ({counts})" if counts else ''))
        if report.error:
            lines.append(f"  Error: {report.error}")
        if report.dry_run:
            lines.append("  Mode: DRY-RUN (no changes made)")
        lines.append(RULE)
        lines.append('')
        return '\n'.join(lines)

    def write(self, report: RunReport) -> list[Path]:
        """Write timestamped JSON and markdown reports. Returns written paths."""
        if self.report_dir is None:
            return []
        report_dir = Path(self.report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        json_path = report_dir / self._report_filename(report, 'json')
        with open(json_path, 'w', encoding='utf-8') as f:
            data = self.to_dict(report)
            data['host'] = self.host
            data['started_at'] = _iso(report.started_at)
            data['finished_at'] = _iso(report.finished_at)
            json.dump(data, f, indent=2)

        md_path = report_dir / self._report_filename(report, 'md')
        with open(md_path, 'w', encoding='utf-8') as f:
            f.write(self._markdown(report))
        return [json_path, md_path]

    def _markdown(self, report: RunReport) -> str:
        status = report.status.value if report.status else 'unfinished'
        started = datetime.fromtimestamp(report.started_at) if report.started_at else None
        lines = [
            f"# {report.target}",
            "",
            f"**Host**: {self.host}",
            f"**Status**: {status}",
            f"**Date**: {started.strftime('%Y-%m-%d %H:%M:%S') if started else 'N/A'}",
            f"**Duration**: {report.duration:.1f}s",
            "",
            "## Actions",
            "",
            "| Action | Probe | Outcome | Duration | Reason |",
            "|--------|-------|---------|----------|--------|",
        ]
        for o in report.outcomes:
            probe = o.probe.value if o.probe else '-'
            lines.append(f"| {o.action} | {probe} | {o.result.value} | {o.duration:.1f}s | {o.reason} |")
        if report.error:
            lines.extend(["", f"**Error**: {report.error}"])
        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])
        return '\n'.join(lines)

    def _report_filename(self, report: RunReport, ext: str) -> str:
        started = datetime.fromtimestamp(report.started_at) if report.started_at else None
        timestamp = started.strftime('%Y%m%d-%H%M%S') if started else 'unknown'
        status = report.status.value if report.status else 'unfinished'
        return f"{timestamp}.{report.target}.{status}.{ext}"


def _iso(ts: Optional[float]) -> Optional[str]:
    return datetime.fromtimestamp(ts).isoformat() if ts else None
