"""Tests for reporting.report module."""

import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import Probe
from reconcile.state import Outcome, Result, RunReport, RunStatus
from reporting import EXIT_ABORTED, EXIT_FAILURES, EXIT_OK, Reporter, compute_status


def _outcome(name, result, probe=Probe.UNSATISFIED, reason=''):
    return Outcome(action=name, probe=probe, executed=result != Result.SKIPPED,
                   result=result, reason=reason, duration=0.5)


def _report(*outcomes, status=None, target='reset', dry_run=False, error=None):
    report = RunReport(target=target, dry_run=dry_run)
    report.start()
    for outcome in outcomes:
        report.append(outcome)
    report.finalize(status or compute_status(report.outcomes), error=error)
    return report


class TestComputeStatus:
    """Tests for compute_status."""

    def test_all_good(self):
        outcomes = [_outcome('a', Result.SUCCESS), _outcome('b', Result.SKIPPED)]
        assert compute_status(outcomes) == RunStatus.ALL_SUCCEEDED

    def test_empty(self):
        assert compute_status([]) == RunStatus.ALL_SUCCEEDED

    def test_failure(self):
        outcomes = [_outcome('a', Result.SUCCESS), _outcome('b', Result.FAILED)]
        assert compute_status(outcomes) == RunStatus.COMPLETED_WITH_FAILURES

    def test_aborted_wins(self):
        assert compute_status([_outcome('a', Result.SUCCESS)], aborted=True) == RunStatus.ABORTED_EARLY


class TestReporter:
    """Tests for Reporter rendering and files."""

    def test_exit_codes(self):
        assert Reporter.exit_code(_report(_outcome('a', Result.SUCCESS))) == EXIT_OK
        assert Reporter.exit_code(_report(_outcome('a', Result.FAILED))) == EXIT_FAILURES
        assert Reporter.exit_code(_report(status=RunStatus.ABORTED_EARLY)) == EXIT_ABORTED

    def test_to_json(self):
        report = _report(
            _outcome('kubeadm-reset', Result.SKIPPED, probe=Probe.SATISFIED, reason='already satisfied'),
            _outcome('flush-iptables', Result.FAILED, reason='boom'),
        )
        data = json.loads(Reporter().to_json(report))

        assert data['target'] == 'reset'
        assert data['status'] == 'CompletedWithFailures'
        assert data['exit_code'] == 1
        assert [a['action_id'] for a in data['actions']] == ['kubeadm-reset', 'flush-iptables']
        assert data['actions'][0]['probe_result'] == 'satisfied'
        assert data['actions'][1]['outcome'] == 'failed'
        assert 'error' not in data

    def test_error_included(self):
        report = _report(status=RunStatus.ABORTED_EARLY, error='Dependency cycle detected: a -> b -> a')
        assert Reporter().to_dict(report)['error'] == 'Dependency cycle detected: a -> b -> a'

    def test_summary(self):
        report = _report(
            _outcome('kubeadm-reset', Result.SUCCESS),
            _outcome('clear-ipvs', Result.SKIPPED, reason='ipvsadm not found, skipping'),
        )
        summary = Reporter().render_summary(report)

        assert '1. [ OK ] kubeadm-reset (0.5s)' in summary
        assert '2. [SKIP] clear-ipvs' in summary
        assert 'ipvsadm not found, skipping' in summary
        assert 'Status: AllSucceeded (1 success, 1 skipped)' in summary
        assert 'DRY-RUN' not in summary

    def test_dry_run_summary(self):
        report = _report(
            Outcome(action='kubeadm-reset', probe=None, executed=False, result=Result.PLANNED),
            dry_run=True,
        )
        summary = Reporter().render_summary(report)
        assert '[PLAN] kubeadm-reset' in summary
        assert 'Mode: DRY-RUN (no changes made)' in summary

    def test_no_files_without_dir(self):
        assert Reporter().write(_report()) == []

    def test_write_files(self, tmp_path):
        reporter = Reporter(report_dir=tmp_path / 'reports', host='node1')
        report = _report(_outcome('disable-swap', Result.SUCCESS), target='join')
        paths = reporter.write(report)

        assert [p.suffix for p in paths] == ['.json', '.md']
        assert paths[0].name.endswith('.join.AllSucceeded.json')
        data = json.loads(paths[0].read_text())
        assert data['host'] == 'node1'
        assert data['started_at'] is not None
        markdown = paths[1].read_text()
        assert '| disable-swap | unsatisfied | success |' in markdown

    def test_write_files_to_string_dir(self, tmp_path):
        reporter = Reporter(report_dir=str(tmp_path / 'out'))
        paths = reporter.write(_report(_outcome('clear-ipvs', Result.SUCCESS)))
        assert [p.parent for p in paths] == [tmp_path / 'out'] * 2
        assert all(p.exists() for p in paths)
