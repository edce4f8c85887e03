"""Tests for reconcile.state: Outcome and RunReport."""

import dataclasses
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import Probe
from reconcile.state import Outcome, ReportFinalizedError, Result, RunReport, RunStatus


class TestOutcome:
    """Tests for Outcome record."""

    def test_frozen(self):
        outcome = Outcome(action='a', probe=Probe.SATISFIED, executed=False, result=Result.SKIPPED)
        with pytest.raises(dataclasses.FrozenInstanceError):
            outcome.result = Result.FAILED  # type: ignore[misc]

    def test_to_dict(self):
        outcome = Outcome(
            action='flush-iptables', probe=Probe.UNSATISFIED, executed=True,
            result=Result.FAILED, reason='iptables -F exited 1', error_kind='unknown', duration=1.2345,
        )
        assert outcome.to_dict() == {
            'action_id': 'flush-iptables',
            'probe_result': 'unsatisfied',
            'executed': True,
            'outcome': 'failed',
            'duration_ms': 1234,
            'reason': 'iptables -F exited 1',
            'error_kind': 'unknown',
        }

    def test_planned_has_no_probe(self):
        outcome = Outcome(action='a', probe=None, executed=False, result=Result.PLANNED)
        assert outcome.to_dict()['probe_result'] is None
        assert 'reason' not in outcome.to_dict()
        assert not outcome.failed


class TestRunReport:
    """Tests for RunReport lifecycle."""

    def test_append_and_count(self):
        report = RunReport(target='reset')
        report.start()
        report.append(Outcome(action='a', probe=Probe.SATISFIED, executed=False, result=Result.SKIPPED))
        report.append(Outcome(action='b', probe=Probe.UNSATISFIED, executed=True, result=Result.SUCCESS))

        assert [o.action for o in report.outcomes] == ['a', 'b']
        assert report.count(Result.SKIPPED) == 1
        assert report.get('b').result == Result.SUCCESS
        assert report.get('c') is None
        assert not report.finalized

    def test_outcomes_is_a_copy(self):
        report = RunReport(target='join')
        assert isinstance(report.outcomes, tuple)

    def test_finalize_freezes(self):
        report = RunReport(target='reset')
        report.start()
        report.finalize(RunStatus.ALL_SUCCEEDED)

        assert report.finalized
        assert report.finished_at >= report.started_at
        with pytest.raises(ReportFinalizedError):
            report.append(Outcome(action='a', probe=None, executed=False, result=Result.PLANNED))
        with pytest.raises(ReportFinalizedError):
            report.finalize(RunStatus.ABORTED_EARLY)

    def test_duration_before_finish(self):
        assert RunReport(target='reset').duration == 0.0

    def test_status_values(self):
        assert [s.value for s in RunStatus] == ['AllSucceeded', 'CompletedWithFailures', 'AbortedEarly']
