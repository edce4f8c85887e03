"""Tests for reconcile.executor: the Reconciler state machine."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions import BOTH, CallableAction, DisableSwapAction, RemoveInterfacesAction, StopServicesAction
from catalog import build_registry
from common import ExternalToolMissing, Probe, ProbeTimeout, ResourceBusy, Target, UnknownApplyError
from config import ReconcilerConfig
from host import Host, ToolMissing
from reconcile.executor import DEFAULT_ACTION_TIMEOUT, Phase, Reconciler
from reconcile.graph import ActionRegistry
from reconcile.state import Result, RunStatus
from test_host import IP_LINK_OUTPUT


class FakeNode:
    """In-memory host state toggled by actions."""

    def __init__(self, **state):
        self.state = dict(state)
        self.applied: list[str] = []

    def action(self, name, key, requires=(), **kwargs):
        def check(host):
            return Probe.SATISFIED if self.state.get(key) else Probe.UNSATISFIED

        def apply(host):
            self.applied.append(name)
            self.state[key] = True
            return f"{key} done"

        return CallableAction(name=name, requires=tuple(requires), check_fn=check, apply_fn=apply, **kwargs)


def _failing(name, error, requires=()):
    def apply(host):
        raise error
    return CallableAction(name=name, requires=tuple(requires), apply_fn=apply)


def _raising(error):
    def check(host):
        raise error
    return check


class TestReconcilerRun:
    """Tests for the happy path and idempotence."""

    def test_applies_in_plan_order(self, host):
        node = FakeNode()
        registry = ActionRegistry([
            node.action('c', 'c', requires=['b']),
            node.action('a', 'a'),
            node.action('b', 'b', requires=['a']),
        ])
        report = Reconciler(registry, host).run(Target.RESET)

        assert node.applied == ['a', 'b', 'c']
        assert [o.result for o in report.outcomes] == [Result.SUCCESS] * 3
        assert report.status == RunStatus.ALL_SUCCEEDED
        assert report.outcomes[0].reason == 'a done'

    def test_second_run_only_skips(self, host):
        node = FakeNode()
        registry = ActionRegistry([node.action('a', 'a'), node.action('b', 'b', requires=['a'])])
        reconciler = Reconciler(registry, host)

        reconciler.run('reset')
        node.applied.clear()
        second = reconciler.run('reset')

        assert node.applied == []
        assert all(o.result == Result.SKIPPED and not o.executed for o in second.outcomes)
        assert second.status == RunStatus.ALL_SUCCEEDED
        assert reconciler.phase == Phase.DONE

    def test_partial_prior_state(self, host):
        node = FakeNode(a=True)
        registry = ActionRegistry([node.action('a', 'a'), node.action('b', 'b', requires=['a'])])
        report = Reconciler(registry, host).run('reset')

        assert node.applied == ['b']
        assert report.get('a').probe == Probe.SATISFIED

    def test_timeouts_scoped_per_phase(self, host):
        seen = {}

        def check(h):
            seen['check'] = h.timeout
            return Probe.UNSATISFIED

        def apply(h):
            seen['apply'] = h.timeout
            return ''

        registry = ActionRegistry([CallableAction(name='a', check_fn=check, apply_fn=apply)])
        Reconciler(registry, host, probe_timeout=3, action_timeout=120).run('reset')
        assert seen == {'check': 3, 'apply': 120}

    def test_check_budget_spans_commands(self, tmp_path, tools):
        now = [100.0]
        timeouts = []

        def slow_systemctl(cmd, timeout=None, **kwargs):
            timeouts.append(timeout)
            now[0] += 2.0
            return 0, 'inactive\n', ''

        host = Host(root=tmp_path, runner=slow_systemctl, which=tools, clock=lambda: now[0])
        action = StopServicesAction(name='stop', services=('a', 'b', 'c', 'd', 'e', 'f'))
        report = Reconciler(ActionRegistry([action]), host, probe_timeout=5).run('reset')

        assert report.get('stop').probe == Probe.UNKNOWN
        # check: 5s, then 3s, then 1s left; apply runs with the action timeout
        assert timeouts[:3] == [5, 3.0, 1.0]
        assert set(timeouts[3:]) == {DEFAULT_ACTION_TIMEOUT}

    def test_invalid_policy(self, host):
        with pytest.raises(ValueError, match='on_error'):
            Reconciler(ActionRegistry(), host, on_error='retry')


class TestFailurePolicy:
    """Tests for continue and halt policies."""

    def _registry(self, node):
        return ActionRegistry([
            node.action('a', 'a'),
            _failing('b', UnknownApplyError('b broke'), requires=['a']),
            node.action('c', 'c', requires=['a']),
        ])

    def test_continue_runs_remaining(self, host):
        node = FakeNode()
        report = Reconciler(self._registry(node), host, on_error='continue').run('reset')

        assert [o.action for o in report.outcomes] == ['a', 'b', 'c']
        assert report.get('b').result == Result.FAILED
        assert report.get('b').error_kind == 'unknown'
        assert node.applied == ['a', 'c']
        assert report.status == RunStatus.COMPLETED_WITH_FAILURES

    def test_halt_stops_before_next(self, host):
        node = FakeNode()
        report = Reconciler(self._registry(node), host, on_error='halt').run('reset')

        assert [o.action for o in report.outcomes] == ['a', 'b']
        assert node.applied == ['a']
        assert report.status == RunStatus.ABORTED_EARLY
        assert "Halted after 'b'" in report.error

    def test_nonfatal_errors_skip(self, host):
        registry = ActionRegistry([
            _failing('tool', ExternalToolMissing('ipvsadm not found, skipping')),
            _failing('busy', ResourceBusy('overlay in use')),
        ])
        report = Reconciler(registry, host, on_error='halt').run('reset')

        assert [o.result for o in report.outcomes] == [Result.SKIPPED, Result.SKIPPED]
        assert report.get('busy').error_kind == 'resource-busy'
        assert report.get('tool').executed
        assert report.status == RunStatus.ALL_SUCCEEDED

    def test_nonfatal_set_is_configurable(self, host):
        registry = ActionRegistry([_failing('busy', ResourceBusy('overlay in use'))])
        report = Reconciler(registry, host, nonfatal=(ExternalToolMissing,)).run('reset')
        assert report.get('busy').result == Result.FAILED

    def test_unexpected_apply_exception(self, host):
        registry = ActionRegistry([_failing('a', KeyError('oops')), CallableAction(name='b')])
        report = Reconciler(registry, host).run('reset')

        assert report.get('a').result == Result.FAILED
        assert report.get('a').error_kind == 'unknown'
        assert 'KeyError' in report.get('a').reason
        assert report.get('b').result == Result.SUCCESS

    def test_probe_errors_during_apply(self, host):
        registry = ActionRegistry([
            _failing('slow', ProbeTimeout('ip route show: timed out')),
            _failing('gone', ToolMissing('ctr')),
        ])
        report = Reconciler(registry, host).run('reset')

        assert report.get('slow').result == Result.FAILED
        assert report.get('slow').error_kind == 'timeout'
        assert report.get('gone').result == Result.SKIPPED
        assert report.get('gone').error_kind == 'external-tool-missing'


class TestProbes:
    """Tests for probe error handling."""

    @pytest.mark.parametrize('check', [
        _raising(ProbeTimeout('timed out')),
        _raising(RuntimeError('bug')),
        lambda h: 'yes',
        lambda h: Probe.UNKNOWN,
    ])
    def test_inconclusive_probe_means_apply(self, host, check):
        applied = []
        registry = ActionRegistry([
            CallableAction(name='a', check_fn=check, apply_fn=lambda h: applied.append('a') or 'ok'),
        ])
        report = Reconciler(registry, host).run('reset')

        assert applied == ['a']
        assert report.get('a').probe == Probe.UNKNOWN
        assert report.get('a').result == Result.SUCCESS

    def test_satisfied_probe_skips_apply(self, host, runner):
        registry = ActionRegistry([DisableSwapAction(name='disable-swap', targets=BOTH)])
        report = Reconciler(registry, host).run('join')

        outcome = report.get('disable-swap')
        assert outcome.result == Result.SKIPPED
        assert outcome.executed is False
        assert outcome.probe == Probe.SATISFIED
        assert not runner.ran('swapoff')

    def test_missing_tool_on_apply_is_skipped(self, host, runner, tools):
        runner.on('ip', '-o', 'link', 'show', out=IP_LINK_OUTPUT)
        tools.missing.add('ip')
        node = FakeNode()
        registry = ActionRegistry([
            RemoveInterfacesAction(name='remove-cni-interfaces', patterns=('cali*',)),
            node.action('flush-routes', 'routes', requires=['remove-cni-interfaces']),
        ])
        report = Reconciler(registry, host).run('reset')

        cni = report.get('remove-cni-interfaces')
        assert cni.result == Result.SKIPPED
        assert cni.error_kind == 'external-tool-missing'
        assert node.applied == ['flush-routes']
        assert report.status == RunStatus.ALL_SUCCEEDED


class TestAbort:
    """Tests for planning failure, cancellation and dry-run."""

    def test_planning_failure_aborts_before_mutation(self, host):
        node = FakeNode()
        registry = ActionRegistry([
            node.action('a', 'a', requires=['b']),
            node.action('b', 'b', requires=['a']),
        ])
        report = Reconciler(registry, host).run('reset')

        assert report.outcomes == ()
        assert report.status == RunStatus.ABORTED_EARLY
        assert 'Dependency cycle detected' in report.error
        assert node.applied == []

    def test_unknown_target(self, host):
        report = Reconciler(ActionRegistry(), host).run('upgrade')
        assert report.status == RunStatus.ABORTED_EARLY
        assert "Unknown target 'upgrade'" in report.error

    def test_cancel_between_actions(self, host):
        node = FakeNode()
        holder = {}

        def cancel(h):
            holder['reconciler'].cancel()
            return 'cancelled mid-run'

        registry = ActionRegistry([
            node.action('a', 'a'),
            CallableAction(name='b', requires=('a',), apply_fn=cancel),
            node.action('c', 'c', requires=['b']),
        ])
        reconciler = Reconciler(registry, host)
        holder['reconciler'] = reconciler
        report = reconciler.run('reset')

        assert [o.action for o in report.outcomes] == ['a', 'b']
        assert report.get('b').result == Result.SUCCESS
        assert report.status == RunStatus.ABORTED_EARLY
        assert "before 'c'" in report.error
        assert reconciler.cancelled

    def test_dry_run_reset(self, host, runner):
        registry = build_registry(ReconcilerConfig())
        plan = registry.build_plan('reset')
        report = Reconciler(registry, host, dry_run=True).run(Target.RESET)

        assert [o.action for o in report.outcomes] == plan.names
        assert all(o.result == Result.PLANNED for o in report.outcomes)
        assert all(o.probe is None and not o.executed for o in report.outcomes)
        assert runner.calls == []
        assert report.status == RunStatus.ALL_SUCCEEDED
        assert report.dry_run
