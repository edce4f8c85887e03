"""Tests for kernel, filesystem and service actions."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from actions import (
    DisableSwapAction,
    DisableSwapInFstabAction,
    EnableServiceAction,
    LoadModulesAction,
    RemovePathsAction,
    StopServicesAction,
    SysctlAction,
    UnloadModulesAction,
    WriteFileAction,
)
from common import ExternalToolMissing, PermissionDenied, Probe, ResourceBusy
from conftest import write_host_file

SWAP_ON = 'Filename\tType\tSize\tUsed\tPriority\n/dev/sda2 partition 4194300 0 -2\n'


class TestDisableSwapAction:
    """Tests for DisableSwapAction."""

    def test_satisfied_without_swap(self, host):
        assert DisableSwapAction(name='disable-swap').check(host) == Probe.SATISFIED

    def test_unsatisfied_with_swap(self, host, tmp_path):
        write_host_file(tmp_path, '/proc/swaps', SWAP_ON)
        assert DisableSwapAction(name='disable-swap').check(host) == Probe.UNSATISFIED

    def test_apply(self, host, runner):
        assert DisableSwapAction(name='disable-swap').apply(host) == 'Swap disabled'
        assert runner.calls == [['swapoff', '-a']]

    def test_apply_without_swapoff(self, host, tools):
        tools.missing.add('swapoff')
        with pytest.raises(ExternalToolMissing):
            DisableSwapAction(name='disable-swap').apply(host)


class TestModuleActions:
    """Tests for LoadModulesAction and UnloadModulesAction."""

    def test_load_only_missing(self, host, runner, tmp_path):
        write_host_file(tmp_path, '/proc/modules', 'overlay 151552 0 - Live 0x0\n')
        action = LoadModulesAction(name='load', modules=('overlay', 'br_netfilter'))

        assert action.check(host) == Probe.UNSATISFIED
        assert action.apply(host) == 'Loaded 1 module(s)'
        assert runner.calls == [['modprobe', 'br_netfilter']]

    def test_unload_satisfied_when_none_loaded(self, host):
        action = UnloadModulesAction(name='unload', modules=('ip_vs', 'ipip'))
        assert action.check(host) == Probe.SATISFIED

    def test_unload_busy_after_trying_all(self, host, runner, tmp_path):
        write_host_file(tmp_path, '/proc/modules',
                        'overlay 151552 3 - Live 0x0\nipip 32768 0 - Live 0x0\n')
        runner.on('modprobe', '-r', 'overlay', rc=1, err='modprobe: FATAL: Module overlay is in use.')
        action = UnloadModulesAction(name='unload', modules=('overlay', 'ipip', 'vxlan'))

        with pytest.raises(ResourceBusy, match='overlay'):
            action.apply(host)
        assert ['modprobe', '-r', 'ipip'] in runner.calls
        assert ['modprobe', '-r', 'vxlan'] not in runner.calls


class TestSysctlAction:
    """Tests for SysctlAction."""

    def _action(self):
        return SysctlAction(name='sysctl', params=(
            ('net.ipv4.ip_forward', '0'),
            ('net.bridge.bridge-nf-call-iptables', '0'),
        ))

    def test_satisfied_when_values_match(self, host, runner):
        runner.on('sysctl', '-n', 'net.ipv4.ip_forward', out='0\n')
        runner.on('sysctl', '-n', 'net.bridge.bridge-nf-call-iptables', out='0\n')
        assert self._action().check(host) == Probe.SATISFIED

    def test_missing_keys_ignored(self, host, runner):
        runner.on('sysctl', '-n', 'net.ipv4.ip_forward', out='1\n')
        runner.on('sysctl', '-n', 'net.bridge.bridge-nf-call-iptables', rc=255, err='cannot stat')
        action = self._action()

        assert action.check(host) == Probe.UNSATISFIED
        assert action.apply(host) == 'Set 1 sysctl parameter(s)'
        assert runner.commands('sysctl', '-w') == [['sysctl', '-w', 'net.ipv4.ip_forward=0']]


class TestRemovePathsAction:
    """Tests for RemovePathsAction."""

    def test_removes_globbed_paths(self, host, tmp_path):
        write_host_file(tmp_path, '/etc/kubernetes/admin.conf', 'x')
        write_host_file(tmp_path, '/home/alice/.kube/config', 'x')
        action = RemovePathsAction(name='rm', paths=('/etc/kubernetes', '/home/*/.kube', '/var/lib/etcd'))

        assert action.check(host) == Probe.UNSATISFIED
        assert action.apply(host) == 'Removed 2 path(s)'
        assert action.check(host) == Probe.SATISFIED
        assert (tmp_path / 'home' / 'alice').exists()

    def test_satisfied_when_absent(self, host):
        assert RemovePathsAction(name='rm', paths=('/var/lib/kubelet',)).check(host) == Probe.SATISFIED

    def test_reports_first_error_kind(self, host, tmp_path):
        write_host_file(tmp_path, '/etc/kubernetes/admin.conf', 'x')
        action = RemovePathsAction(name='rm', paths=('/etc/kubernetes',))

        def deny(target):
            raise PermissionDenied(f"Cannot remove {target}: Permission denied")

        host.remove = deny
        with pytest.raises(PermissionDenied, match='1 path'):
            action.apply(host)


class TestFileActions:
    """Tests for WriteFileAction and DisableSwapInFstabAction."""

    def test_write_file(self, host):
        action = WriteFileAction(name='w', path='/etc/modules-load.d/k8s.conf', content='overlay\n')
        assert action.check(host) == Probe.UNSATISFIED
        action.apply(host)
        assert action.check(host) == Probe.SATISFIED

    def test_fstab(self, host, tmp_path):
        write_host_file(tmp_path, '/etc/fstab', (
            'UUID=abc / ext4 defaults 0 1\n'
            '/swap.img none swap sw 0 0\n'
            '# /old.img none swap sw 0 0\n'
        ))
        action = DisableSwapInFstabAction(name='fstab')

        assert action.check(host) == Probe.UNSATISFIED
        action.apply(host)
        assert action.check(host) == Probe.SATISFIED
        assert host.read_text('/etc/fstab') == (
            'UUID=abc / ext4 defaults 0 1\n'
            '# /swap.img none swap sw 0 0\n'
            '# /old.img none swap sw 0 0\n'
        )

    def test_fstab_missing(self, host):
        assert DisableSwapInFstabAction(name='fstab').check(host) == Probe.SATISFIED


class TestServiceActions:
    """Tests for StopServicesAction and EnableServiceAction."""

    def test_stop_services(self, host, runner):
        runner.on('systemctl', 'is-active', 'kubelet', out='active\n')
        runner.on('systemctl', 'is-enabled', 'etcd', out='enabled\n')
        action = StopServicesAction(name='stop', services=('kubelet', 'etcd'))

        assert action.check(host) == Probe.UNSATISFIED
        action.apply(host)
        assert ['systemctl', 'stop', 'kubelet'] in runner.calls
        assert ['systemctl', 'disable', 'etcd'] in runner.calls
        assert ['systemctl', 'stop', 'etcd'] not in runner.calls

    def test_keep_enabled(self, host, runner):
        runner.on('systemctl', 'is-enabled', 'kubelet', out='enabled\n')
        action = StopServicesAction(name='stop', services=('kubelet',), keep_enabled=('kubelet',))

        assert action.check(host) == Probe.SATISFIED
        action.apply(host)
        assert not runner.ran('systemctl', 'disable')

    def test_enable_without_binary(self, host, tools):
        tools.missing.add('kubelet')
        action = EnableServiceAction(name='enable-kubelet', service='kubelet', binary='kubelet')

        assert action.check(host) == Probe.UNKNOWN
        with pytest.raises(ExternalToolMissing):
            action.apply(host)

    def test_enable_and_start(self, host, runner):
        action = EnableServiceAction(name='start-containerd', service='containerd', start=True)
        assert action.check(host) == Probe.UNSATISFIED
        assert action.apply(host) == 'containerd enabled and started'
        assert runner.commands('systemctl', 'enable') == [['systemctl', 'enable', 'containerd']]
        assert runner.commands('systemctl', 'start') == [['systemctl', 'start', 'containerd']]

    def test_enable_not_started(self, host, runner):
        runner.on('systemctl', 'is-enabled', 'kubelet', out='enabled\n')
        action = EnableServiceAction(name='enable-kubelet', service='kubelet')
        assert action.check(host) == Probe.SATISFIED
