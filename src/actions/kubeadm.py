"""kubeadm actions: reset a node, join a node to a cluster."""

import logging
from dataclasses import dataclass

from actions.base import BaseAction, JOIN
from common import Probe, UnknownApplyError
from host import Host

logger = logging.getLogger(__name__)

# Files kubeadm writes on init/join; any of them means the node is initialised
KUBEADM_ARTIFACTS = (
    '/etc/kubernetes/admin.conf',
    '/etc/kubernetes/kubelet.conf',
    '/etc/kubernetes/bootstrap-kubelet.conf',
    '/etc/kubernetes/manifests/*.yaml',
    '/var/lib/kubelet/config.yaml',
    '/var/lib/etcd/member',
)

_SECRET_FLAGS = ('--token', '--discovery-token', '--certificate-key')


def redact(argv) -> str:
    """Render a command line with token values masked."""
    out = []
    hide_next = False
    for arg in argv:
        if hide_next:
            out.append('***')
            hide_next = False
        elif arg in _SECRET_FLAGS:
            out.append(arg)
            hide_next = True
        elif arg.startswith(tuple(f'{flag}=' for flag in _SECRET_FLAGS)):
            out.append(arg.split('=', 1)[0] + '=***')
        else:
            out.append(arg)
    return ' '.join(out)


def _initialised(host: Host) -> list:
    found = []
    for pattern in KUBEADM_ARTIFACTS:
        found.extend(host.expand(pattern))
    return found


@dataclass(frozen=True)
class KubeadmResetAction(BaseAction):
    """Run `kubeadm reset` while kubeadm-managed state is present."""
    category: str = 'cluster'

    tools = ('kubeadm',)

    def check(self, host: Host) -> Probe:
        return Probe.UNSATISFIED if _initialised(host) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('kubeadm')
        logger.info(f"[{self.name}] Running kubeadm reset...")
        host.execute(['kubeadm', 'reset', '-f', '--cleanup-tmp-dir'])
        return "kubeadm reset complete"


@dataclass(frozen=True)
class KubeadmJoinAction(BaseAction):
    """Join this node to a cluster with a prepared `kubeadm join` command line.

    The node counts as joined once kubelet.conf exists.
    """
    argv: tuple = ()
    kubelet_conf: str = '/etc/kubernetes/kubelet.conf'
    targets: frozenset = JOIN
    category: str = 'cluster'

    tools = ('kubeadm',)

    def check(self, host: Host) -> Probe:
        return Probe.SATISFIED if host.path(self.kubelet_conf).exists() else Probe.UNSATISFIED

    def apply(self, host: Host) -> str:
        if not self.argv:
            raise UnknownApplyError("No join command configured (set join.command or join.endpoint/token/ca_cert_hash)")
        host.require_tool('kubeadm')
        logger.info(f"[{self.name}] Running: {redact(self.argv)}")
        host.execute(list(self.argv))
        return "Node joined cluster"
