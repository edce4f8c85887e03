"""Built-in actions for the join and reset targets.

Declaration order matters: among actions whose predecessors are done, the
one declared first runs first. The reset order follows the teardown order
kubeadm-provisioned nodes need: cluster state, services, files, network,
firewall, kernel, runtime, then re-arming kubelet and swap for the next join.
"""

import logging

from actions import (
    BOTH,
    JOIN,
    ClearIpvsAction,
    CleanContainerdAction,
    DisableSwapAction,
    DisableSwapInFstabAction,
    EnableServiceAction,
    FlushIpRulesAction,
    FlushIptablesAction,
    FlushNftablesAction,
    FlushRoutesAction,
    KubeadmJoinAction,
    KubeadmResetAction,
    LoadModulesAction,
    RemoveInterfacesAction,
    RemovePathsAction,
    ResetFirewalldAction,
    ResetMtuAction,
    StopServicesAction,
    SysctlAction,
    UnloadModulesAction,
    WriteFileAction,
)
from config import ReconcilerConfig
from reconcile.graph import ActionRegistry

logger = logging.getLogger(__name__)

SYSCTL_CONF = '/etc/sysctl.d/k8s.conf'
MODULES_LOAD_CONF = '/etc/modules-load.d/k8s.conf'

PERSISTED_IPTABLES_RULES = ('/etc/iptables/rules.v4', '/etc/iptables/rules.v6')
SYSCTL_CONFIG_FILES = (SYSCTL_CONF, '/etc/sysctl.d/99-kubernetes*.conf', MODULES_LOAD_CONF)


def sysctl_conf(params: dict) -> str:
    """Render sysctl.d content for params."""
    return ''.join(f"{key} = {value}\n" for key, value in params.items())


def modules_load_conf(modules) -> str:
    """Render modules-load.d content for modules."""
    return ''.join(f"{module}\n" for module in modules)


def build_actions(config: ReconcilerConfig) -> list:
    """All built-in actions, in declaration order."""
    return [
        KubeadmResetAction(
            name='kubeadm-reset',
            description='kubeadm reset',
        ),
        StopServicesAction(
            name='stop-kubernetes-services',
            description='Stop Kubernetes services',
            requires=('kubeadm-reset',),
            services=tuple(config.services),
            # re-enabled by enable-kubelet, stopping is enough
            keep_enabled=('kubelet',),
        ),
        RemovePathsAction(
            name='remove-kubernetes-state',
            description='Remove Kubernetes state & config',
            requires=('stop-kubernetes-services',),
            paths=tuple(config.state_paths),
        ),
        RemoveInterfacesAction(
            name='remove-cni-interfaces',
            description='Remove virtual network interfaces',
            requires=('remove-kubernetes-state',),
            patterns=tuple(config.interface_patterns),
        ),
        FlushIptablesAction(
            name='flush-iptables',
            description='Flush iptables & ip6tables rules',
            requires=('stop-kubernetes-services',),
        ),
        FlushNftablesAction(
            name='flush-nftables',
            description='Flush nftables ruleset',
            requires=('flush-iptables',),
        ),
        RemovePathsAction(
            name='remove-persisted-iptables-rules',
            description='Remove persisted iptables rules',
            requires=('flush-iptables',),
            paths=PERSISTED_IPTABLES_RULES,
            category='firewall',
        ),
        FlushRoutesAction(
            name='flush-routes',
            description='Clean up pod/service routes',
            requires=('remove-cni-interfaces',),
            tables=tuple(str(t) for t in config.route_tables),
            patterns=tuple(config.route_patterns),
        ),
        FlushIpRulesAction(
            name='flush-ip-rules',
            description='Remove policy routing rules',
            requires=('flush-routes',),
        ),
        ResetMtuAction(
            name='reset-mtu',
            description='Reset MTU on physical interfaces',
            requires=('remove-cni-interfaces',),
            mtu=config.physical_mtu,
            exclude_prefixes=tuple(config.mtu_exclude_prefixes),
        ),
        ClearIpvsAction(
            name='clear-ipvs',
            description='Clear IPVS tables',
            requires=('stop-kubernetes-services',),
        ),
        RemovePathsAction(
            name='remove-sysctl-config',
            description='Remove Kubernetes sysctl and module config',
            paths=SYSCTL_CONFIG_FILES,
            category='kernel',
        ),
        SysctlAction(
            name='reset-sysctl',
            description='Reset sysctl networking params',
            requires=('remove-sysctl-config',),
            params=tuple(config.sysctl_reset.items()),
        ),
        UnloadModulesAction(
            name='unload-kernel-modules',
            description='Unload Kubernetes kernel modules',
            requires=('remove-cni-interfaces', 'clear-ipvs', 'flush-iptables', 'reset-sysctl'),
            modules=tuple(config.kernel_modules),
        ),
        ResetFirewalldAction(
            name='reset-firewalld',
            description='Reset firewalld',
            requires=('flush-nftables',),
        ),
        CleanContainerdAction(
            name='clean-containerd',
            description='Reset containerd state (preserve images)',
            requires=('kubeadm-reset', 'stop-kubernetes-services'),
            namespace=config.containerd_namespace,
        ),
        EnableServiceAction(
            name='enable-kubelet',
            description='Enable kubelet for the next kubeadm init/join',
            requires=('clean-containerd', 'remove-kubernetes-state', 'start-containerd'),
            targets=BOTH,
            service='kubelet',
            binary='kubelet',
        ),
        DisableSwapAction(
            name='disable-swap',
            description='Disable swap',
            requires=('clean-containerd',),
            targets=BOTH,
        ),
        DisableSwapInFstabAction(
            name='persist-swap-off',
            description='Keep swap off across reboots',
            requires=('disable-swap',),
            targets=JOIN,
        ),
        WriteFileAction(
            name='write-modules-load-config',
            description='Load container networking modules at boot',
            targets=JOIN,
            path=MODULES_LOAD_CONF,
            content=modules_load_conf(config.join_modules),
            category='kernel',
        ),
        LoadModulesAction(
            name='load-kernel-modules',
            description='Load container networking modules',
            requires=('write-modules-load-config',),
            targets=JOIN,
            modules=tuple(config.join_modules),
        ),
        WriteFileAction(
            name='write-sysctl-config',
            description='Persist Kubernetes sysctl params',
            requires=('load-kernel-modules',),
            targets=JOIN,
            path=SYSCTL_CONF,
            content=sysctl_conf(config.sysctl_join),
            category='kernel',
        ),
        SysctlAction(
            name='apply-sysctl',
            description='Apply Kubernetes sysctl params',
            requires=('write-sysctl-config',),
            targets=JOIN,
            params=tuple(config.sysctl_join.items()),
        ),
        EnableServiceAction(
            name='start-containerd',
            description='Enable and start containerd',
            requires=('load-kernel-modules',),
            targets=JOIN,
            service='containerd',
            binary='containerd',
            start=True,
        ),
        KubeadmJoinAction(
            name='kubeadm-join',
            description='kubeadm join',
            requires=('disable-swap', 'persist-swap-off', 'apply-sysctl', 'start-containerd', 'enable-kubelet'),
            argv=config.join.argv(),
        ),
    ]


def build_registry(config: ReconcilerConfig) -> ActionRegistry:
    """Registry holding every built-in action.

    Raises:
        PlanningError: The catalog is inconsistent
    """
    registry = ActionRegistry()
    registry.register_all(build_actions(config))
    logger.debug(f"Catalog: {len(registry)} action(s)")
    return registry
