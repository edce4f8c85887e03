"""Reusable node state actions."""

from actions.base import (
    BOTH,
    JOIN,
    RESET,
    BaseAction,
    CallableAction,
    NodeAction,
)
from actions.kubeadm import KubeadmResetAction, KubeadmJoinAction
from actions.services import StopServicesAction, EnableServiceAction
from actions.files import RemovePathsAction, WriteFileAction, DisableSwapInFstabAction
from actions.network import (
    RemoveInterfacesAction,
    FlushRoutesAction,
    FlushIpRulesAction,
    ResetMtuAction,
    ClearIpvsAction,
)
from actions.firewall import FlushIptablesAction, FlushNftablesAction, ResetFirewalldAction
from actions.kernel import DisableSwapAction, LoadModulesAction, UnloadModulesAction, SysctlAction
from actions.containerd import CleanContainerdAction

__all__ = [
    'BOTH',
    'JOIN',
    'RESET',
    'BaseAction',
    'CallableAction',
    'NodeAction',
    'KubeadmResetAction',
    'KubeadmJoinAction',
    'StopServicesAction',
    'EnableServiceAction',
    'RemovePathsAction',
    'WriteFileAction',
    'DisableSwapInFstabAction',
    'RemoveInterfacesAction',
    'FlushRoutesAction',
    'FlushIpRulesAction',
    'ResetMtuAction',
    'ClearIpvsAction',
    'FlushIptablesAction',
    'FlushNftablesAction',
    'ResetFirewalldAction',
    'DisableSwapAction',
    'LoadModulesAction',
    'UnloadModulesAction',
    'SysctlAction',
    'CleanContainerdAction',
]
