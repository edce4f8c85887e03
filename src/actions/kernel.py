"""Kernel state actions: swap, modules, sysctl parameters."""

import logging
from dataclasses import dataclass

from actions.base import BaseAction
from common import Probe, ResourceBusy
from host import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DisableSwapAction(BaseAction):
    """Turn off every active swap device (kubelet refuses to run with swap)."""
    category: str = 'kernel'
    reversible: bool = True

    tools = ('swapoff',)

    def check(self, host: Host) -> Probe:
        swaps = host.kernel.active_swaps()
        if swaps:
            logger.debug(f"[{self.name}] Active swap: {', '.join(swaps)}")
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('swapoff')
        logger.info(f"[{self.name}] Swap is active, disabling...")
        host.kernel.swapoff_all()
        return "Swap disabled"


@dataclass(frozen=True)
class LoadModulesAction(BaseAction):
    """Load kernel modules required by the container runtime and CNI."""
    modules: tuple = ()
    category: str = 'kernel'
    reversible: bool = True

    tools = ('modprobe',)

    def check(self, host: Host) -> Probe:
        loaded = host.kernel.loaded_modules()
        return Probe.SATISFIED if all(m in loaded for m in self.modules) else Probe.UNSATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('modprobe')
        loaded = host.kernel.loaded_modules()
        missing = [m for m in self.modules if m not in loaded]
        for module in missing:
            logger.info(f"[{self.name}] Loading module: {module}")
            host.kernel.load_module(module)
        return f"Loaded {len(missing)} module(s)"


@dataclass(frozen=True)
class UnloadModulesAction(BaseAction):
    """Unload kernel modules loaded for Kubernetes networking.

    Modules still referenced by the kernel are left loaded and reported as
    ResourceBusy once every other module has been attempted.
    """
    modules: tuple = ()
    category: str = 'kernel'
    reversible: bool = True

    tools = ('modprobe',)

    def check(self, host: Host) -> Probe:
        loaded = host.kernel.loaded_modules()
        return Probe.UNSATISFIED if any(m in loaded for m in self.modules) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('modprobe')
        loaded = host.kernel.loaded_modules()
        unloaded = []
        busy = []
        for module in self.modules:
            if module not in loaded:
                continue
            logger.info(f"[{self.name}] Unloading module: {module}")
            try:
                host.kernel.unload_module(module)
                unloaded.append(module)
            except ResourceBusy:
                logger.warning(f"[{self.name}] Could not unload {module} (in use)")
                busy.append(module)
        if busy:
            raise ResourceBusy(f"Modules still in use: {', '.join(busy)}")
        return f"Unloaded {len(unloaded)} module(s)"


@dataclass(frozen=True)
class SysctlAction(BaseAction):
    """Set live sysctl parameters.

    Keys that do not exist on this kernel (e.g. bridge-nf-call-* without
    br_netfilter loaded) are treated as already in the desired state.
    """
    params: tuple = ()  # ((key, value), ...)
    category: str = 'kernel'
    reversible: bool = True

    tools = ('sysctl',)

    def _pending(self, host: Host) -> list[tuple[str, str]]:
        pending = []
        for key, value in self.params:
            current = host.kernel.sysctl_get(key)
            if current is None:
                logger.debug(f"[{self.name}] {key} not present on this kernel")
                continue
            if current != str(value):
                pending.append((key, str(value)))
        return pending

    def check(self, host: Host) -> Probe:
        return Probe.UNSATISFIED if self._pending(host) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('sysctl')
        pending = self._pending(host)
        for key, value in pending:
            logger.info(f"[{self.name}] {key}={value}")
            host.kernel.sysctl_set(key, value)
        return f"Set {len(pending)} sysctl parameter(s)"
