"""systemd service actions."""

import logging
from dataclasses import dataclass

from actions.base import BaseAction
from common import Probe
from host import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopServicesAction(BaseAction):
    """Stop and disable a set of units. Units that do not exist are ignored.

    Units in keep_enabled are stopped but left enabled at boot.
    """
    services: tuple = ()
    keep_enabled: tuple = ()
    category: str = 'service'
    reversible: bool = True

    tools = ('systemctl',)

    def _should_disable(self, unit: str) -> bool:
        return unit not in self.keep_enabled

    def _running_or_enabled(self, host: Host) -> list[str]:
        pending = []
        for unit in self.services:
            if host.services.is_active(unit):
                pending.append(unit)
            elif self._should_disable(unit) and host.services.is_enabled(unit):
                pending.append(unit)
        return pending

    def check(self, host: Host) -> Probe:
        pending = self._running_or_enabled(host)
        if pending:
            logger.debug(f"[{self.name}] Still active or enabled: {', '.join(pending)}")
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('systemctl')
        stopped = []
        for unit in self.services:
            if host.services.is_active(unit):
                logger.info(f"[{self.name}] Stopping {unit}...")
                host.services.stop(unit)
                stopped.append(unit)
            if self._should_disable(unit) and host.services.is_enabled(unit):
                host.services.disable(unit)
        return f"Stopped {len(stopped)} service(s)" if stopped else "Services disabled"


@dataclass(frozen=True)
class EnableServiceAction(BaseAction):
    """Enable a unit at boot, optionally starting it now.

    binary names the executable the unit runs; if it is not installed the
    apply reports ExternalToolMissing instead of enabling a dangling unit.
    """
    service: str = ''
    binary: str = ''
    start: bool = False
    category: str = 'service'
    reversible: bool = True

    tools = ('systemctl',)

    def check(self, host: Host) -> Probe:
        if self.binary and not host.has_tool(self.binary):
            return Probe.UNKNOWN
        if not host.services.is_enabled(self.service):
            return Probe.UNSATISFIED
        if self.start and not host.services.is_active(self.service):
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('systemctl')
        if self.binary:
            host.require_tool(self.binary)
        if not host.services.is_enabled(self.service):
            logger.info(f"[{self.name}] Enabling {self.service}...")
            host.services.enable(self.service)
        if self.start and not host.services.is_active(self.service):
            logger.info(f"[{self.name}] Starting {self.service}...")
            host.services.start(self.service)
            return f"{self.service} enabled and started"
        return f"{self.service} enabled" + ("" if self.start else " (not started)")
