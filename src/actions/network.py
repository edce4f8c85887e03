"""Network actions: CNI interfaces, routes, policy rules, MTU, IPVS.

Every probe re-reads live state; interface names and routes are matched at
call time and never cached between check and apply.
"""

import fnmatch
import logging
import re
from dataclasses import dataclass

from actions.base import BaseAction
from common import Probe
from host import Host, Link

logger = logging.getLogger(__name__)

# Rules installed by the kernel itself; never removed
_DEFAULT_RULE_TABLES = ('local', 'main', 'default', '253', '254', '255')


@dataclass(frozen=True)
class RemoveInterfacesAction(BaseAction):
    """Delete virtual interfaces created by CNI plugins and kube-proxy."""
    patterns: tuple = ()
    category: str = 'network'

    tools = ('ip',)

    def matching(self, host: Host) -> list[str]:
        """Names of live interfaces matching any pattern."""
        return [
            link.name for link in host.network.links()
            if any(fnmatch.fnmatchcase(link.name, p) for p in self.patterns)
        ]

    def check(self, host: Host) -> Probe:
        names = self.matching(host)
        if names:
            logger.debug(f"[{self.name}] Matching interfaces: {', '.join(names)}")
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ip')
        names = self.matching(host)
        for name in names:
            logger.info(f"[{self.name}] Removing interface: {name}")
            host.network.delete_link(name)
        return f"Removed {len(names)} interface(s)"


@dataclass(frozen=True)
class FlushRoutesAction(BaseAction):
    """Flush CNI routing tables and delete pod/service subnet routes.

    Attributes:
        tables: Routing tables flushed entirely
        patterns: Regexes matched against `ip route show` lines of the main table
    """
    tables: tuple = ()
    patterns: tuple = ()
    category: str = 'network'

    tools = ('ip',)

    def _stale_routes(self, host: Host) -> list[str]:
        compiled = [re.compile(p) for p in self.patterns]
        return [r for r in host.network.routes() if any(c.search(r) for c in compiled)]

    def _dirty_tables(self, host: Host) -> list[str]:
        return [str(t) for t in self.tables if host.network.routes(table=str(t))]

    def check(self, host: Host) -> Probe:
        if self._dirty_tables(host) or self._stale_routes(host):
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ip')
        tables = self._dirty_tables(host)
        for table in tables:
            logger.info(f"[{self.name}] Flushing route table {table}")
            host.network.flush_table(table)
        routes = self._stale_routes(host)
        for route in routes:
            logger.info(f"[{self.name}] Removing route: {route}")
            host.network.delete_route(route)
        return f"Flushed {len(tables)} table(s), removed {len(routes)} route(s)"


def _is_default_rule(priority: int, selector: str) -> bool:
    if priority in (0, 32766, 32767):
        return True
    lookup = selector.split('lookup', 1)[1].split()[0] if 'lookup' in selector else ''
    return lookup in _DEFAULT_RULE_TABLES


@dataclass(frozen=True)
class FlushIpRulesAction(BaseAction):
    """Delete policy routing rules added by kube-proxy IPVS or CNIs."""
    category: str = 'network'

    tools = ('ip',)

    def _extra_rules(self, host: Host) -> list[tuple[int, str]]:
        return [(prio, sel) for prio, sel in host.network.rules() if not _is_default_rule(prio, sel)]

    def check(self, host: Host) -> Probe:
        return Probe.UNSATISFIED if self._extra_rules(host) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ip')
        rules = self._extra_rules(host)
        for priority, selector in rules:
            logger.info(f"[{self.name}] Removing rule {priority}: {selector}")
            host.network.delete_rule(priority)
        return f"Removed {len(rules)} rule(s)"


@dataclass(frozen=True)
class ResetMtuAction(BaseAction):
    """Reset the MTU of physical interfaces that a CNI left changed."""
    mtu: int = 1500
    exclude_prefixes: tuple = ()
    category: str = 'network'
    reversible: bool = True

    tools = ('ip',)

    def _is_physical(self, link: Link) -> bool:
        return not link.is_loopback and not link.name.startswith(tuple(self.exclude_prefixes))

    def _mismatched(self, host: Host) -> list[Link]:
        return [
            link for link in host.network.links()
            if self._is_physical(link) and link.mtu != self.mtu
        ]

    def check(self, host: Host) -> Probe:
        return Probe.UNSATISFIED if self._mismatched(host) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ip')
        links = self._mismatched(host)
        for link in links:
            logger.info(f"[{self.name}] Resetting MTU on {link.name}: {link.mtu} -> {self.mtu}")
            host.network.set_mtu(link.name, self.mtu)
        return f"Reset MTU on {len(links)} interface(s)"


@dataclass(frozen=True)
class ClearIpvsAction(BaseAction):
    """Clear IPVS virtual services left by kube-proxy in IPVS mode."""
    category: str = 'network'

    tools = ('ipvsadm',)

    def check(self, host: Host) -> Probe:
        return Probe.UNSATISFIED if host.network.ipvs_services() else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ipvsadm')
        logger.info(f"[{self.name}] Clearing IPVS tables...")
        host.network.clear_ipvs()
        return "IPVS cleared"
