"""Firewall actions: iptables, nftables and firewalld."""

import logging
from dataclasses import dataclass

from actions.base import BaseAction
from common import Probe
from host import Host, iptables_is_clean

logger = logging.getLogger(__name__)


def _firewalld_running(host: Host) -> bool:
    return host.has_tool('systemctl') and host.services.is_active('firewalld')


@dataclass(frozen=True)
class FlushIptablesAction(BaseAction):
    """Flush iptables and ip6tables: rules, custom chains, counters, policies."""
    tables: tuple = ('filter', 'nat', 'mangle', 'raw')
    binaries: tuple = ('iptables', 'ip6tables')
    category: str = 'firewall'

    tools = ('iptables', 'ip6tables')

    def _dirty(self, host: Host) -> list[str]:
        return [
            binary for binary in self.binaries
            if host.has_tool(binary) and not iptables_is_clean(host.firewall.iptables_dump(binary))
        ]

    def check(self, host: Host) -> Probe:
        if not any(host.has_tool(b) for b in self.binaries):
            return Probe.UNKNOWN
        return Probe.UNSATISFIED if self._dirty(host) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool(self.binaries[0])
        flushed = []
        for binary in self.binaries:
            if not host.has_tool(binary):
                logger.warning(f"[{self.name}] {binary} not found, skipping")
                continue
            logger.info(f"[{self.name}] Flushing {binary} (all tables)...")
            host.firewall.flush_iptables(binary, self.tables)
            flushed.append(binary)
        return f"Flushed {', '.join(flushed)}"


@dataclass(frozen=True)
class FlushNftablesAction(BaseAction):
    """Remove every nftables table.

    While firewalld is running its own tables are kept; reset-firewalld
    reloads them from the permanent configuration instead.
    """
    firewalld_tables: tuple = ('firewalld', 'firewalld_policy_drop')
    category: str = 'firewall'

    tools = ('nft',)

    def _stale_tables(self, host: Host, firewalld: bool) -> list[tuple[str, str]]:
        tables = host.firewall.nft_tables()
        if firewalld:
            tables = [t for t in tables if t[1] not in self.firewalld_tables]
        return tables

    def check(self, host: Host) -> Probe:
        stale = self._stale_tables(host, _firewalld_running(host))
        if stale:
            logger.debug(f"[{self.name}] Tables: {', '.join(f'{f} {n}' for f, n in stale)}")
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('nft')
        if not _firewalld_running(host):
            logger.info(f"[{self.name}] Flushing nftables ruleset...")
            host.firewall.flush_nft()
            return "nftables flushed"
        stale = self._stale_tables(host, firewalld=True)
        for family, name in stale:
            logger.info(f"[{self.name}] Deleting table {family} {name} (firewalld tables kept)")
            host.firewall.delete_nft_table(family, name)
        return f"Deleted {len(stale)} nftables table(s)"


@dataclass(frozen=True)
class ResetFirewalldAction(BaseAction):
    """Remove ports, rich rules, masquerade and trusted sources added for Kubernetes.

    Only acts while firewalld is running; a stopped firewalld is left alone.
    """
    trusted_zone: str = 'trusted'
    category: str = 'firewall'

    tools = ('firewall-cmd',)

    def _leftovers(self, host: Host) -> dict:
        fw = host.firewall
        zone = fw.default_zone()
        return {
            'zone': zone,
            'ports': fw.list_ports(zone),
            'rich_rules': fw.list_rich_rules(zone),
            'masquerade': fw.has_masquerade(zone),
            'sources': fw.list_sources(self.trusted_zone),
        }

    @staticmethod
    def _is_clean(state: dict) -> bool:
        return not (state['ports'] or state['rich_rules'] or state['masquerade'] or state['sources'])

    def check(self, host: Host) -> Probe:
        if not host.services.is_active('firewalld'):
            return Probe.SATISFIED
        return Probe.SATISFIED if self._is_clean(self._leftovers(host)) else Probe.UNSATISFIED

    def apply(self, host: Host) -> str:
        if not host.services.is_active('firewalld'):
            logger.warning(f"[{self.name}] firewalld not running, skipping")
            return "firewalld not running"
        host.require_tool('firewall-cmd')

        fw = host.firewall
        state = self._leftovers(host)
        zone = state['zone']
        logger.info(f"[{self.name}] Active zone: {zone}")
        for port in state['ports']:
            fw.remove(zone, 'port', port)
        for rule in state['rich_rules']:
            fw.remove(zone, 'rich-rule', rule)
        if state['masquerade']:
            fw.remove(zone, 'masquerade')
        for source in state['sources']:
            fw.remove(self.trusted_zone, 'source', source)
        fw.reload()
        return (
            f"firewalld reset: {len(state['ports'])} port(s), "
            f"{len(state['rich_rules'])} rich rule(s), {len(state['sources'])} trusted source(s)"
        )
