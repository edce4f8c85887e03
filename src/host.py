"""Host capabilities consumed by actions.

Actions never call subprocess or touch OS handles directly. They go through a
Host, which wraps command execution (with a bounded timeout) and a filesystem
rooted at a configurable prefix, and exposes one capability object per
resource category:

- services: systemd units (systemctl)
- network: links, routes, rules, IPVS (ip, ipvsadm)
- firewall: iptables/ip6tables, nftables, firewalld
- kernel: modules, swap, sysctl
- containers: containerd via ctr

Query methods raise ProbeError subclasses when the answer cannot be
determined. Mutating methods raise ApplyError subclasses.
"""

import errno
import logging
import re
import shutil
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Optional

from common import (
    NOT_FOUND_RC,
    TIMEOUT_RC,
    ExternalToolMissing,
    PermissionDenied,
    ProbeFailed,
    ProbeTimeout,
    ResourceBusy,
    UnknownApplyError,
    classify_failure,
    command_exists,
    run_command,
)

logger = logging.getLogger(__name__)

Runner = Callable[..., tuple[int, str, str]]


class ToolMissing(ProbeFailed):
    """Probe could not run because its binary is absent."""

    def __init__(self, tool: str):
        super().__init__(f"{tool} not found")
        self.tool = tool


@dataclass
class Host:
    """Access to the local host, scoped to a command timeout.

    Attributes:
        root: Filesystem prefix; absolute paths are resolved beneath it
        runner: Callable with run_command's signature
        which: Callable reporting whether a binary is installed
        timeout: Timeout in seconds for every command run through this Host
        deadline: clock() value by which all commands must have finished, if set
        clock: Monotonic time source for the deadline
    """
    root: Path = field(default_factory=lambda: Path('/'))
    runner: Runner = run_command
    which: Callable[[str], bool] = command_exists
    timeout: float = 600.0
    deadline: Optional[float] = None
    clock: Callable[[], float] = time.monotonic

    def __post_init__(self):
        if isinstance(self.root, str):
            self.root = Path(self.root)

    def scoped(self, timeout: float) -> 'Host':
        """Return a copy of this Host with a different command timeout."""
        return replace(self, timeout=timeout, deadline=None)

    def bounded(self, seconds: float) -> 'Host':
        """Return a copy whose commands must finish within seconds in total."""
        return replace(self, timeout=seconds, deadline=self.clock() + seconds)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @property
    def services(self) -> 'Services':
        return Services(self)

    @property
    def network(self) -> 'Network':
        return Network(self)

    @property
    def firewall(self) -> 'Firewall':
        return Firewall(self)

    @property
    def kernel(self) -> 'Kernel':
        return Kernel(self)

    @property
    def containers(self) -> 'Containers':
        return Containers(self)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def has_tool(self, name: str) -> bool:
        return self.which(name)

    def query(self, cmd: list[str], ok: Optional[Iterable[int]] = (0,)) -> tuple[int, str]:
        """Run a read-only command for a probe.

        Args:
            cmd: Command and arguments
            ok: Acceptable return codes; None accepts any completed run

        Returns:
            (returncode, stdout) tuple

        Raises:
            ProbeTimeout: Command exceeded the timeout
            ToolMissing: Binary not installed
            ProbeFailed: Return code not in ok
        """
        rc, out, err = self.runner(cmd, timeout=self._command_timeout(cmd))
        if rc == TIMEOUT_RC and 'timed out' in err:
            raise ProbeTimeout(f"{' '.join(cmd)}: {err}")
        if rc == NOT_FOUND_RC and 'not found' in err:
            raise ToolMissing(cmd[0])
        if ok is not None and rc not in tuple(ok):
            raise ProbeFailed(f"{' '.join(cmd)} exited {rc}: {err.strip()}")
        return rc, out

    def execute(self, cmd: list[str], ignore: Iterable[str] = ()) -> str:
        """Run a mutating command.

        Args:
            cmd: Command and arguments
            ignore: stderr fragments meaning the change is already in place

        Returns:
            stdout of the command

        Raises:
            ApplyError: Classified failure
        """
        rc, out, err = self.runner(cmd, timeout=self._command_timeout(cmd))
        if rc == 0:
            return out
        lowered = err.lower()
        if rc != NOT_FOUND_RC and any(marker.lower() in lowered for marker in ignore):
            logger.debug(f"Ignoring expected failure of {' '.join(cmd)}: {err.strip()}")
            return out
        raise classify_failure(cmd, rc, err)

    def _command_timeout(self, cmd: list[str]) -> float:
        if self.deadline is None:
            return self.timeout
        remaining = self.deadline - self.clock()
        if remaining <= 0:
            raise ProbeTimeout(f"{' '.join(cmd)}: not started, {self.timeout}s budget used up")
        return min(self.timeout, remaining)

    def require_tool(self, name: str) -> None:
        """Raise ExternalToolMissing unless name is installed."""
        if not self.has_tool(name):
            raise ExternalToolMissing(f"{name} not found, skipping")

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    def path(self, path: str) -> Path:
        """Resolve an absolute host path beneath root."""
        return self.root / path.lstrip('/')

    def expand(self, pattern: str) -> list[Path]:
        """Expand a host path that may contain glob characters.

        Returns only paths that currently exist, in sorted order.
        """
        if not any(ch in pattern for ch in '*?['):
            candidate = self.path(pattern)
            return [candidate] if candidate.exists() or candidate.is_symlink() else []
        return sorted(self.root.glob(pattern.lstrip('/')))

    def read_text(self, path: str) -> Optional[str]:
        """Read a host file, returning None when it does not exist."""
        target = self.path(path)
        try:
            return target.read_text(encoding='utf-8')
        except FileNotFoundError:
            return None

    def remove(self, target: Path) -> bool:
        """Remove a file or directory tree. Returns False if already absent."""
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise _os_error(e, f"remove {target}") from e

    def write_text(self, path: str, content: str) -> None:
        """Write a host file, creating parent directories."""
        target = self.path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding='utf-8')
        except OSError as e:
            raise _os_error(e, f"write {target}") from e


def _os_error(e: OSError, what: str):
    """Map an OSError to the ApplyError it represents."""
    if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
        return PermissionDenied(f"Cannot {what}: {e.strerror}")
    if e.errno in (errno.EBUSY, errno.ETXTBSY):
        return ResourceBusy(f"Cannot {what}: {e.strerror}")
    return UnknownApplyError(f"Cannot {what}: {e}")


# ----------------------------------------------------------------------
# Service manager
# ----------------------------------------------------------------------

_UNIT_ABSENT = ('not loaded', 'does not exist', 'not found', 'no such file')


class Services:
    """systemd units via systemctl."""

    def __init__(self, host: Host):
        self.host = host

    def is_active(self, unit: str) -> bool:
        _, out = self.host.query(['systemctl', 'is-active', unit], ok=None)
        return out.strip() == 'active'

    def is_enabled(self, unit: str) -> bool:
        _, out = self.host.query(['systemctl', 'is-enabled', unit], ok=None)
        return out.strip() in ('enabled', 'enabled-runtime')

    def stop(self, unit: str) -> None:
        self.host.execute(['systemctl', 'stop', unit], ignore=_UNIT_ABSENT)

    def start(self, unit: str) -> None:
        self.host.execute(['systemctl', 'start', unit])

    def disable(self, unit: str) -> None:
        self.host.execute(['systemctl', 'disable', unit], ignore=_UNIT_ABSENT)

    def enable(self, unit: str) -> None:
        self.host.execute(['systemctl', 'enable', unit])


# ----------------------------------------------------------------------
# Network
# ----------------------------------------------------------------------

# "3: cali1a2b@if4: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1440 qdisc ..."
_LINK_RE = re.compile(r'^\d+:\s+([^:@\s]+)(?:@\S+?)?:\s+<([^>]*)>.*?\bmtu\s+(\d+)')
# "32765: from all lookup 100"
_RULE_RE = re.compile(r'^(\d+):\s+(.*)$')


@dataclass(frozen=True)
class Link:
    """A network interface as reported by `ip -o link show`."""
    name: str
    flags: frozenset
    mtu: int

    @property
    def is_loopback(self) -> bool:
        return 'LOOPBACK' in self.flags


def parse_links(output: str) -> list[Link]:
    """Parse `ip -o link show` output."""
    links = []
    for line in output.splitlines():
        match = _LINK_RE.match(line.strip())
        if match:
            name, flags, mtu = match.groups()
            links.append(Link(name=name, flags=frozenset(flags.split(',')), mtu=int(mtu)))
    return links


def parse_rules(output: str) -> list[tuple[int, str]]:
    """Parse `ip rule list` output into (priority, selector) pairs."""
    rules = []
    for line in output.splitlines():
        match = _RULE_RE.match(line.strip())
        if match:
            rules.append((int(match.group(1)), match.group(2).strip()))
    return rules


class Network:
    """Links, routes, policy rules and IPVS tables."""

    def __init__(self, host: Host):
        self.host = host

    def links(self) -> list[Link]:
        _, out = self.host.query(['ip', '-o', 'link', 'show'])
        return parse_links(out)

    def delete_link(self, name: str) -> None:
        self.host.execute(['ip', 'link', 'set', name, 'down'], ignore=('cannot find device',))
        self.host.execute(['ip', 'link', 'delete', name], ignore=('cannot find device',))

    def set_mtu(self, name: str, mtu: int) -> None:
        self.host.execute(['ip', 'link', 'set', name, 'mtu', str(mtu)])

    def routes(self, table: Optional[str] = None) -> list[str]:
        cmd = ['ip', 'route', 'show']
        if table is not None:
            cmd += ['table', str(table)]
        _, out = self.host.query(cmd)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def flush_table(self, table: str) -> None:
        self.host.execute(['ip', 'route', 'flush', 'table', str(table)])

    def delete_route(self, route: str) -> None:
        self.host.execute(['ip', 'route', 'del', *route.split()], ignore=('no such process',))

    def rules(self) -> list[tuple[int, str]]:
        _, out = self.host.query(['ip', 'rule', 'list'])
        return parse_rules(out)

    def delete_rule(self, priority: int) -> None:
        self.host.execute(['ip', 'rule', 'del', 'pref', str(priority)], ignore=('no such file',))

    def ipvs_services(self) -> list[str]:
        _, out = self.host.query(['ipvsadm', '-Ln'])
        return [
            line.strip() for line in out.splitlines()
            if line.strip().split(' ', 1)[0] in ('TCP', 'UDP', 'SCTP', 'FWM')
        ]

    def clear_ipvs(self) -> None:
        self.host.execute(['ipvsadm', '--clear'])


# ----------------------------------------------------------------------
# Firewall
# ----------------------------------------------------------------------

BUILTIN_CHAINS = frozenset({'INPUT', 'FORWARD', 'OUTPUT', 'PREROUTING', 'POSTROUTING'})
_TABLE_ABSENT = ("can't initialize", 'table does not exist', 'does not exist')


def iptables_is_clean(dump: str) -> bool:
    """True when an iptables-save dump has no rules, custom chains or DROP policies."""
    for line in dump.splitlines():
        line = line.strip()
        if line.startswith('-A '):
            return False
        if line.startswith(':'):
            parts = line[1:].split()
            if not parts:
                continue
            chain = parts[0]
            policy = parts[1] if len(parts) > 1 else '-'
            if chain not in BUILTIN_CHAINS:
                return False
            if policy not in ('ACCEPT', '-'):
                return False
    return True


class Firewall:
    """iptables, nftables and firewalld."""

    def __init__(self, host: Host):
        self.host = host

    def iptables_dump(self, binary: str = 'iptables') -> str:
        _, out = self.host.query([f'{binary}-save'])
        return out

    def flush_iptables(self, binary: str, tables: Iterable[str]) -> None:
        """Flush rules, delete custom chains, zero counters, reset policies."""
        for table in tables:
            for flag in ('-F', '-X', '-Z'):
                self.host.execute([binary, '-t', table, flag], ignore=_TABLE_ABSENT)
        for chain in ('INPUT', 'FORWARD', 'OUTPUT'):
            self.host.execute([binary, '-P', chain, 'ACCEPT'])

    def nft_tables(self) -> list[tuple[str, str]]:
        """(family, name) of every nftables table, e.g. ('inet', 'firewalld')."""
        _, out = self.host.query(['nft', 'list', 'tables'])
        tables = []
        for line in out.splitlines():
            parts = line.split()
            if len(parts) == 3 and parts[0] == 'table':
                tables.append((parts[1], parts[2]))
        return tables

    def delete_nft_table(self, family: str, name: str) -> None:
        self.host.execute(['nft', 'delete', 'table', family, name], ignore=('no such file',))

    def flush_nft(self) -> None:
        self.host.execute(['nft', 'flush', 'ruleset'])

    def _firewall_cmd(self, *args: str) -> list[str]:
        _, out = self.host.query(['firewall-cmd', *args], ok=None)
        return out.split()

    def default_zone(self) -> str:
        zone = self._firewall_cmd('--get-default-zone')
        return zone[0] if zone else 'public'

    def list_ports(self, zone: str) -> list[str]:
        return self._firewall_cmd(f'--zone={zone}', '--list-ports')

    def list_sources(self, zone: str) -> list[str]:
        return self._firewall_cmd(f'--zone={zone}', '--list-sources')

    def list_rich_rules(self, zone: str) -> list[str]:
        _, out = self.host.query(['firewall-cmd', f'--zone={zone}', '--list-rich-rules'], ok=None)
        return [line.strip() for line in out.splitlines() if line.strip()]

    def has_masquerade(self, zone: str) -> bool:
        _, out = self.host.query(['firewall-cmd', f'--zone={zone}', '--query-masquerade'], ok=None)
        return out.strip() == 'yes'

    def remove(self, zone: str, option: str, value: Optional[str] = None) -> None:
        """Remove a permanent zone setting, e.g. remove(zone, 'port', '6443/tcp')."""
        flag = f'--remove-{option}' if value is None else f'--remove-{option}={value}'
        self.host.execute(
            ['firewall-cmd', f'--zone={zone}', flag, '--permanent'],
            ignore=('not_enabled', 'not enabled'),
        )

    def reload(self) -> None:
        self.host.execute(['firewall-cmd', '--reload'])


# ----------------------------------------------------------------------
# Kernel
# ----------------------------------------------------------------------

class Kernel:
    """Kernel modules, swap and sysctl parameters."""

    def __init__(self, host: Host):
        self.host = host

    def loaded_modules(self) -> set[str]:
        content = self.host.read_text('/proc/modules')
        if content is None:
            raise ProbeFailed("/proc/modules not readable")
        return {line.split()[0] for line in content.splitlines() if line.strip()}

    def load_module(self, name: str) -> None:
        self.host.execute(['modprobe', name])

    def unload_module(self, name: str) -> None:
        self.host.execute(['modprobe', '-r', name], ignore=('not found in directory', 'is not currently loaded'))

    def active_swaps(self) -> list[str]:
        content = self.host.read_text('/proc/swaps')
        if content is None:
            raise ProbeFailed("/proc/swaps not readable")
        # First line is the column header
        return [line.split()[0] for line in content.splitlines()[1:] if line.strip()]

    def swapoff_all(self) -> None:
        self.host.execute(['swapoff', '-a'])

    def sysctl_get(self, key: str) -> Optional[str]:
        """Current value of a sysctl, or None when the key does not exist."""
        rc, out = self.host.query(['sysctl', '-n', key], ok=None)
        if rc != 0:
            return None
        return ' '.join(out.split())

    def sysctl_set(self, key: str, value: str) -> None:
        self.host.execute(['sysctl', '-w', f'{key}={value}'])


# ----------------------------------------------------------------------
# Container runtime
# ----------------------------------------------------------------------

class Containers:
    """containerd resources in one namespace via ctr."""

    def __init__(self, host: Host, namespace: str = 'k8s.io'):
        self.host = host
        self.namespace = namespace

    def in_namespace(self, namespace: str) -> 'Containers':
        return Containers(self.host, namespace)

    def _ctr(self, *args: str) -> list[str]:
        return ['ctr', '-n', self.namespace, *args]

    def _ids(self, *args: str) -> list[str]:
        _, out = self.host.query(self._ctr(*args))
        return [line.strip() for line in out.splitlines() if line.strip()]

    def containers(self) -> list[str]:
        return self._ids('containers', 'list', '-q')

    def tasks(self) -> list[str]:
        return self._ids('tasks', 'list', '-q')

    def images(self) -> list[str]:
        return self._ids('images', 'list', '-q')

    def snapshots(self) -> list[str]:
        _, out = self.host.query(self._ctr('snapshots', 'list'))
        # Skip header row
        return [line.split()[0] for line in out.splitlines()[1:] if line.strip()]

    def kill_task(self, task_id: str) -> None:
        self.host.execute(self._ctr('tasks', 'kill', '--signal', 'SIGKILL', task_id),
                          ignore=('not found', 'process already finished'))

    def delete_task(self, task_id: str) -> None:
        self.host.execute(self._ctr('tasks', 'delete', '--force', task_id), ignore=('not found',))

    def delete_container(self, container_id: str) -> None:
        self.host.execute(self._ctr('containers', 'delete', container_id), ignore=('not found',))

    def remove_snapshot(self, key: str) -> None:
        self.host.execute(self._ctr('snapshots', 'remove', key), ignore=('not found', 'does not exist'))
