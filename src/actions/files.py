"""Filesystem actions: remove state, write config files, fstab edits."""

import logging
from dataclasses import dataclass

from actions.base import BaseAction
from common import ApplyError, Probe
from host import Host

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemovePathsAction(BaseAction):
    """Remove files and directory trees. Paths may contain glob patterns.

    Patterns are expanded fresh on every check and apply.
    """
    paths: tuple = ()
    category: str = 'filesystem'

    def _existing(self, host: Host) -> list:
        found = []
        for pattern in self.paths:
            found.extend(host.expand(pattern))
        return found

    def check(self, host: Host) -> Probe:
        existing = self._existing(host)
        if existing:
            logger.debug(f"[{self.name}] Present: {', '.join(str(p) for p in existing)}")
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        removed = 0
        errors: list[ApplyError] = []
        for target in self._existing(host):
            logger.info(f"[{self.name}] Removing {target}")
            try:
                if host.remove(target):
                    removed += 1
            except ApplyError as e:
                logger.warning(f"[{self.name}] Could not fully remove {target}: {e}")
                errors.append(e)
        if errors:
            # Report the first failure's kind, mention the rest
            first = errors[0]
            raise type(first)(f"{first} ({len(errors)} path(s) not removed)")
        return f"Removed {removed} path(s)"


@dataclass(frozen=True)
class WriteFileAction(BaseAction):
    """Ensure a file has exactly the given content."""
    path: str = ''
    content: str = ''
    category: str = 'filesystem'
    reversible: bool = True

    def check(self, host: Host) -> Probe:
        return Probe.SATISFIED if host.read_text(self.path) == self.content else Probe.UNSATISFIED

    def apply(self, host: Host) -> str:
        logger.info(f"[{self.name}] Writing {self.path}")
        host.write_text(self.path, self.content)
        return f"Wrote {self.path}"


def _is_active_swap_entry(line: str) -> bool:
    fields = line.split()
    return (
        len(fields) >= 3
        and not fields[0].startswith('#')
        and fields[2] == 'swap'
    )


@dataclass(frozen=True)
class DisableSwapInFstabAction(BaseAction):
    """Comment out swap entries in fstab so swap stays off after reboot."""
    fstab: str = '/etc/fstab'
    category: str = 'filesystem'
    reversible: bool = True

    def check(self, host: Host) -> Probe:
        content = host.read_text(self.fstab)
        if content is None:
            return Probe.SATISFIED
        if any(_is_active_swap_entry(line) for line in content.splitlines()):
            return Probe.UNSATISFIED
        return Probe.SATISFIED

    def apply(self, host: Host) -> str:
        content = host.read_text(self.fstab)
        if content is None:
            return f"{self.fstab} not present"
        lines = []
        changed = 0
        for line in content.splitlines():
            if _is_active_swap_entry(line):
                lines.append(f'# {line}')
                changed += 1
            else:
                lines.append(line)
        trailing = '\n' if content.endswith('\n') else ''
        host.write_text(self.fstab, '\n'.join(lines) + trailing)
        logger.info(f"[{self.name}] Commented out {changed} swap entr{'y' if changed == 1 else 'ies'}")
        return f"Commented out {changed} swap entries in {self.fstab}"
