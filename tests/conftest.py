"""Shared pytest fixtures for node-reconciler tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from host import Host  # noqa: E402


class FakeRunner:
    """Scripted stand-in for common.run_command.

    Responses are keyed by command prefix; the longest matching prefix wins.
    A prefix scripted several times answers in order and then keeps
    returning its last response. Unscripted commands succeed with no output.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.timeouts: list[float] = []
        self._responses: dict[tuple, list] = {}

    def on(self, *prefix, rc=0, out='', err=''):
        self._responses.setdefault(tuple(prefix), []).append((rc, out, err))
        return self

    def __call__(self, cmd, timeout=None, **kwargs):
        self.calls.append(list(cmd))
        self.timeouts.append(timeout)
        best = None
        for prefix in self._responses:
            if tuple(cmd[:len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        if best is None:
            return 0, '', ''
        queue = self._responses[best]
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def ran(self, *prefix) -> bool:
        return bool(self.commands(*prefix))

    def commands(self, *prefix) -> list[list[str]]:
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class FakeTools:
    """Tool lookup where everything is installed unless marked missing."""

    def __init__(self):
        self.missing: set[str] = set()

    def __call__(self, name: str) -> bool:
        return name not in self.missing


def write_host_file(root: Path, path: str, content: str = '') -> Path:
    """Create a file beneath a fake host root."""
    target = root / path.lstrip('/')
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content)
    return target


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def tools():
    return FakeTools()


@pytest.fixture
def host(tmp_path, runner, tools):
    """Host rooted at tmp_path with /proc files for an idle node."""
    write_host_file(tmp_path, '/proc/modules', '')
    write_host_file(tmp_path, '/proc/swaps', 'Filename\t\t\t\tType\t\tSize\t\tUsed\t\tPriority\n')
    return Host(root=tmp_path, runner=runner, which=tools, timeout=5.0)
