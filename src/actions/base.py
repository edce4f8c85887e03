"""Action protocol and base dataclass.

An action is one idempotent change to one resource category of the host.
check() reads current state and never mutates; apply() makes the change and
must tolerate being called when the change is already in place.
"""

from dataclasses import dataclass
from typing import Callable, ClassVar, Optional, Protocol, runtime_checkable

from common import Probe, Target
from host import Host

RESET = frozenset({Target.RESET})
JOIN = frozenset({Target.JOIN})
BOTH = frozenset({Target.JOIN, Target.RESET})

CATEGORIES = frozenset({
    'cluster', 'service', 'filesystem', 'network', 'firewall', 'kernel', 'container', 'host',
})


@runtime_checkable
class NodeAction(Protocol):
    """Protocol for anything the registry can order and the reconciler can run.

    Attributes:
        name: Unique identifier
        targets: Target states this action belongs to
        requires: Names of actions that must run first
        category: Resource category the action is confined to
        reversible: Whether the change can be undone by the opposite target
    """
    name: str
    description: str
    targets: frozenset
    requires: tuple
    category: str
    reversible: bool

    def check(self, host: Host) -> Probe:
        """Return whether the desired state already holds."""
        ...

    def apply(self, host: Host) -> str:
        """Make the change. Returns a message; raises ApplyError on failure."""
        ...


@dataclass(frozen=True)
class BaseAction:
    """Common fields for concrete actions.

    Subclasses declare the binaries they call in `tools` so preflight can
    report what is missing before a run.
    """
    name: str
    description: str = ''
    requires: tuple = ()
    targets: frozenset = RESET
    category: str = 'host'
    reversible: bool = False

    tools: ClassVar[tuple[str, ...]] = ()

    def check(self, host: Host) -> Probe:
        return Probe.UNKNOWN

    def apply(self, host: Host) -> str:
        raise NotImplementedError(f"{type(self).__name__}.apply")


@dataclass(frozen=True)
class CallableAction(BaseAction):
    """Action built from plain check/apply functions.

    Used for ad-hoc registries and in tests. check_fn defaults to always
    Unsatisfied so apply_fn runs on every pass.
    """
    check_fn: Optional[Callable[[Host], Probe]] = None
    apply_fn: Optional[Callable[[Host], str]] = None

    def check(self, host: Host) -> Probe:
        if self.check_fn is None:
            return Probe.UNSATISFIED
        return self.check_fn(host)

    def apply(self, host: Host) -> str:
        if self.apply_fn is None:
            return ''
        return self.apply_fn(host) or ''
