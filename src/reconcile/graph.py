"""Action registry and plan construction.

Actions are registered once at startup. build_plan() orders the actions
tagged for a target so that every action follows its declared
predecessors, breaking ties by declaration order.
"""

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable, Iterator, Union

from actions.base import CATEGORIES, NodeAction
from common import Target

logger = logging.getLogger(__name__)


class PlanningError(Exception):
    """Registry or plan construction failed. Raised before any host change."""


class DuplicateActionError(PlanningError):
    """An action with the same name is already registered."""


class UnknownDependencyError(PlanningError):
    """An action requires a name that is not registered."""


class CycleDetectedError(PlanningError):
    """Dependency edges form a cycle.

    Attributes:
        cycle: Action names along the cycle, first name repeated at the end
    """

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' -> '.join(cycle)}")


def _as_target(target: Union[Target, str]) -> Target:
    try:
        return Target(target)
    except ValueError:
        valid = ', '.join(t.value for t in Target)
        raise PlanningError(f"Unknown target '{target}'. Valid targets: {valid}") from None


@dataclass(frozen=True)
class Plan:
    """Ordered actions for one target."""
    target: Target
    actions: tuple

    @property
    def names(self) -> list[str]:
        return [a.name for a in self.actions]

    def __iter__(self) -> Iterator[NodeAction]:
        return iter(self.actions)

    def __len__(self) -> int:
        return len(self.actions)


class ActionRegistry:
    """Process-wide set of actions, read-only once planning starts."""

    def __init__(self, actions: Iterable[NodeAction] = ()):
        self._actions: dict[str, NodeAction] = {}
        actions = list(actions)
        if actions:
            self.register_all(actions)

    def __contains__(self, name: str) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def names(self) -> list[str]:
        """Action names in declaration order."""
        return list(self._actions)

    def get(self, name: str) -> NodeAction:
        """Get an action by name.

        Raises:
            KeyError: If name not registered
        """
        return self._actions[name]

    def _validate(self, action: NodeAction) -> None:
        if not action.name:
            raise PlanningError("Action name must not be empty")
        if action.name in self._actions:
            raise DuplicateActionError(f"Duplicate action name: '{action.name}'")
        if not action.targets:
            raise PlanningError(f"Action '{action.name}' has no targets")
        for target in action.targets:
            _as_target(target)
        if action.category not in CATEGORIES:
            raise PlanningError(
                f"Action '{action.name}' has unknown category '{action.category}'"
            )

    def register(self, action: NodeAction) -> None:
        """Register one action whose predecessors are already registered.

        Raises:
            DuplicateActionError: Name already registered
            UnknownDependencyError: A predecessor is not registered yet
        """
        self._validate(action)
        for dep in action.requires:
            if dep not in self._actions:
                raise UnknownDependencyError(
                    f"Action '{action.name}' requires unknown action '{dep}'"
                )
        self._actions[action.name] = action
        logger.debug(f"Registered action '{action.name}' ({action.category})")

    def register_all(self, actions: Iterable[NodeAction]) -> None:
        """Register a batch, resolving predecessor names after the whole batch.

        Predecessors may be declared later in the batch. On any error nothing
        from the batch is registered.

        Raises:
            DuplicateActionError: Name already registered or repeated in batch
            UnknownDependencyError: A predecessor is in neither the registry nor the batch
        """
        batch = list(actions)
        staged = dict(self._actions)
        for action in batch:
            if action.name in staged:
                raise DuplicateActionError(f"Duplicate action name: '{action.name}'")
            self._validate(action)
            staged[action.name] = action

        for action in batch:
            for dep in action.requires:
                if dep not in staged:
                    raise UnknownDependencyError(
                        f"Action '{action.name}' requires unknown action '{dep}'"
                    )

        self._actions = staged
        logger.debug(f"Registered {len(batch)} action(s)")

    def actions_for(self, target: Union[Target, str]) -> list[NodeAction]:
        """Actions tagged for target, in declaration order."""
        target = _as_target(target)
        return [a for a in self._actions.values() if target in a.targets]

    def build_plan(self, target: Union[Target, str]) -> Plan:
        """Topologically order the actions tagged for target.

        Kahn's algorithm over the target's subgraph. Edges to actions outside
        the subgraph are ignored. Among ready actions the earliest declared
        is taken first, so the order is deterministic.

        Raises:
            PlanningError: Unknown target
            CycleDetectedError: The subgraph contains a cycle
        """
        target = _as_target(target)
        members = self.actions_for(target)
        index = {a.name: i for i, a in enumerate(members)}

        indegree = {a.name: 0 for a in members}
        successors: dict[str, list[str]] = {a.name: [] for a in members}
        for action in members:
            for dep in dict.fromkeys(action.requires):
                if dep in index:
                    indegree[action.name] += 1
                    successors[dep].append(action.name)

        ready = [index[name] for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        ordered: list[NodeAction] = []

        while ready:
            action = members[heapq.heappop(ready)]
            ordered.append(action)
            for succ in successors[action.name]:
                indegree[succ] -= 1
                if indegree[succ] == 0:
                    heapq.heappush(ready, index[succ])

        if len(ordered) < len(members):
            blocked = [a.name for a in members if indegree[a.name] > 0]
            raise CycleDetectedError(self._find_cycle(blocked, index))

        plan = Plan(target=target, actions=tuple(ordered))
        logger.debug(f"Plan for {target.value}: {', '.join(plan.names)}")
        return plan

    def _find_cycle(self, blocked: list[str], index: dict[str, int]) -> list[str]:
        """Walk predecessor edges among blocked actions until a name repeats."""
        blocked_set = set(blocked)
        path: list[str] = []
        seen: dict[str, int] = {}
        current = blocked[0]
        while current not in seen:
            seen[current] = len(path)
            path.append(current)
            # Every blocked action has at least one blocked predecessor
            current = next(
                dep for dep in self._actions[current].requires
                if dep in blocked_set and dep in index
            )
        cycle = path[seen[current]:] + [current]
        # Report in execution direction (predecessor first)
        return list(reversed(cycle))
