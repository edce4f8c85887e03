"""Per-run state: action outcomes and the run report.

An Outcome is immutable once recorded. A RunReport is appended to by the
reconciler during a run and frozen by finalize().
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from common import Probe


class Result(str, Enum):
    SUCCESS = 'success'
    SKIPPED = 'skipped'
    FAILED = 'failed'
    PLANNED = 'planned'


class RunStatus(str, Enum):
    ALL_SUCCEEDED = 'AllSucceeded'
    COMPLETED_WITH_FAILURES = 'CompletedWithFailures'
    ABORTED_EARLY = 'AbortedEarly'


@dataclass(frozen=True)
class Outcome:
    """What happened to one action in one run.

    Attributes:
        action: Action name
        probe: Probe result, None when the probe did not run (dry-run)
        executed: Whether apply() was invoked
        result: success, skipped, failed or planned
        reason: Apply message, skip reason or failure detail
        error_kind: ApplyError kind for skipped/failed applies
        duration: Seconds spent on probe and apply
    """
    action: str
    probe: Optional[Probe]
    executed: bool
    result: Result
    reason: str = ''
    error_kind: Optional[str] = None
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.result == Result.FAILED

    @property
    def duration_ms(self) -> int:
        return int(round(self.duration * 1000))

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            'action_id': self.action,
            'probe_result': self.probe.value if self.probe else None,
            'executed': self.executed,
            'outcome': self.result.value,
            'duration_ms': self.duration_ms,
        }
        if self.reason:
            d['reason'] = self.reason
        if self.error_kind:
            d['error_kind'] = self.error_kind
        return d


class ReportFinalizedError(RuntimeError):
    """Attempt to change a RunReport after finalize()."""


@dataclass
class RunReport:
    """Ordered outcomes of one reconciliation pass."""
    target: str
    dry_run: bool = False
    status: Optional[RunStatus] = None
    error: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    _outcomes: list[Outcome] = field(default_factory=list, repr=False)

    def start(self) -> None:
        self.started_at = time.time()

    @property
    def outcomes(self) -> tuple[Outcome, ...]:
        return tuple(self._outcomes)

    @property
    def finalized(self) -> bool:
        return self.status is not None

    def append(self, outcome: Outcome) -> None:
        if self.finalized:
            raise ReportFinalizedError(f"Report for '{self.target}' is already finalized")
        self._outcomes.append(outcome)

    def finalize(self, status: RunStatus, error: Optional[str] = None) -> None:
        if self.finalized:
            raise ReportFinalizedError(f"Report for '{self.target}' is already finalized")
        self.status = status
        self.error = error
        self.finished_at = time.time()

    @property
    def duration(self) -> float:
        if self.started_at and self.finished_at:
            return self.finished_at - self.started_at
        return 0.0

    def count(self, result: Result) -> int:
        return sum(1 for o in self._outcomes if o.result == result)

    def get(self, action: str) -> Optional[Outcome]:
        """Outcome for an action name, or None if it was not reached."""
        for outcome in self._outcomes:
            if outcome.action == action:
                return outcome
        return None
