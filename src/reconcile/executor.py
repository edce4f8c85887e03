"""Reconciler: drives a host to a target state.

Idle -> Planning -> Executing -> Finalizing -> Done

For each action in the plan the reconciler runs the probe, skips the action
when the probe reports Satisfied, otherwise applies it and records an
Outcome. Probe and apply failures never propagate past the reconciler; the
on_error policy decides whether a failed action stops the run.
"""

import errno
import logging
import threading
import time
from enum import Enum
from typing import Callable, Iterable, Optional, Union

from actions.base import NodeAction
from common import (
    ActionTimeout,
    ApplyError,
    ExternalToolMissing,
    PermissionDenied,
    Probe,
    ProbeError,
    ProbeTimeout,
    ResourceBusy,
    Target,
    UnknownApplyError,
)
from host import Host, ToolMissing
from reconcile.graph import ActionRegistry, PlanningError
from reconcile.state import Outcome, Result, RunReport
from reporting.report import compute_status

logger = logging.getLogger(__name__)

ON_ERROR_POLICIES = ('continue', 'halt')
DEFAULT_NONFATAL = (ExternalToolMissing, ResourceBusy)
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_ACTION_TIMEOUT = 600.0


class Phase(str, Enum):
    IDLE = 'idle'
    PLANNING = 'planning'
    EXECUTING = 'executing'
    FINALIZING = 'finalizing'
    DONE = 'done'


def _apply_error_from(exc: BaseException) -> ApplyError:
    """Classify an exception raised out of apply()."""
    if isinstance(exc, ApplyError):
        return exc
    if isinstance(exc, ToolMissing):
        return ExternalToolMissing(f"{exc.tool} not found, skipping")
    if isinstance(exc, ProbeTimeout):
        return ActionTimeout(str(exc))
    if isinstance(exc, ProbeError):
        return UnknownApplyError(str(exc))
    if isinstance(exc, OSError):
        if exc.errno in (errno.EACCES, errno.EPERM):
            return PermissionDenied(str(exc))
        if exc.errno == errno.EBUSY:
            return ResourceBusy(str(exc))
    return UnknownApplyError(f"{type(exc).__name__}: {exc}")


class Reconciler:
    """Runs plans from a registry against a host.

    Attributes:
        registry: Source of plans
        host: Host capabilities the actions act on
        on_error: 'continue' records a failure and proceeds, 'halt' stops the run
        probe_timeout: Time budget for all commands one check() runs
        action_timeout: Command timeout for apply()
        nonfatal: ApplyError types recorded as skipped rather than failed
        dry_run: Build and record the plan without probing or applying
    """

    def __init__(
        self,
        registry: ActionRegistry,
        host: Optional[Host] = None,
        on_error: str = 'continue',
        probe_timeout: float = DEFAULT_PROBE_TIMEOUT,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT,
        nonfatal: Iterable[type] = DEFAULT_NONFATAL,
        dry_run: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        if on_error not in ON_ERROR_POLICIES:
            raise ValueError(f"on_error must be one of {ON_ERROR_POLICIES}, got '{on_error}'")
        self.registry = registry
        self.host = host or Host()
        self.on_error = on_error
        self.probe_timeout = probe_timeout
        self.action_timeout = action_timeout
        self.nonfatal = tuple(nonfatal)
        self.dry_run = dry_run
        self._clock = clock
        self._cancel = threading.Event()
        self.phase = Phase.IDLE

    def cancel(self) -> None:
        """Request the run to stop. Honoured between actions only."""
        if not self._cancel.is_set():
            logger.warning("Cancellation requested; stopping after the current action")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, target: Union[Target, str]) -> RunReport:
        """Reconcile the host to target. Always returns a finalized report."""
        if self.phase not in (Phase.IDLE, Phase.DONE):
            raise RuntimeError(f"Reconciler is already running ({self.phase.value})")

        target_name = target.value if isinstance(target, Target) else str(target)
        report = RunReport(target=target_name, dry_run=self.dry_run)
        report.start()

        self.phase = Phase.PLANNING
        try:
            plan = self.registry.build_plan(target)
        except PlanningError as e:
            logger.error(f"Planning failed: {e}")
            return self._finish(report, aborted=True, error=str(e))

        mode = ' (dry-run)' if self.dry_run else ''
        logger.info(f"Reconciling to '{target_name}'{mode}: {len(plan)} action(s), on_error={self.on_error}")

        self.phase = Phase.EXECUTING
        total = len(plan)
        for number, action in enumerate(plan, 1):
            if self._cancel.is_set():
                return self._finish(report, aborted=True, error=f"Cancelled before '{action.name}'")

            if self.dry_run:
                report.append(Outcome(action=action.name, probe=None, executed=False, result=Result.PLANNED,
                                      reason=action.description))
                continue

            logger.info(f"Step {number}/{total}: {action.name} - {action.description or action.category}")
            outcome = self._reconcile_action(action)
            report.append(outcome)

            if outcome.failed and self.on_error == 'halt':
                logger.error(f"Halting after failed action '{action.name}'")
                return self._finish(report, aborted=True,
                                    error=f"Halted after '{action.name}': {outcome.reason}")

        return self._finish(report, aborted=False)

    def _finish(self, report: RunReport, aborted: bool, error: Optional[str] = None) -> RunReport:
        self.phase = Phase.FINALIZING
        status = compute_status(report.outcomes, aborted=aborted)
        report.finalize(status, error=error)
        logger.info(f"Run finished: {status.value} in {report.duration:.1f}s")
        self.phase = Phase.DONE
        return report

    def _probe(self, action: NodeAction) -> Probe:
        try:
            result = action.check(self.host.bounded(self.probe_timeout))
        except ProbeError as e:
            logger.warning(f"[{action.name}] Probe inconclusive: {e}")
            return Probe.UNKNOWN
        except Exception as e:  # check() must never abort a run
            logger.warning(f"[{action.name}] Probe raised {type(e).__name__}: {e}")
            return Probe.UNKNOWN
        if not isinstance(result, Probe):
            logger.warning(f"[{action.name}] Probe returned {result!r}; treating as unknown")
            return Probe.UNKNOWN
        if result == Probe.UNKNOWN:
            logger.warning(f"[{action.name}] State unknown; applying anyway")
        return result

    def _reconcile_action(self, action: NodeAction) -> Outcome:
        start = self._clock()
        probe = self._probe(action)

        if probe == Probe.SATISFIED:
            logger.info(f"[{action.name}] Already satisfied, skipping")
            return Outcome(action=action.name, probe=probe, executed=False, result=Result.SKIPPED,
                           reason='already satisfied', duration=self._clock() - start)

        try:
            message = action.apply(self.host.scoped(self.action_timeout))
        except Exception as e:  # classified below; nothing escapes the run
            error = _apply_error_from(e)
            if not isinstance(e, (ApplyError, ProbeError, OSError)):
                logger.exception(f"[{action.name}] apply raised unexpectedly")
            duration = self._clock() - start
            if isinstance(error, self.nonfatal):
                logger.warning(f"[{action.name}] {error}")
                return Outcome(action=action.name, probe=probe, executed=True, result=Result.SKIPPED,
                               reason=str(error), error_kind=error.kind, duration=duration)
            logger.error(f"[{action.name}] Failed: {error}")
            return Outcome(action=action.name, probe=probe, executed=True, result=Result.FAILED,
                           reason=str(error), error_kind=error.kind, duration=duration)

        logger.info(f"[{action.name}] {message or 'done'}")
        return Outcome(action=action.name, probe=probe, executed=True, result=Result.SUCCESS,
                       reason=message or '', duration=self._clock() - start)
