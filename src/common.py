"""Common utilities and types for node reconciliation."""

import logging
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Return codes synthesised by run_command when the process never ran
TIMEOUT_RC = -1
NOT_FOUND_RC = 127
NOT_EXECUTABLE_RC = 126


class Target(str, Enum):
    """Host state a reconciliation run converges to."""
    JOIN = 'join'
    RESET = 'reset'


class Probe(str, Enum):
    """Result of an action's read-only check."""
    SATISFIED = 'satisfied'
    UNSATISFIED = 'unsatisfied'
    UNKNOWN = 'unknown'


class ProbeError(Exception):
    """A probe could not determine current state."""


class ProbeTimeout(ProbeError):
    """Probe command exceeded its timeout."""


class ProbeFailed(ProbeError):
    """Probe command failed or produced unparseable output."""


class ApplyError(Exception):
    """Base class for failures raised by Action.apply()."""
    kind = 'unknown'

    def __init__(self, message: str = ''):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.kind


class PermissionDenied(ApplyError):
    kind = 'permission-denied'


class ResourceBusy(ApplyError):
    """Resource still referenced (kernel module in use, mount busy)."""
    kind = 'resource-busy'


class ExternalToolMissing(ApplyError):
    kind = 'external-tool-missing'


class ActionTimeout(ApplyError):
    kind = 'timeout'


class UnknownApplyError(ApplyError):
    kind = 'unknown'


APPLY_ERRORS: dict[str, type[ApplyError]] = {
    cls.kind: cls
    for cls in (PermissionDenied, ResourceBusy, ExternalToolMissing, ActionTimeout, UnknownApplyError)
}


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Never raises. A missing binary yields NOT_FOUND_RC, a timeout TIMEOUT_RC.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return TIMEOUT_RC, '', f'Command timed out after {timeout}s'
    except FileNotFoundError:
        return NOT_FOUND_RC, '', f'{cmd[0]}: command not found'
    except PermissionError as e:
        return NOT_EXECUTABLE_RC, '', f'{cmd[0]}: {e}'
    except Exception as e:
        return -1, '', str(e)


def command_exists(name: str) -> bool:
    """Check whether an executable is on PATH."""
    return shutil.which(name) is not None


_PERMISSION_MARKERS = ('permission denied', 'operation not permitted', 'must be root', 'requires root')
_BUSY_MARKERS = ('in use', 'resource busy', 'device or resource busy')
_MISSING_MARKERS = ('command not found', 'no such file or directory')


def classify_failure(cmd: list[str], rc: int, err: str) -> ApplyError:
    """Map a failed command to the ApplyError it represents."""
    text = (err or '').strip()
    lowered = text.lower()
    label = ' '.join(cmd)

    if rc == TIMEOUT_RC and 'timed out' in lowered:
        return ActionTimeout(f"{label}: {text}")
    if rc == NOT_FOUND_RC and any(m in lowered for m in _MISSING_MARKERS):
        return ExternalToolMissing(f"{cmd[0]} not found, skipping")
    if rc == NOT_EXECUTABLE_RC or any(m in lowered for m in _PERMISSION_MARKERS):
        return PermissionDenied(f"{label}: {text or 'permission denied'}")
    if any(m in lowered for m in _BUSY_MARKERS):
        return ResourceBusy(f"{label}: {text}")
    return UnknownApplyError(f"{label} exited {rc}: {text[-500:]}" if text else f"{label} exited {rc}")
