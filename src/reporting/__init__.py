"""Run reporting."""

from reporting.report import (
    EXIT_ABORTED,
    EXIT_FAILURES,
    EXIT_OK,
    EXIT_USAGE,
    Reporter,
    compute_status,
)

__all__ = [
    'EXIT_ABORTED',
    'EXIT_FAILURES',
    'EXIT_OK',
    'EXIT_USAGE',
    'Reporter',
    'compute_status',
]
