"""Decide whether a dead worker succeeded.

Workers report through a machine-parseable trailer line written last:

    BUILD_FLEET_RESULT status=success
    BUILD_FLEET_RESULT status=failure class=api_error

The trailer wins over everything else. Without it, a known exit code
decides, then the legacy free-text markers older pipeline versions print.
Anything else counts as a failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from build_fleet.daemon.models import FailureClass

RESULT_TRAILER_PREFIX = "BUILD_FLEET_RESULT"

_LEGACY_SUCCESS_RE = re.compile(r"Pipeline completed successfully")
_LEGACY_FAILURE_RE = re.compile(r"Pipeline failed|ERROR.*stage.*failed|exited with status")
_SUCCESS_STATUSES = frozenset({"success", "succeeded", "ok", "passed"})


@dataclass(slots=True)
class ResultTrailer:
    """Parsed `BUILD_FLEET_RESULT` line."""

    succeeded: bool
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class JobOutcome:
    """How a reaped job ended and which signal decided it."""

    succeeded: bool
    source: str
    exit_code: int | None = None
    declared_class: FailureClass | None = None


def parse_result_trailer(log_tail: str) -> ResultTrailer | None:
    """Return the last result trailer in `log_tail`, if any."""

    for line in reversed(log_tail.splitlines()):
        stripped = line.strip()
        if not stripped.startswith(RESULT_TRAILER_PREFIX):
            continue
        fields: dict[str, str] = {}
        for token in stripped[len(RESULT_TRAILER_PREFIX) :].split():
            key, sep, value = token.partition("=")
            if sep:
                fields[key.lower()] = value
        status = fields.get("status", "").lower()
        if not status:
            continue
        return ResultTrailer(
            succeeded=status in _SUCCESS_STATUSES,
            failure_class=FailureClass.parse(fields["class"]) if "class" in fields else None,
        )
    return None


def determine_outcome(log_tail: str, exit_code: int | None) -> JobOutcome:
    trailer = parse_result_trailer(log_tail)
    if trailer is not None:
        return JobOutcome(
            succeeded=trailer.succeeded,
            source="trailer",
            exit_code=exit_code,
            declared_class=None if trailer.succeeded else trailer.failure_class,
        )
    if exit_code is not None:
        return JobOutcome(succeeded=exit_code == 0, source="exit_code", exit_code=exit_code)
    if _LEGACY_SUCCESS_RE.search(log_tail):
        return JobOutcome(succeeded=True, source="log_marker")
    if _LEGACY_FAILURE_RE.search(log_tail):
        return JobOutcome(succeeded=False, source="log_marker")
    return JobOutcome(succeeded=False, source="no_signal")
