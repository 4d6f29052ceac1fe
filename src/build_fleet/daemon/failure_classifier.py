"""Deterministic worker failure classification and per-class retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from build_fleet.daemon.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_AUTH_PATTERNS: tuple[str, ...] = (
    r"not logged in",
    r"unauthorized",
    r"auth.*fail",
    r"401 ",
    r"invalid.*token",
    r"api key.*invalid",
    r"authentication required",
)
_API_PATTERNS: tuple[str, ...] = (
    r"rate limit",
    r"429 ",
    r"503 ",
    r"502 ",
    r"overloaded",
    r"timeout",
    r"etimedout",
    r"econnreset",
    r"socket hang up",
    r"service unavailable",
)
_INVALID_ISSUE_PATTERNS: tuple[str, ...] = (
    r"issue not found",
    r"404 ",
    r"no body",
    r"could not resolve",
    r"graphql.*not found",
    r"issue.*does not exist",
)
_BUILD_PATTERNS: tuple[str, ...] = (
    r"test.*fail",
    r"fail",
    r"build.*error",
    r"compile.*error",
    r"lint.*fail",
    r"npm err",
    r"exit code [1-9]",
)

_ITERATION_RE = re.compile(r"Iteration: (\d+)")
_TESTS_PASSING_RE = re.compile(r"Tests passing: (true|false)")

DEFAULT_MAX_RETRIES: dict[FailureClass, int] = {
    FailureClass.AUTH_ERROR: 0,
    FailureClass.INVALID_ISSUE: 0,
    FailureClass.API_ERROR: 4,
    FailureClass.CONTEXT_EXHAUSTION: 2,
    FailureClass.BUILD_FAILURE: 2,
    FailureClass.UNKNOWN: 2,
}


@dataclass(slots=True)
class ExitContext:
    """What is known about a dead worker besides its log tail."""

    exit_code: int | None = None
    declared_class: FailureClass | None = None
    progress_text: str | None = None


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for lifecycle events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(
    log_tail: str,
    exit_context: ExitContext | None = None,
) -> FailureClassification:
    """Map a failed run to a failure class.

    Rule order: class declared by the worker's result trailer, then auth,
    API, invalid issue, context exhaustion (from the loop progress file),
    build failure, and finally `unknown`.
    """

    context = exit_context or ExitContext()
    if context.declared_class is not None:
        return FailureClassification(
            failure_class=context.declared_class,
            matched_rule="declared",
            matched_pattern=None,
        )

    for failure_class, patterns in (
        (FailureClass.AUTH_ERROR, _AUTH_PATTERNS),
        (FailureClass.API_ERROR, _API_PATTERNS),
        (FailureClass.INVALID_ISSUE, _INVALID_ISSUE_PATTERNS),
    ):
        matched = _first_match(log_tail, patterns)
        if matched is not None:
            return FailureClassification(
                failure_class=failure_class,
                matched_rule=failure_class.value,
                matched_pattern=matched,
            )

    if context.progress_text and _looks_exhausted(context.progress_text):
        return FailureClassification(
            failure_class=FailureClass.CONTEXT_EXHAUSTION,
            matched_rule="progress_file",
            matched_pattern=None,
        )

    matched = _first_match(log_tail, _BUILD_PATTERNS)
    if matched is not None:
        return FailureClassification(
            failure_class=FailureClass.BUILD_FAILURE,
            matched_rule=FailureClass.BUILD_FAILURE.value,
            matched_pattern=matched,
        )

    if context.exit_code is not None:
        return FailureClassification(
            failure_class=FailureClass.UNKNOWN,
            matched_rule="exit_code",
            matched_pattern=str(context.exit_code),
        )
    return FailureClassification(
        failure_class=FailureClass.UNKNOWN,
        matched_rule="fallback",
        matched_pattern=None,
    )


def _first_match(text: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if re.search(pattern, text, flags=re.IGNORECASE):
            return pattern
    return None


def _looks_exhausted(progress_text: str) -> bool:
    """Agent looped at least once and never reported passing tests."""

    iterations = _ITERATION_RE.findall(progress_text)
    if not iterations or int(iterations[-1]) <= 0:
        return False
    tests = _TESTS_PASSING_RE.findall(progress_text)
    return not tests or tests[-1] == "false"


@dataclass(slots=True)
class RetryPolicy:
    """Retry ceilings and exponential backoff per failure class."""

    max_retries: dict[FailureClass, int] = field(
        default_factory=lambda: dict(DEFAULT_MAX_RETRIES),
    )
    backoff_enabled: bool = True
    backoff_base_seconds: int = 30
    api_backoff_base_seconds: int = 300
    backoff_max_seconds: int = 3_600

    def max_retries_for(self, failure_class: FailureClass) -> int:
        if failure_class in self.max_retries:
            return self.max_retries[failure_class]
        fallback = DEFAULT_MAX_RETRIES[FailureClass.UNKNOWN]
        return self.max_retries.get(FailureClass.UNKNOWN, fallback)

    def should_retry(self, failure_class: FailureClass, retry_count: int) -> bool:
        """True while `retry_count` (attempts already retried) is below the ceiling."""

        return retry_count < self.max_retries_for(failure_class)

    def backoff_seconds(self, failure_class: FailureClass, retry_number: int) -> int:
        """Delay before retry number `retry_number` (1-based) becomes eligible."""

        if not self.backoff_enabled or retry_number <= 0:
            return 0
        base = (
            self.api_backoff_base_seconds
            if failure_class is FailureClass.API_ERROR
            else self.backoff_base_seconds
        )
        return min(base * (2 ** (retry_number - 1)), self.backoff_max_seconds)
