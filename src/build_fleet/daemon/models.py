"""Domain models for the persisted scheduler document."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from build_fleet.daemon.errors import MalformedEntryError

logger = logging.getLogger(__name__)

STATE_VERSION = 1
COMPLETED_HISTORY_LIMIT = 500
FAILURE_HISTORY_LIMIT = 100


class FailureClass(str, Enum):
    """Normalized worker failure classes used by retry policy."""

    AUTH_ERROR = "auth_error"
    INVALID_ISSUE = "invalid_issue"
    API_ERROR = "api_error"
    CONTEXT_EXHAUSTION = "context_exhaustion"
    BUILD_FAILURE = "build_failure"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: object) -> FailureClass | None:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class JobResult(str, Enum):
    """Terminal outcome of one worker run."""

    SUCCESS = "success"
    FAILED = "failed"


class NotifyEvent(str, Enum):
    """Lifecycle transitions pushed to tracker adapters."""

    SPAWNED = "spawned"
    STAGE_COMPLETE = "stage_complete"
    STAGE_FAILED = "stage_failed"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_positive_int(value: object, *, field_name: str) -> int:
    """Coerce a persisted identifier to a positive int or raise MalformedEntryError."""

    if isinstance(value, bool):
        raise MalformedEntryError(f"{field_name} must be numeric, got {value!r}")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise MalformedEntryError(f"{field_name} must be numeric, got {value!r}")
    if parsed <= 0:
        raise MalformedEntryError(f"{field_name} must be positive, got {parsed}")
    return parsed


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _optional_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(slots=True)
class Job:
    """One tracked worker process."""

    issue: int
    pid: int
    worktree: str
    title: str = ""
    repo: str = ""
    started_at: str = ""
    retry: int = 0
    extra: dict[str, object] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: object) -> Job:
        if not isinstance(raw, Mapping):
            raise MalformedEntryError(f"job entry must be an object, got {type(raw).__name__}")
        known = {"issue", "pid", "worktree", "title", "repo", "started_at", "retry"}
        return cls(
            issue=parse_positive_int(raw.get("issue"), field_name="issue"),
            pid=parse_positive_int(raw.get("pid"), field_name="pid"),
            worktree=str(raw.get("worktree") or ""),
            title=str(raw.get("title") or ""),
            repo=str(raw.get("repo") or ""),
            started_at=str(raw.get("started_at") or ""),
            retry=_optional_int(raw.get("retry")) or 0,
            extra={key: value for key, value in raw.items() if key not in known},
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.extra)
        payload.update(
            {
                "issue": self.issue,
                "pid": self.pid,
                "worktree": self.worktree,
                "title": self.title,
                "repo": self.repo,
                "started_at": self.started_at,
                "retry": self.retry,
            },
        )
        return payload


@dataclass(slots=True)
class QueueEntry:
    """Pending issue; bare ints on disk unless extra fields are set."""

    issue: int
    score: float | None = None
    not_before: str | None = None
    repo: str | None = None

    @classmethod
    def from_raw(cls, raw: object) -> QueueEntry:
        if not isinstance(raw, Mapping):
            return cls(issue=parse_positive_int(raw, field_name="issue"))
        score = raw.get("score")
        if isinstance(score, bool) or not isinstance(score, int | float):
            score = None
        return cls(
            issue=parse_positive_int(raw.get("issue"), field_name="issue"),
            score=score,
            not_before=_optional_str(raw.get("not_before")),
            repo=_optional_str(raw.get("repo")),
        )

    def to_raw(self) -> int | dict[str, object]:
        if self.score is None and self.not_before is None and self.repo is None:
            return self.issue
        payload: dict[str, object] = {"issue": self.issue}
        if self.score is not None:
            payload["score"] = self.score
        if self.not_before is not None:
            payload["not_before"] = self.not_before
        if self.repo is not None:
            payload["repo"] = self.repo
        return payload


@dataclass(slots=True)
class CompletionRecord:
    """History entry written when a job is reaped."""

    issue: int
    result: JobResult
    duration_s: int
    duration: str
    completed_at: str
    exit_code: int | None = None

    @classmethod
    def from_dict(cls, raw: object) -> CompletionRecord:
        if not isinstance(raw, Mapping):
            raise MalformedEntryError("completion entry must be an object")
        result_raw = str(raw.get("result") or JobResult.FAILED.value)
        result = JobResult.SUCCESS if result_raw == JobResult.SUCCESS.value else JobResult.FAILED
        return cls(
            issue=parse_positive_int(raw.get("issue"), field_name="issue"),
            result=result,
            duration_s=_optional_int(raw.get("duration_s")) or 0,
            duration=str(raw.get("duration") or ""),
            completed_at=str(raw.get("completed_at") or ""),
            exit_code=_optional_int(raw.get("exit_code")),
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "issue": self.issue,
            "result": self.result.value,
            "duration_s": self.duration_s,
            "duration": self.duration,
            "completed_at": self.completed_at,
        }
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        return payload


@dataclass(slots=True)
class FailureRecord:
    """Classified failure used for retry bookkeeping and auto-pause."""

    failure_class: FailureClass
    ts: str
    issue: int | None = None
    retry: int = 0
    terminal: bool = False

    @classmethod
    def from_dict(cls, raw: object) -> FailureRecord:
        if not isinstance(raw, Mapping):
            raise MalformedEntryError("failure entry must be an object")
        failure_class = FailureClass.parse(raw.get("class"))
        if failure_class is None:
            raise MalformedEntryError(f"unknown failure class {raw.get('class')!r}")
        issue_raw = raw.get("issue")
        return cls(
            failure_class=failure_class,
            ts=str(raw.get("ts") or ""),
            issue=None if issue_raw is None else parse_positive_int(issue_raw, field_name="issue"),
            retry=_optional_int(raw.get("retry")) or 0,
            terminal=bool(raw.get("terminal", False)),
        )

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ts": self.ts, "class": self.failure_class.value}
        if self.issue is not None:
            payload["issue"] = self.issue
        payload["retry"] = self.retry
        payload["terminal"] = self.terminal
        return payload


_KNOWN_FIELDS = frozenset(
    {
        "version",
        "pid",
        "started_at",
        "last_poll",
        "active_jobs",
        "queued",
        "completed",
        "retry_counts",
        "failure_history",
        "priority_lane_active",
        "titles",
    },
)


def _list_field(document: Mapping[str, object], name: str) -> list[object]:
    value = document.get(name)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("State field %s is not a list (%s); treating as empty", name, type(value))
        return []
    return value


def _dict_field(document: Mapping[str, object], name: str) -> Mapping[str, object]:
    value = document.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        logger.warning(
            "State field %s is not an object (%s); treating as empty",
            name,
            type(value),
        )
        return {}
    return value


@dataclass(slots=True)
class SchedulerState:
    """The single persisted scheduler document."""

    version: int = STATE_VERSION
    pid: int | None = None
    started_at: str | None = None
    last_poll: str | None = None
    active_jobs: list[Job] = field(default_factory=list)
    queued: list[QueueEntry] = field(default_factory=list)
    completed: list[CompletionRecord] = field(default_factory=list)
    retry_counts: dict[int, int] = field(default_factory=dict)
    failure_history: list[FailureRecord] = field(default_factory=list)
    priority_lane_active: list[int] = field(default_factory=list)
    titles: dict[int, str] = field(default_factory=dict)
    extra: dict[str, object] = field(default_factory=dict)
    skipped_entries: int = field(default=0, compare=False)

    @classmethod
    def from_document(cls, document: Mapping[str, object]) -> SchedulerState:  # noqa: C901
        """Parse a raw document, skipping malformed entries instead of failing."""

        state = cls(extra={k: v for k, v in document.items() if k not in _KNOWN_FIELDS})
        version = _optional_int(document.get("version"))
        if version is not None and version > STATE_VERSION:
            logger.warning(
                "State document version %s is newer than supported %s; reading best-effort",
                version,
                STATE_VERSION,
            )
            state.version = version
        state.pid = _optional_int(document.get("pid"))
        state.started_at = _optional_str(document.get("started_at"))
        state.last_poll = _optional_str(document.get("last_poll"))

        for raw in _list_field(document, "active_jobs"):
            try:
                job = Job.from_dict(raw)
            except MalformedEntryError as error:
                state.skipped_entries += 1
                logger.warning("Skipping malformed active job entry %r: %s", raw, error)
                continue
            if state.find_job(job.issue) is not None:
                state.skipped_entries += 1
                logger.warning("Skipping duplicate active job entry for issue #%s", job.issue)
                continue
            state.active_jobs.append(job)

        for raw in _list_field(document, "queued"):
            try:
                entry = QueueEntry.from_raw(raw)
            except MalformedEntryError as error:
                state.skipped_entries += 1
                logger.warning("Skipping malformed queue entry %r: %s", raw, error)
                continue
            if not state.is_queued(entry.issue):
                state.queued.append(entry)

        for raw in _list_field(document, "completed"):
            try:
                state.completed.append(CompletionRecord.from_dict(raw))
            except MalformedEntryError as error:
                state.skipped_entries += 1
                logger.warning("Skipping malformed completion entry %r: %s", raw, error)

        for raw in _list_field(document, "failure_history"):
            try:
                state.failure_history.append(FailureRecord.from_dict(raw))
            except MalformedEntryError as error:
                state.skipped_entries += 1
                logger.warning("Skipping malformed failure entry %r: %s", raw, error)

        for key, value in _dict_field(document, "retry_counts").items():
            count = _optional_int(value)
            try:
                issue = parse_positive_int(key, field_name="issue")
            except MalformedEntryError:
                issue = None
            if issue is None or count is None:
                state.skipped_entries += 1
                logger.warning("Skipping malformed retry count %r=%r", key, value)
                continue
            state.retry_counts[issue] = count

        for raw in _list_field(document, "priority_lane_active"):
            try:
                issue = parse_positive_int(raw, field_name="issue")
            except MalformedEntryError as error:
                state.skipped_entries += 1
                logger.warning("Skipping malformed priority lane entry %r: %s", raw, error)
                continue
            if issue not in state.priority_lane_active:
                state.priority_lane_active.append(issue)

        for key, value in _dict_field(document, "titles").items():
            try:
                state.titles[parse_positive_int(key, field_name="issue")] = str(value)
            except MalformedEntryError:
                state.skipped_entries += 1

        return state

    def to_document(self) -> dict[str, object]:
        document: dict[str, object] = dict(self.extra)
        document.update(
            {
                "version": self.version,
                "pid": self.pid,
                "started_at": self.started_at,
                "last_poll": self.last_poll,
                "active_jobs": [job.to_dict() for job in self.active_jobs],
                "queued": [entry.to_raw() for entry in self.queued],
                "completed": [record.to_dict() for record in self.completed],
                "retry_counts": {str(k): v for k, v in self.retry_counts.items()},
                "failure_history": [record.to_dict() for record in self.failure_history],
                "priority_lane_active": list(self.priority_lane_active),
                "titles": {str(k): v for k, v in self.titles.items()},
            },
        )
        return document

    def find_job(self, issue: int) -> Job | None:
        for job in self.active_jobs:
            if job.issue == issue:
                return job
        return None

    def is_active(self, issue: int) -> bool:
        return self.find_job(issue) is not None

    def is_queued(self, issue: int) -> bool:
        return any(entry.issue == issue for entry in self.queued)

    def is_inflight(self, issue: int) -> bool:
        return self.is_active(issue) or self.is_queued(issue)

    def remove_job(self, issue: int, pid: int | None = None) -> Job | None:
        """Drop the tracked job for `issue` (and `pid` when given)."""

        for index, job in enumerate(self.active_jobs):
            if job.issue == issue and (pid is None or job.pid == pid):
                return self.active_jobs.pop(index)
        return None

    def remove_queued(self, issue: int) -> QueueEntry | None:
        for index, entry in enumerate(self.queued):
            if entry.issue == issue:
                return self.queued.pop(index)
        return None

    def drop_priority(self, issue: int) -> None:
        self.priority_lane_active = [i for i in self.priority_lane_active if i != issue]

    def record_completion(self, record: CompletionRecord) -> None:
        self.completed.append(record)
        del self.completed[:-COMPLETED_HISTORY_LIMIT]

    def record_failure(self, record: FailureRecord) -> None:
        self.failure_history.append(record)
        del self.failure_history[:-FAILURE_HISTORY_LIMIT]

    def consecutive_failures(self, failure_class: FailureClass) -> int:
        """Unbroken run of `failure_class` at the tail of history since the last success."""

        last_success = max(
            (r.completed_at for r in self.completed if r.result is JobResult.SUCCESS),
            default="",
        )
        count = 0
        for record in reversed(self.failure_history):
            if record.failure_class is not failure_class or (
                last_success and record.ts < last_success
            ):
                break
            count += 1
        return count
