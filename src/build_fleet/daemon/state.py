"""Persisted scheduler state with locked read-modify-write updates."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol, TypeVar

from build_fleet.daemon.common import to_iso, utc_now
from build_fleet.daemon.errors import StateStoreError
from build_fleet.daemon.fsutil import file_lock, write_json_atomic
from build_fleet.daemon.models import SchedulerState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StateStore(Protocol):
    """Shared scheduler document.

    `update` always re-reads the latest document under the lock before
    handing it to `transform`; callers must never write back a copy they
    read earlier.
    """

    def read(self) -> SchedulerState:
        """Return the current document (defaults when none exists yet)."""
        ...

    def update(self, transform: Callable[[SchedulerState], T]) -> T:
        """Mutate the latest document in place under the lock and persist it."""
        ...

    def initialize(self, *, pid: int | None = None) -> bool:
        """Create the document if missing. Return True when it was created."""
        ...

    def reset(self) -> None:
        """Replace the document with an empty default one."""
        ...

    def active_count(self) -> int:
        """Number of tracked jobs in one consistent snapshot."""
        ...

    def is_inflight(self, issue: int) -> bool:
        """True when `issue` is active or queued in one consistent snapshot."""
        ...


def _stamp_owner(state: SchedulerState, pid: int | None) -> None:
    if pid is None:
        return
    state.pid = pid
    state.started_at = to_iso(utc_now())


class JsonStateStore:
    """JSON document on disk guarded by an advisory `flock` on `<file>.lock`.

    Writes go through a temp file plus rename, so readers never observe a
    partial document and `read()` needs no lock.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = 5.0,
        lock_poll_seconds: float = 0.05,
    ) -> None:
        self.path = path
        self.lock_path = path.with_name(f"{path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_poll_seconds = lock_poll_seconds

    def read(self) -> SchedulerState:
        document, _ = self._load_document()
        if document is None:
            return SchedulerState()
        return SchedulerState.from_document(document)

    def update(self, transform: Callable[[SchedulerState], T]) -> T:
        with self._locked():
            state = self._load_for_write()
            result = transform(state)
            write_json_atomic(self.path, state.to_document())
        return result

    def active_count(self) -> int:
        return len(self.read().active_jobs)

    def is_inflight(self, issue: int) -> bool:
        return self.read().is_inflight(issue)

    def initialize(self, *, pid: int | None = None) -> bool:
        with self._locked():
            document, corrupt = self._load_document()
            created = document is None
            if corrupt:
                self._quarantine()
            state = SchedulerState() if created else SchedulerState.from_document(document)
            _stamp_owner(state, pid)
            if created or pid is not None:
                write_json_atomic(self.path, state.to_document())
        if created:
            logger.info("Initialized scheduler state at %s", self.path)
        return created

    def reset(self) -> None:
        with self._locked():
            write_json_atomic(self.path, SchedulerState().to_document())
        logger.warning("Scheduler state at %s was reset", self.path)

    def _locked(self):
        return file_lock(
            self.lock_path,
            timeout_seconds=self.lock_timeout_seconds,
            poll_seconds=self.lock_poll_seconds,
        )

    def _load_document(self) -> tuple[dict[str, object] | None, bool]:
        """Return `(document, corrupt)`; a corrupt document reads as missing."""

        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None, False
        except OSError as error:
            raise StateStoreError(f"Cannot read state document {self.path}: {error}") from error
        try:
            document = json.loads(text)
        except json.JSONDecodeError as error:
            logger.error("State document %s is not valid JSON: %s", self.path, error)
            return None, True
        if not isinstance(document, dict):
            logger.error(
                "State document %s root is %s, expected object",
                self.path,
                type(document),
            )
            return None, True
        return document, False

    def _load_for_write(self) -> SchedulerState:
        document, corrupt = self._load_document()
        if corrupt:
            self._quarantine()
        if document is None:
            return SchedulerState()
        return SchedulerState.from_document(document)

    def _quarantine(self) -> None:
        target = self.path.with_name(f"{self.path.name}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, target)
        except OSError as error:
            logger.error("Could not move corrupt state %s aside: %s", self.path, error)
            return
        logger.error("Moved corrupt state document to %s; starting from defaults", target)


class InMemoryStateStore:
    """Process-local store for tests and dry runs."""

    def __init__(self, document: Mapping[str, object] | None = None) -> None:
        self._document: dict[str, object] | None = (
            copy.deepcopy(dict(document)) if document is not None else None
        )
        self._lock = threading.Lock()
        self.write_count = 0

    @classmethod
    def from_state(cls, state: SchedulerState) -> InMemoryStateStore:
        return cls(state.to_document())

    @property
    def document(self) -> dict[str, object] | None:
        return copy.deepcopy(self._document)

    def read(self) -> SchedulerState:
        with self._lock:
            if self._document is None:
                return SchedulerState()
            return SchedulerState.from_document(copy.deepcopy(self._document))

    def update(self, transform: Callable[[SchedulerState], T]) -> T:
        with self._lock:
            state = (
                SchedulerState()
                if self._document is None
                else SchedulerState.from_document(copy.deepcopy(self._document))
            )
            result = transform(state)
            self._document = state.to_document()
            self.write_count += 1
        return result

    def active_count(self) -> int:
        return len(self.read().active_jobs)

    def is_inflight(self, issue: int) -> bool:
        return self.read().is_inflight(issue)

    def initialize(self, *, pid: int | None = None) -> bool:
        with self._lock:
            created = self._document is None
            state = SchedulerState() if created else SchedulerState.from_document(self._document)
            _stamp_owner(state, pid)
            if created or pid is not None:
                self._document = state.to_document()
                self.write_count += 1
        return created

    def reset(self) -> None:
        with self._lock:
            self._document = SchedulerState().to_document()
            self.write_count += 1
