"""Exception hierarchy for the dispatch daemon."""

from __future__ import annotations


class DaemonError(RuntimeError):
    """Base class for daemon failures."""


class StateStoreError(DaemonError):
    """State document cannot be read or written."""


class StateLockTimeout(StateStoreError):
    """Exclusive lock on the state document was not acquired in time."""


class MalformedEntryError(ValueError):
    """A persisted record does not have the expected shape."""


class WorkspaceError(DaemonError):
    """Repository checkout or job worktree could not be prepared."""


class LaunchError(DaemonError):
    """Worker process could not be started."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class NotifyError(DaemonError):
    """Tracker adapter or webhook rejected a notification."""
