"""Operator pause flag and consecutive-failure auto-pause."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from build_fleet.daemon.common import parse_iso_or_none, to_iso, utc_now
from build_fleet.daemon.fsutil import write_json_atomic

logger = logging.getLogger(__name__)

AUTO_PAUSE_THRESHOLD = 3
AUTO_PAUSE_BASE_MINUTES = 5
AUTO_PAUSE_MAX_MINUTES = 480


@dataclass(slots=True)
class PauseState:
    """Contents of the pause flag file."""

    reason: str
    timestamp: str
    resume_after: str | None = None
    consecutive_count: int | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"reason": self.reason, "timestamp": self.timestamp}
        if self.resume_after is not None:
            payload["resume_after"] = self.resume_after
        if self.consecutive_count is not None:
            payload["consecutive_count"] = self.consecutive_count
        return payload


def auto_pause_minutes(consecutive: int) -> int:
    """5 minutes at the threshold, doubling per extra failure, capped at 8 hours."""

    if consecutive < AUTO_PAUSE_THRESHOLD:
        return 0
    return min(
        AUTO_PAUSE_BASE_MINUTES * (2 ** (consecutive - AUTO_PAUSE_THRESHOLD)),
        AUTO_PAUSE_MAX_MINUTES,
    )


class PauseFlag:
    """Advisory pause file. Existing jobs keep running; only new spawns stop.

    A flag carrying `resume_after` clears itself once that time has passed.
    Any unreadable flag file still counts as paused.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> PauseState | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as error:
            logger.warning("Cannot read pause flag %s: %s", self.path, error)
            return PauseState(reason="unreadable", timestamp="")
        try:
            raw = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError:
            raw = {}
        if not isinstance(raw, dict):
            raw = {}
        state = PauseState(
            reason=str(raw.get("reason") or "manual"),
            timestamp=str(raw.get("timestamp") or ""),
            resume_after=str(raw["resume_after"]) if raw.get("resume_after") else None,
            consecutive_count=(
                raw["consecutive_count"] if isinstance(raw.get("consecutive_count"), int) else None
            ),
        )
        resume_at = parse_iso_or_none(state.resume_after)
        if resume_at is not None and utc_now() >= resume_at:
            logger.info("Pause window (%s) elapsed; auto-resuming", state.reason)
            self.resume()
            return None
        return state

    def is_paused(self) -> bool:
        return self.read() is not None

    def pause(
        self,
        reason: str,
        *,
        resume_after_minutes: int | None = None,
        consecutive_count: int | None = None,
    ) -> PauseState:
        now = utc_now()
        state = PauseState(
            reason=reason,
            timestamp=to_iso(now),
            resume_after=(
                to_iso(now + timedelta(minutes=resume_after_minutes))
                if resume_after_minutes
                else None
            ),
            consecutive_count=consecutive_count,
        )
        write_json_atomic(self.path, state.to_dict())
        resume = state.resume_after or "manual"
        logger.warning("Daemon paused: %s (resume after %s)", reason, resume)
        return state

    def resume(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Daemon resumed")
        return True
