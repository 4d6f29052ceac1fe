"""Append-only JSONL lifecycle event stream."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from build_fleet.daemon.common import to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 50 * 1024 * 1024
DEFAULT_BACKUPS = 3


class EventLog:
    """Writes `{"ts", "ts_epoch", "type", ...}` lines for metrics and dashboards.

    The daemon never reads this stream back. Write failures are logged and
    dropped so they cannot stall scheduling.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backups: int = DEFAULT_BACKUPS,
    ) -> None:
        self.path = path
        self.max_bytes = max_bytes
        self.backups = backups

    def emit(self, event_type: str, **fields: object) -> None:
        now = utc_now()
        record: dict[str, object] = {
            "ts": to_iso(now),
            "ts_epoch": int(now.timestamp()),
            "type": event_type,
        }
        record.update(fields)
        line = json.dumps(record, default=str, ensure_ascii=False)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as error:
            logger.warning("Failed to write lifecycle event %s: %s", event_type, error)

    def rotate_if_needed(self) -> bool:
        """Shift `events.jsonl` to `.1`, `.2`, ... once it exceeds `max_bytes`."""

        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return False
        if size <= self.max_bytes:
            return False
        try:
            for index in range(self.backups - 1, 0, -1):
                source = self.path.with_name(f"{self.path.name}.{index}")
                if source.exists():
                    os.replace(source, self.path.with_name(f"{self.path.name}.{index + 1}"))
            os.replace(self.path, self.path.with_name(f"{self.path.name}.1"))
        except OSError as error:
            logger.warning("Failed to rotate %s: %s", self.path, error)
            return False
        logger.info("Rotated event log %s (%s bytes)", self.path, size)
        return True
