"""Fire-and-forget lifecycle notifications to tracker adapters and webhooks."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Sequence
from typing import Protocol

import httpx

from build_fleet.daemon.errors import NotifyError
from build_fleet.daemon.models import NotifyEvent
from build_fleet.daemon.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0

_EVENT_LEVELS: dict[NotifyEvent, str] = {
    NotifyEvent.SPAWNED: "info",
    NotifyEvent.STAGE_COMPLETE: "info",
    NotifyEvent.STAGE_FAILED: "warn",
    NotifyEvent.REVIEW: "info",
    NotifyEvent.COMPLETED: "success",
    NotifyEvent.FAILED: "error",
}


class Notifier(Protocol):
    """Receives lifecycle transitions. Implementations may raise; callers use `safe_notify`."""

    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None: ...


class NullNotifier:
    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None:
        logger.debug("notify %s #%s: %s", event.value, issue, detail)


class CommandNotifier:
    """Runs a tracker adapter command, e.g. `tracker-sync notify {event} {issue} {detail}`."""

    def __init__(self, *, command_template: str, timeout_seconds: float = 30.0) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds

    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None:
        try:
            argv = shlex.split(
                self.command_template.format(
                    event=shlex.quote(event.value),
                    issue=issue,
                    detail=shlex.quote(detail),
                ),
            )
        except (KeyError, IndexError, ValueError) as error:
            raise NotifyError(f"Invalid tracker command template: {error}") from error
        if not argv:
            raise NotifyError("Tracker command template rendered empty command.")
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            raise NotifyError(f"Tracker command failed to run: {error}") from error
        if completed.returncode != 0:
            raise NotifyError(
                f"Tracker command exited {completed.returncode}: {completed.stderr.strip()[:200]}",
            )


class WebhookNotifier:
    """POST `{title, message, level, event, issue}` JSON to a Slack-style webhook."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=5.0))

    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None:
        payload = {
            "title": f"Issue #{issue}: {event.value}",
            "message": detail,
            "level": _EVENT_LEVELS.get(event, "info"),
            "event": event.value,
            "issue": issue,
        }
        try:
            response = self._client.post(self.url, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as error:
            raise NotifyError(f"Webhook timed out: {self.url}") from error
        except httpx.HTTPError as error:
            raise NotifyError(f"Webhook failed: {error}") from error

    def close(self) -> None:
        self._client.close()


class CompositeNotifier:
    """Fans out to several notifiers; one failing does not stop the others."""

    def __init__(self, notifiers: Sequence[Notifier]) -> None:
        self.notifiers = list(notifiers)

    def notify(self, event: NotifyEvent, issue: int, detail: str = "") -> None:
        errors: list[str] = []
        for notifier in self.notifiers:
            try:
                notifier.notify(event, issue, detail)
            except Exception as error:  # noqa: BLE001
                errors.append(f"{type(notifier).__name__}: {error}")
        if errors:
            raise NotifyError("; ".join(errors))


def safe_notify(  # noqa: PLR0913
    notifier: Notifier,
    event: NotifyEvent,
    issue: int,
    detail: str = "",
    *,
    rate_limiter: RateLimiter | None = None,
    breaker: RateLimiter | None = None,
) -> bool:
    """Deliver a notification without ever propagating its failure.

    Skipped while the tracker `rate_limiter` or the notification `breaker`
    is backing off. Only `breaker` counts failures; `rate_limiter` gates
    spawning and is never touched here.
    """

    for limiter in (rate_limiter, breaker):
        if limiter is not None and limiter.is_rate_limited():
            logger.info(
                "Notifications backing off for %.0fs; skipping %s for issue #%s",
                limiter.remaining_seconds(),
                event.value,
                issue,
            )
            return False
    try:
        notifier.notify(event, issue, detail)
    except Exception as error:  # noqa: BLE001
        logger.warning("Notify %s for issue #%s failed: %s", event.value, issue, error)
        if breaker is not None:
            breaker.record_failure()
        return False
    if breaker is not None:
        breaker.record_success()
    return True
