"""ntfy-compatible HTTP notifications for loop progress.

Delivery never blocks the loop and never raises: sends run on a single
background worker and failures are logged and reported as False.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Literal, Optional, Sequence

import requests

from status_watcher import StatusChangedEvent

logger = logging.getLogger(__name__)

NotificationEvent = Literal[
    "setup_complete",
    "execution_start",
    "iteration",
    "iteration_milestone",
    "completion",
    "error",
    "status_update",
    "all",
]
Priority = Literal["low", "default", "high", "urgent"]

DEFAULT_NOTIFY_EVENTS: tuple[str, ...] = ("iteration", "completion", "error", "status_update")
BASE_TAG = "iterate-loop"


def should_notify(event: str, events: Optional[Sequence[str]]) -> bool:
    """True if event is enabled; an empty selection means the defaults."""
    if not events:
        return event in DEFAULT_NOTIFY_EVENTS
    return "all" in events or event in events


class NotificationService:
    """Posts plain-text messages to an ntfy-style topic URL."""

    def __init__(
        self,
        url: Optional[str] = None,
        events: Optional[Sequence[str]] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self.url = url
        self.events = list(events or [])
        self.timeout_seconds = timeout_seconds
        self._executor: Optional[ThreadPoolExecutor] = None

    def is_configured(self) -> bool:
        return bool(self.url and self.url.strip())

    def should_notify(self, event: str) -> bool:
        return self.is_configured() and should_notify(event, self.events)

    def send(
        self,
        message: str,
        title: Optional[str] = None,
        priority: Optional[Priority] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> bool:
        """POST message to the configured URL. Returns False on any failure."""
        if not self.is_configured():
            return False

        headers = {"Content-Type": "text/plain; charset=utf-8"}
        if title:
            headers["Title"] = title
        if priority:
            headers["Priority"] = priority
        if tags:
            headers["Tags"] = ",".join(tags)

        try:
            r = requests.post(
                self.url,
                data=message.encode("utf-8"),
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.warning("Notification error: %s", e)
            return False

        if not r.ok:
            logger.warning("Notification failed: HTTP %d %s", r.status_code, r.reason)
            return False
        logger.debug("Notification sent: %s", title or message[:60])
        return True

    def send_async(
        self,
        message: str,
        title: Optional[str] = None,
        priority: Optional[Priority] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> Optional[Future]:
        """Queue a send on the background worker."""
        if not self.is_configured():
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        return self._executor.submit(self.send, message, title, priority, tags)

    def notify(
        self,
        event: str,
        message: str,
        title: Optional[str] = None,
        priority: Optional[Priority] = None,
        tags: Optional[Sequence[str]] = None,
    ) -> Optional[Future]:
        """Queue a send if event is enabled for this service."""
        if not self.should_notify(event):
            return None
        return self.send_async(message, title, priority, tags)

    def close(self) -> None:
        """Wait for queued notifications to finish."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def format_status_update(event: StatusChangedEvent) -> str:
    current, delta = event.current, event.delta
    parts: list[str] = []
    if current.progress is not None:
        progress = f"{current.progress.completed}/{current.progress.total} items"
        if delta.completed_delta > 0:
            progress += f" (+{delta.completed_delta})"
        parts.append(progress)
    if current.summary:
        parts.append(current.summary)
    if current.complete:
        parts.append("✅ Complete!")
    return "STATUS UPDATE\n\n" + " - ".join(parts)


def status_update_listener(
    service: NotificationService,
    workspace_name: str,
    current_iteration: Callable[[], int],
) -> Callable[[StatusChangedEvent], None]:
    """Build a status watcher listener that posts progress updates."""

    def listener(event: StatusChangedEvent) -> None:
        iteration = current_iteration()
        service.notify(
            "status_update",
            format_status_update(event),
            title=f"[{workspace_name}] Progress Update (Iteration {iteration})",
            priority="high" if event.current.complete else "default",
            tags=[BASE_TAG, "progress", f"iteration-{iteration}"],
        )

    return listener


class NotificationObserver:
    """Turns loop events into notifications (hooks as on LoopObserver)."""

    def __init__(
        self, service: NotificationService, workspace_name: str, max_iterations: int
    ) -> None:
        self.service = service
        self.workspace_name = workspace_name
        self.max_iterations = max_iterations
        self.current_iteration = 0

    def on_run_start(self, workspace_name: str, max_iterations: int) -> None:
        self.max_iterations = max_iterations
        self.service.notify(
            "execution_start",
            f"EXECUTION STARTED\n\nWorkspace: {workspace_name}\n"
            f"Max iterations: {max_iterations}",
            title="Execution Started",
            tags=[BASE_TAG, "execution"],
        )

    def on_iteration_start(self, iteration: int) -> None:
        self.current_iteration = iteration

    def on_iteration_complete(
        self, iteration: int, remaining: Optional[int], milestone: bool
    ) -> None:
        remaining_text = remaining if remaining is not None else "unknown"
        self.service.notify(
            "iteration",
            f"ITERATION {iteration}/{self.max_iterations}\n\n"
            f"Workspace: {self.workspace_name}\nStatus: In progress\n"
            f"Remaining: {remaining_text}",
            title=f"Iteration {iteration}",
            tags=[BASE_TAG, "iteration"],
        )
        if milestone:
            self.service.notify(
                "iteration_milestone",
                f"ITERATION MILESTONE\n\nWorkspace: {self.workspace_name}\n"
                f"Completed: {iteration} iterations\nRemaining: {remaining_text}",
                title="Milestone Reached",
                tags=[BASE_TAG, "milestone"],
            )

    def on_completion(self, iterations: int) -> None:
        self.service.notify(
            "completion",
            f"TASK COMPLETE ✅\n\nWorkspace: {self.workspace_name}\n"
            f"Total iterations: {iterations}\nStatus: All items completed",
            title="Task Complete",
            priority="high",
            tags=[BASE_TAG, "completion"],
        )

    def on_error(self, iteration: int, error: BaseException) -> None:
        self.service.notify(
            "error",
            f"ERROR ENCOUNTERED ⚠️\n\nWorkspace: {self.workspace_name}\n"
            f"Iteration: {iteration}\nError: {error}",
            title="Execution Error",
            priority="urgent",
            tags=[BASE_TAG, "error"],
        )

    def status_listener(self) -> Callable[[StatusChangedEvent], None]:
        return status_update_listener(
            self.service, self.workspace_name, lambda: self.current_iteration
        )
