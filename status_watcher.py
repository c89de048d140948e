"""Watches .status.json for writes by the agent and emits progress events.

Bursts of file-system events are debounced into a single evaluation, and
only semantically meaningful changes are reported. The watcher shares no
lock with the loop: a torn read of a half-written file is just skipped.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from status_file import (
    StatusDelta,
    StatusRecord,
    compute_delta,
    has_significant_change,
    load_status,
)

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 2000

# Event types that mean the file content may have changed. Reads by this
# watcher produce "opened"/"closed_no_write" and must not retrigger it.
WRITE_EVENT_TYPES = frozenset({"created", "modified", "moved", "closed"})


@dataclass
class StatusChangedEvent:
    previous: Optional[StatusRecord]
    current: StatusRecord
    delta: StatusDelta
    timestamp: datetime


StatusListener = Callable[[StatusChangedEvent], None]


class _StatusFileHandler(FileSystemEventHandler):
    """Forwards write events for one file name in the watched directory."""

    def __init__(self, file_name: str, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._file_name = file_name
        self._on_change = on_change

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type not in WRITE_EVENT_TYPES:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        if any(p and os.path.basename(os.fsdecode(p)) == self._file_name for p in paths):
            self._on_change()


class StatusFileWatcher:
    """idle -> watching -> (debounce pending)* -> idle; stop() from anywhere."""

    def __init__(
        self,
        status_path: str | Path,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        notify_only_meaningful: bool = True,
        on_status_changed: Optional[StatusListener] = None,
        observer_factory: Callable[[], object] = Observer,
    ) -> None:
        self.status_path = Path(status_path)
        self.debounce_seconds = debounce_ms / 1000.0
        self.notify_only_meaningful = notify_only_meaningful
        self._observer_factory = observer_factory
        self._listeners: list[StatusListener] = []
        if on_status_changed is not None:
            self._listeners.append(on_status_changed)
        self._lock = threading.RLock()
        self._observer = None
        self._timer: Optional[threading.Timer] = None
        self._running = False
        self._previous: Optional[StatusRecord] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def previous(self) -> Optional[StatusRecord]:
        return self._previous

    def subscribe(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def start(self) -> None:
        """Begin watching. A missing file or directory is not an error."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._previous = load_status(self.status_path)

            observer = self._observer_factory()
            handler = _StatusFileHandler(self.status_path.name, self.notify_change)
            try:
                observer.schedule(handler, str(self.status_path.parent), recursive=False)
                observer.start()
            except FileNotFoundError:
                logger.debug(
                    "Status directory %s does not exist yet; not watching",
                    self.status_path.parent,
                )
                return
            except OSError as e:
                logger.warning("Could not start status file watcher: %s", e)
                return
            self._observer = observer
            logger.debug("Watching %s for status changes", self.status_path)

    def stop(self) -> None:
        """Cancel any pending evaluation, then close the subscription."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            observer, self._observer = self._observer, None
            self._listeners.clear()

        if observer is not None:
            observer.stop()
            if observer is not threading.current_thread():
                observer.join(timeout=2)

    def notify_change(self) -> None:
        """Record a raw change notification and (re)start the debounce timer."""
        with self._lock:
            if not self._running:
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._on_debounce_expired)
            self._timer.daemon = True
            self._timer.start()

    def _on_debounce_expired(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = None
            self._process_status_change()

    def _process_status_change(self) -> None:
        current = load_status(self.status_path)
        if current is None:
            # Partial writes are expected while the agent is mid-update
            logger.debug("Status file unreadable or invalid, skipping")
            return

        previous = self._previous
        if not has_significant_change(previous, current, self.notify_only_meaningful):
            return

        event = StatusChangedEvent(
            previous=previous,
            current=current,
            delta=compute_delta(previous, current),
            timestamp=datetime.now(timezone.utc),
        )
        self._previous = current
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning("Status change listener failed: %s", e)
