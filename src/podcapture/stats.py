"""Thread-safe counters describing what the agent has done so far."""

from __future__ import annotations

import os
import threading
from datetime import datetime, timezone
from typing import Optional

_MAX_ERRORS = 50


class AgentState:
    """Mutable agent state shared by the reconciler and the status API.

    All access is lock-protected.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_event: Optional[datetime] = None
        self.running: bool = False
        self.events_handled: int = 0
        self.sessions_started: int = 0
        self.sessions_stopped: int = 0
        self.forced_kills: int = 0
        self.invalid_specs: int = 0
        self.resolve_failures: int = 0
        self.spawn_failures: int = 0
        self.cleanup_failures: int = 0
        self.files_deleted: int = 0
        self.errors: list[str] = []

    def snapshot(self) -> dict:
        """Return a serializable snapshot of current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_event": self.last_event.isoformat() if self.last_event else None,
                "events_handled": self.events_handled,
                "sessions_started": self.sessions_started,
                "sessions_stopped": self.sessions_stopped,
                "forced_kills": self.forced_kills,
                "invalid_specs": self.invalid_specs,
                "resolve_failures": self.resolve_failures,
                "spawn_failures": self.spawn_failures,
                "cleanup_failures": self.cleanup_failures,
                "files_deleted": self.files_deleted,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_event(self) -> None:
        with self._lock:
            self.last_event = datetime.now(timezone.utc)
            self.events_handled += 1

    def record_start(self) -> None:
        with self._lock:
            self.sessions_started += 1

    def record_stop(self, forced: bool) -> None:
        with self._lock:
            self.sessions_stopped += 1
            if forced:
                self.forced_kills += 1

    def record_cleanup(self, deleted: int, failed: int) -> None:
        with self._lock:
            self.files_deleted += deleted
            if failed:
                self.cleanup_failures += 1

    def record_invalid_spec(self) -> None:
        with self._lock:
            self.invalid_specs += 1

    def record_resolve_failure(self, error: str) -> None:
        with self._lock:
            self.resolve_failures += 1
        self.record_error(error)

    def record_spawn_failure(self, error: str) -> None:
        with self._lock:
            self.spawn_failures += 1
        self.record_error(error)

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > _MAX_ERRORS:
                self.errors = self.errors[-_MAX_ERRORS:]
