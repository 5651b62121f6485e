"""
Session registry — the single source of truth for what is running.

Holds at most one Session per WorkloadIdentity. Every mutation goes
through one lock that is held only for the dictionary operation
itself: never across a subprocess spawn, a signal, or a wait.
"""

from __future__ import annotations

import subprocess
import threading
from datetime import datetime, timezone
from typing import Optional

from .models import CaptureSpec, WorkloadIdentity


class SessionExistsError(RuntimeError):
    """A session is already registered for this key."""


class Session:
    """A tracked capture process for one workload.

    Attributes:
        key: Workload the capture belongs to.
        spec: Desired spec the process was started with.
        process: Handle of the capture tool (leader of its own process group).
        output_pattern: Glob matching every file the process may write.
        terminated: Set once a stop has been claimed for this session.
        exited: Set by the monitor after the process has exited and the
            session has been removed from the registry.
        started_at: UTC time the process was spawned.
    """

    def __init__(
        self,
        key: WorkloadIdentity,
        spec: CaptureSpec,
        process: subprocess.Popen,
        output_pattern: str,
    ):
        self.key = key
        self.spec = spec
        self.process = process
        self.output_pattern = output_pattern
        self.terminated = False
        self.exited = threading.Event()
        self.started_at = datetime.now(timezone.utc)

    @property
    def pid(self) -> int:
        return self.process.pid

    def to_dict(self) -> dict:
        """Serializable view for the status API."""
        return {
            "workload": str(self.key),
            "max_files": self.spec.max_files,
            "pid": self.pid,
            "output_pattern": self.output_pattern,
            "started_at": self.started_at.isoformat(),
            "terminating": self.terminated,
        }

    def __repr__(self) -> str:
        return f"Session({self.key}, pid={self.pid}, max_files={self.spec.max_files})"


class SessionRegistry:
    """Thread-safe map of WorkloadIdentity -> Session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: dict[WorkloadIdentity, Session] = {}

    def get(self, key: WorkloadIdentity) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(key)

    def insert(self, key: WorkloadIdentity, session: Session) -> None:
        """Register a session.

        Raises:
            SessionExistsError: If the key is already occupied.
        """
        with self._lock:
            if key in self._sessions:
                raise SessionExistsError(f"session already registered for {key}")
            self._sessions[key] = session

    def remove(self, key: WorkloadIdentity) -> Optional[Session]:
        """Remove whatever is registered for key. Absent keys are a no-op."""
        with self._lock:
            return self._sessions.pop(key, None)

    def remove_if(self, key: WorkloadIdentity, session: Session) -> bool:
        """Remove key only while it still maps to this exact session.

        A monitor for a superseded process must never delete the newer
        session that took its place.

        Returns:
            True if the session was removed.
        """
        with self._lock:
            if self._sessions.get(key) is session:
                del self._sessions[key]
                return True
            return False

    def claim_termination(self, session: Session) -> bool:
        """Mark a session as terminating.

        Returns:
            True for the first caller, False if a stop was already claimed.
        """
        with self._lock:
            if session.terminated:
                return False
            session.terminated = True
            return True

    def snapshot(self) -> list[Session]:
        """Return a copy of every registered session."""
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, key: WorkloadIdentity) -> bool:
        with self._lock:
            return key in self._sessions
