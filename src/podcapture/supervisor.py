"""
Session supervisor — spawns capture processes and watches them exit.

Each capture runs as the leader of a fresh process group
(``start_new_session=True``) so that tcpdump and anything it forks
(nsenter wraps it, for instance) can be signalled as one unit.

A monitor thread per session blocks on ``wait()``. When the process
is gone it removes the session from the registry, but only if the
registry still holds that exact session, and then sets
``session.exited`` so a pending stop can return.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
from pathlib import Path
from typing import Optional

from .artifacts import capture_file, capture_pattern
from .models import CaptureSpec, CaptureTarget, WorkloadIdentity
from .registry import Session, SessionExistsError, SessionRegistry
from .termination import signal_group

logger = logging.getLogger("podcapture.supervisor")


class SpawnFailure(RuntimeError):
    """The capture process could not be created."""


class SessionSupervisor:
    """Starts capture sessions and owns their exit detection.

    Args:
        registry: Shared session registry.
        capture_dir: Directory capture files are written into.
        capture_tool: argv prefix of the capture tool (default ``["tcpdump"]``).
        rotate_size_mb: Size of each rotation file (``-C``).
        capture_user: User tcpdump drops privileges to (``-Z``); None to omit.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        capture_dir: Path,
        capture_tool: Optional[list[str]] = None,
        rotate_size_mb: int = 1,
        capture_user: Optional[str] = "root",
    ):
        self.registry = registry
        self.capture_dir = Path(capture_dir)
        self.capture_tool = list(capture_tool or ["tcpdump"])
        self.rotate_size_mb = rotate_size_mb
        self.capture_user = capture_user

    def build_command(
        self, key: WorkloadIdentity, target: CaptureTarget, spec: CaptureSpec
    ) -> list[str]:
        """Assemble the full argv for a capture process."""
        cmd = [
            *target.command_prefix,
            *self.capture_tool,
            "-i", target.interface,
            "-n",
            "-U",
            "-C", str(self.rotate_size_mb),
            "-W", str(spec.max_files),
            "-w", str(capture_file(self.capture_dir, key)),
        ]
        if self.capture_user:
            cmd += ["-Z", self.capture_user]
        return cmd

    def start(
        self, key: WorkloadIdentity, target: CaptureTarget, spec: CaptureSpec
    ) -> Session:
        """Spawn a capture process and register it.

        Args:
            key: Workload to capture for. Must not have a registered session.
            target: Resolved execution target.
            spec: Desired capture spec.

        Returns:
            The registered Session.

        Raises:
            SpawnFailure: If the process could not be created.
            SessionExistsError: If another session claimed the key meanwhile.
        """
        cmd = self.build_command(key, target, spec)
        try:
            self.capture_dir.mkdir(parents=True, exist_ok=True)
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error(
                "Failed to start capture for %s: %s", key, exc,
                extra={"lifecycle": "spawn-failure", "workload": str(key)},
            )
            raise SpawnFailure(f"failed to start capture for {key}: {exc}") from exc

        session = Session(
            key=key,
            spec=spec,
            process=process,
            output_pattern=capture_pattern(self.capture_dir, key),
        )

        try:
            self.registry.insert(key, session)
        except SessionExistsError:
            logger.warning("Discarding duplicate capture for %s (pid %d)", key, process.pid)
            signal_group(process.pid, signal.SIGKILL)
            process.wait()
            raise

        monitor = threading.Thread(
            target=self._monitor,
            args=(session,),
            name=f"monitor-{key.namespace}-{key.name}",
            daemon=True,
        )
        monitor.start()

        logger.info(
            "Started capture for %s (pid %d, max files %d, target %s, output %s)",
            key, process.pid, spec.max_files, target.description, session.output_pattern,
            extra={
                "lifecycle": "start",
                "workload": str(key),
                "pid": process.pid,
                "max_files": spec.max_files,
            },
        )
        return session

    def _monitor(self, session: Session) -> None:
        """Block until the process exits, then deregister the session."""
        returncode = session.process.wait()
        removed = self.registry.remove_if(session.key, session)
        session.exited.set()

        extra = {
            "lifecycle": "exit",
            "workload": str(session.key),
            "pid": session.pid,
            "returncode": returncode,
        }
        if session.terminated:
            logger.debug("Capture for %s exited with %s", session.key, returncode, extra=extra)
        else:
            logger.warning(
                "Capture for %s exited on its own with %s (deregistered=%s)",
                session.key, returncode, removed,
                extra=extra,
            )

