"""
Termination protocol: SIGTERM, a bounded wait, then SIGKILL.

Signals always go to the whole process group so nothing the capture
tool forked can outlive it. ``stop()`` returns only once the session's
monitor has confirmed the exit, so callers may clean up right away.
"""

from __future__ import annotations

import logging
import os
import signal
from enum import Enum

from .registry import Session, SessionRegistry

logger = logging.getLogger("podcapture.termination")

DEFAULT_GRACE_PERIOD = 5.0


class StopOutcome(str, Enum):
    """How a stop request ended."""

    GRACEFUL = "graceful"
    FORCED = "forced"
    ALREADY_EXITED = "already-exited"
    DUPLICATE = "duplicate"


def signal_group(pid: int, sig: signal.Signals) -> bool:
    """Send a signal to the process group led by pid.

    Returns:
        False if the group no longer exists.
    """
    try:
        os.killpg(pid, sig)
        return True
    except ProcessLookupError:
        return False


class TerminationProtocol:
    """Stops sessions with an escalating signal sequence.

    Args:
        registry: Registry whose lock guards the terminated marker.
        grace_period: Seconds to wait after SIGTERM before SIGKILL.
    """

    def __init__(self, registry: SessionRegistry, grace_period: float = DEFAULT_GRACE_PERIOD):
        self.registry = registry
        self.grace_period = grace_period

    def stop(self, session: Session) -> StopOutcome:
        """Terminate a session's process group and wait for its exit.

        Idempotent: only the first caller signals; later callers wait
        for the same exit and get ``DUPLICATE``. Cannot be aborted once
        started.
        """
        key = session.key
        if not self.registry.claim_termination(session):
            session.exited.wait()
            return StopOutcome.DUPLICATE

        if session.exited.is_set():
            logger.info("Capture for %s had already exited", key)
            return StopOutcome.ALREADY_EXITED

        logger.info(
            "Stopping capture for %s (pid %d)", key, session.pid,
            extra={"lifecycle": "stop-graceful", "workload": str(key), "pid": session.pid},
        )
        if not signal_group(session.pid, signal.SIGTERM):
            session.exited.wait()
            return StopOutcome.ALREADY_EXITED

        if session.exited.wait(self.grace_period):
            logger.info("Capture for %s terminated gracefully", key)
            return StopOutcome.GRACEFUL

        logger.warning(
            "Capture for %s (pid %d) did not exit within %.1fs, killing",
            key, session.pid, self.grace_period,
            extra={"lifecycle": "stop-forced", "workload": str(key), "pid": session.pid},
        )
        signal_group(session.pid, signal.SIGKILL)
        session.exited.wait()
        return StopOutcome.FORCED
