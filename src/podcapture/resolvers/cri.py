"""
CRI resolver — ask the container runtime for the pod's PID.

Runs ``crictl inspect -o json <container-id>`` against the node's
runtime socket and reads ``info.pid``. Useful where the host /proc is
not mounted into the agent.
"""

from __future__ import annotations

import json
import logging
import subprocess
from typing import Any

from ..models import CaptureTarget, ResolverKind, Workload
from .base import (
    TargetResolutionFailure,
    TargetResolver,
    nsenter_prefix,
    primary_container_id,
    short_id,
)

logger = logging.getLogger("podcapture.resolvers.cri")

_CRICTL_TIMEOUT = 10


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    """Run a command and capture its output.

    Args:
        cmd: Command and arguments.

    Returns:
        CompletedProcess result.
    """
    return subprocess.run(cmd, capture_output=True, text=True, timeout=_CRICTL_TIMEOUT)


def pid_from_inspect(payload: dict[str, Any]) -> int:
    """Extract the task PID from ``crictl inspect`` JSON output.

    Raises:
        TargetResolutionFailure: If the payload carries no usable PID.
    """
    pid = (payload.get("info") or {}).get("pid")
    if not isinstance(pid, int) or pid <= 0:
        raise TargetResolutionFailure("runtime reported no running task PID")
    return pid


class RuntimeApiResolver(TargetResolver):
    """Look up the container PID through the CRI CLI.

    Args:
        crictl: Path or name of the crictl binary.
        interface: Interface to capture on inside the pod namespace.
    """

    kind = ResolverKind.CRI

    def __init__(self, crictl: str = "crictl", interface: str = "any"):
        self.crictl = crictl
        self.interface = interface

    def inspect(self, container_id: str) -> dict[str, Any]:
        """Return the parsed ``crictl inspect`` document for a container."""
        try:
            result = _run([self.crictl, "inspect", "-o", "json", container_id])
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise TargetResolutionFailure(f"crictl inspect failed: {exc}") from exc

        if result.returncode != 0:
            raise TargetResolutionFailure(
                f"crictl inspect {short_id(container_id)} exited {result.returncode}: "
                f"{result.stderr.strip()}"
            )
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise TargetResolutionFailure(f"unparseable crictl output: {exc}") from exc

    def resolve(self, workload: Workload) -> CaptureTarget:
        if workload.host_network:
            return CaptureTarget(interface=self.interface, description="host (hostNetwork pod)")

        container_id = primary_container_id(workload)
        pid = pid_from_inspect(self.inspect(container_id))
        logger.debug("Runtime reports pid %d for %s", pid, workload.identity)
        return CaptureTarget(
            command_prefix=nsenter_prefix(pid),
            interface=self.interface,
            description=f"netns of pid {pid}",
        )
