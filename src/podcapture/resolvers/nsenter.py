"""
Namespace-entry resolver — find the pod's PID through /proc.

Scans ``<proc_root>/<pid>/cgroup`` for the pod's container ID (the
node's /proc is mounted at /host/proc in the DaemonSet) and wraps the
capture tool in ``nsenter -t <pid> -n --`` so it runs inside the pod's
network namespace.
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..models import CaptureTarget, ResolverKind, Workload
from .base import (
    TargetResolutionFailure,
    TargetResolver,
    nsenter_prefix,
    primary_container_id,
    short_id,
)

logger = logging.getLogger("podcapture.resolvers.nsenter")

DEFAULT_PROC_ROOT = Path("/host/proc")


def pid_for_container(container_id: str, proc_root: Path = DEFAULT_PROC_ROOT) -> int:
    """Return the PID of a process whose cgroup mentions container_id.

    Args:
        container_id: Bare container ID (no ``containerd://`` scheme).
        proc_root: Mount point of the host's /proc.

    Raises:
        TargetResolutionFailure: If /proc is unreadable or no process matches.
    """
    try:
        entries = sorted(
            (int(entry.name) for entry in Path(proc_root).iterdir() if entry.name.isdigit()),
        )
    except OSError as exc:
        raise TargetResolutionFailure(f"failed to read {proc_root}: {exc}") from exc

    for pid in entries:
        if pid == 0:
            continue
        try:
            content = (Path(proc_root) / str(pid) / "cgroup").read_text(encoding="utf-8")
        except OSError:
            continue
        if container_id in content:
            return pid

    raise TargetResolutionFailure(
        f"could not find process ID for container {short_id(container_id)}"
    )


class NamespaceEntryResolver(TargetResolver):
    """Enter the pod's network namespace via a PID found in /proc.

    Args:
        proc_root: Where the node's /proc is mounted.
        interface: Interface to capture on inside the pod namespace.
    """

    kind = ResolverKind.NSENTER

    def __init__(self, proc_root: Path = DEFAULT_PROC_ROOT, interface: str = "any"):
        self.proc_root = Path(proc_root)
        self.interface = interface

    def resolve(self, workload: Workload) -> CaptureTarget:
        if workload.host_network:
            return CaptureTarget(interface=self.interface, description="host (hostNetwork pod)")

        container_id = primary_container_id(workload)
        try:
            pid = pid_for_container(container_id, self.proc_root)
        except TargetResolutionFailure as exc:
            raise TargetResolutionFailure(f"{workload.identity}: {exc}") from exc

        logger.debug("Resolved %s to pid %d", workload.identity, pid)
        return CaptureTarget(
            command_prefix=nsenter_prefix(pid),
            interface=self.interface,
            description=f"netns of pid {pid}",
        )
