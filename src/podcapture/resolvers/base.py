"""
Target resolver interface.

A resolver answers one question: given a workload, how do we run the
capture tool so that it sees that workload's traffic? The lifecycle
manager never cares which strategy is active.
"""

from __future__ import annotations

from typing import Optional

from ..models import CaptureTarget, ResolverKind, Workload


class TargetResolutionFailure(RuntimeError):
    """The workload's capture target could not be determined (yet)."""


class TargetResolver:
    """Abstract base for target resolution strategies."""

    kind: ResolverKind = ResolverKind.HOST

    def resolve(self, workload: Workload) -> CaptureTarget:
        """Resolve the capture target for a workload.

        Args:
            workload: Pod snapshot to resolve.

        Returns:
            CaptureTarget describing how to launch the capture.

        Raises:
            TargetResolutionFailure: If the target cannot be found. This is
                expected for pods whose containers have not started yet.
        """
        raise NotImplementedError


def primary_container_id(workload: Workload) -> str:
    """Return the first known container ID of a workload.

    Raises:
        TargetResolutionFailure: If no container has reported an ID yet.
    """
    for container_id in workload.container_ids:
        if container_id:
            return container_id
    raise TargetResolutionFailure(f"no container ID available for pod {workload.identity}")


def nsenter_prefix(pid: int) -> tuple[str, ...]:
    """argv prefix that runs the rest of the command in pid's network namespace."""
    return ("nsenter", "-t", str(pid), "-n", "--")


def short_id(container_id: Optional[str]) -> str:
    return (container_id or "")[:12]
