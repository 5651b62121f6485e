"""
Host resolver: capture from the node's own network namespace.

The agent runs with ``hostNetwork: true``, so ``tcpdump -i any`` sees
every pod interface on the node. Nothing to look up, never fails.
"""

from __future__ import annotations

from ..models import CaptureTarget, ResolverKind, Workload
from .base import TargetResolver


class HostNetworkResolver(TargetResolver):
    """Run the capture tool directly in the agent's namespace."""

    kind = ResolverKind.HOST

    def __init__(self, interface: str = "any"):
        self.interface = interface

    def resolve(self, workload: Workload) -> CaptureTarget:
        return CaptureTarget(interface=self.interface, description="host")
