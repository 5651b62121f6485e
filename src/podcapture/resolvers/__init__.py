"""
Target resolvers — pluggable ways to reach a pod's network.

Each resolver implements the TargetResolver interface from ``base``.
The reconciler only ever calls ``resolve()``; which strategy runs is a
deployment-time choice.
"""

from __future__ import annotations

from ..models import AgentConfig, ResolverKind
from .base import TargetResolutionFailure, TargetResolver
from .cri import RuntimeApiResolver
from .host import HostNetworkResolver
from .nsenter import NamespaceEntryResolver

__all__ = [
    "HostNetworkResolver",
    "NamespaceEntryResolver",
    "RuntimeApiResolver",
    "TargetResolutionFailure",
    "TargetResolver",
    "get_resolver",
]


def get_resolver(config: AgentConfig) -> TargetResolver:
    """Build the resolver selected by ``config.resolver``."""
    kind = ResolverKind(config.resolver)
    if kind == ResolverKind.NSENTER:
        return NamespaceEntryResolver(proc_root=config.proc_root)
    if kind == ResolverKind.CRI:
        return RuntimeApiResolver(crictl=config.crictl)
    return HostNetworkResolver()
