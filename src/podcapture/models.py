"""
Pydantic models for workloads, capture specs and agent configuration.

A WorkloadIdentity is the stable key for everything the agent tracks.
Snapshots of pods arrive as Workload objects; the annotation on them
becomes a CaptureSpec; a resolver turns the workload into a
CaptureTarget the supervisor can launch against.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator

from . import ANNOTATION_KEY, CAPTURE_DIR


class WorkloadIdentity(BaseModel):
    """Namespace + name of a pod. Hashable, compared by value."""

    model_config = ConfigDict(frozen=True)

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class CaptureSpec(BaseModel):
    """Desired capture configuration derived from the annotation."""

    model_config = ConfigDict(frozen=True)

    max_files: PositiveInt


class Workload(BaseModel):
    """Point-in-time snapshot of a pod, as delivered by the event source."""

    identity: WorkloadIdentity
    annotations: dict[str, str] = Field(default_factory=dict)
    container_ids: list[str] = Field(default_factory=list)
    host_network: bool = False
    uid: Optional[str] = None


class EventType(str, Enum):
    """Kind of change observed for a workload."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class WorkloadEvent(BaseModel):
    """One delivery from the event source."""

    type: EventType
    workload: Workload


class CaptureTarget(BaseModel):
    """Where and how to launch the capture tool for a workload.

    ``command_prefix`` is prepended to the tool invocation, e.g.
    ``["nsenter", "-t", "1234", "-n", "--"]`` to enter the pod's
    network namespace. An empty prefix captures in the agent's own
    namespace.
    """

    model_config = ConfigDict(frozen=True)

    command_prefix: tuple[str, ...] = ()
    interface: str = "any"
    description: str = "host"


class ResolverKind(str, Enum):
    """Target resolution strategies."""

    HOST = "host"
    NSENTER = "nsenter"
    CRI = "cri"


class SpecChangePolicy(str, Enum):
    """What to do when a running session's desired spec changes."""

    RESTART = "restart"
    KEEP = "keep"


class LogFormat(str, Enum):
    TEXT = "text"
    JSON = "json"


class AgentConfig(BaseModel):
    """Runtime configuration for the capture agent."""

    node_name: Optional[str] = None
    annotation_key: str = ANNOTATION_KEY
    capture_dir: Path = Path(CAPTURE_DIR)
    capture_tool: list[str] = Field(default_factory=lambda: ["tcpdump"])
    capture_user: Optional[str] = "root"
    rotate_size_mb: PositiveInt = 1
    grace_period: float = Field(default=5.0, gt=0)
    resolver: ResolverKind = ResolverKind.HOST
    proc_root: Path = Path("/host/proc")
    crictl: str = "crictl"
    on_spec_change: SpecChangePolicy = SpecChangePolicy.RESTART
    api_port: int = Field(default=9777, ge=0, le=65535)
    kubeconfig: Optional[Path] = None
    watch_timeout: PositiveInt = 300
    log_format: LogFormat = LogFormat.TEXT
    log_level: str = "INFO"

    @field_validator("capture_tool", mode="before")
    @classmethod
    def _split_tool(cls, value):
        if isinstance(value, str):
            return value.split()
        return value

    @field_validator("capture_tool")
    @classmethod
    def _tool_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("capture_tool must name an executable")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()
