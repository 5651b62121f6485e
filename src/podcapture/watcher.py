"""
Pod event source — list + watch of the pods scheduled on this node.

The initial list is replayed as ADDED events; workloads that were
known before a relist but are gone from it are reported as DELETED.
After that the watch stream is followed from the list's
resourceVersion. A ``410 Gone`` (or any other stream error) simply
triggers a relist, so delivery is at-least-once and the reconciler
must treat every event idempotently.

Prerequisites:
- kubernetes Python client: pip install kubernetes
- In-cluster service account, or a kubeconfig file
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Optional

from .models import EventType, Workload, WorkloadEvent, WorkloadIdentity

logger = logging.getLogger("podcapture.watcher")

SERVICE_ACCOUNT_TOKEN = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
_RETRY_BACKOFF = 5.0


class EventSourceError(RuntimeError):
    """The Kubernetes API could not be reached or configured."""


def _container_ids(pod: Any) -> list[str]:
    """Return bare container IDs (``containerd://abc`` -> ``abc``)."""
    statuses = getattr(pod.status, "container_statuses", None) or []
    ids = []
    for status in statuses:
        raw = getattr(status, "container_id", None) or ""
        _, sep, bare = raw.partition("://")
        if sep and bare:
            ids.append(bare)
    return ids


def workload_from_pod(pod: Any) -> Workload:
    """Convert a ``V1Pod`` into a Workload snapshot."""
    meta = pod.metadata
    spec = getattr(pod, "spec", None)
    return Workload(
        identity=WorkloadIdentity(namespace=meta.namespace, name=meta.name),
        annotations=dict(meta.annotations or {}),
        container_ids=_container_ids(pod) if getattr(pod, "status", None) else [],
        host_network=bool(getattr(spec, "host_network", False)),
        uid=getattr(meta, "uid", None),
    )


class PodEventSource:
    """Streams WorkloadEvents for the pods on one node.

    Args:
        node_name: Node whose pods are watched.
        kubeconfig: Explicit kubeconfig path (default: in-cluster, then
            ``KUBECONFIG``, then ``~/.kube/config``).
        watch_timeout: Server-side timeout of one watch request, in seconds.
    """

    def __init__(
        self,
        node_name: str,
        kubeconfig: Optional[Path] = None,
        watch_timeout: int = 300,
    ):
        self.node_name = node_name
        self.kubeconfig = kubeconfig
        self.watch_timeout = watch_timeout
        self._api = None
        self._watch = None
        self._known: set[WorkloadIdentity] = set()

    @property
    def field_selector(self) -> str:
        return f"spec.nodeName={self.node_name}"

    def connect(self) -> None:
        """Load cluster credentials and build the CoreV1 API client.

        Raises:
            EventSourceError: If the client library is missing or no
                usable configuration is found.
        """
        try:
            from kubernetes import client, config
        except ImportError:
            raise EventSourceError(
                "Pod watching requires the 'kubernetes' client: pip install kubernetes"
            )

        try:
            if self.kubeconfig is None and SERVICE_ACCOUNT_TOKEN.exists():
                logger.info("Running in-cluster, using service account")
                config.load_incluster_config()
            else:
                path = self.kubeconfig or Path(
                    os.environ.get("KUBECONFIG", "~/.kube/config")
                ).expanduser()
                if not Path(path).exists():
                    raise EventSourceError("unable to find kubeconfig or in-cluster config")
                logger.info("Using kubeconfig: %s", path)
                config.load_kube_config(config_file=str(path))
        except EventSourceError:
            raise
        except Exception as exc:
            raise EventSourceError(f"failed to load Kubernetes config: {exc}") from exc

        self._api = client.CoreV1Api()

    def run(self, on_event: Callable[[WorkloadEvent], None], stop_event: threading.Event) -> None:
        """Deliver events until stop_event is set.

        Args:
            on_event: Called for every event, from this thread.
            stop_event: Ends the loop at the next watch boundary.
        """
        if self._api is None:
            self.connect()

        from kubernetes.client.exceptions import ApiException

        while not stop_event.is_set():
            try:
                resource_version = self._relist(on_event)
                logger.info("Pod cache synced for node %s (%d pods)", self.node_name, len(self._known))
                self._follow(on_event, stop_event, resource_version)
            except ApiException as exc:
                if exc.status == 410:
                    logger.info("Watch expired, relisting")
                    continue
                logger.error("Kubernetes API error: %s", exc)
                stop_event.wait(_RETRY_BACKOFF)
            except Exception as exc:
                logger.error("Pod watch error: %s", exc)
                stop_event.wait(_RETRY_BACKOFF)

    def stop(self) -> None:
        """Interrupt an in-flight watch stream."""
        if self._watch is not None:
            self._watch.stop()

    def _relist(self, on_event: Callable[[WorkloadEvent], None]) -> str:
        pods = self._api.list_pod_for_all_namespaces(field_selector=self.field_selector)
        seen: set[WorkloadIdentity] = set()
        for pod in pods.items:
            workload = workload_from_pod(pod)
            seen.add(workload.identity)
            on_event(WorkloadEvent(type=EventType.ADDED, workload=workload))

        for identity in self._known - seen:
            logger.info("Pod %s disappeared while not watching", identity)
            on_event(WorkloadEvent(type=EventType.DELETED, workload=Workload(identity=identity)))

        self._known = seen
        return pods.metadata.resource_version

    def _follow(
        self,
        on_event: Callable[[WorkloadEvent], None],
        stop_event: threading.Event,
        resource_version: str,
    ) -> None:
        from kubernetes import watch
        from kubernetes.client.exceptions import ApiException

        self._watch = watch.Watch()
        try:
            for raw in self._watch.stream(
                self._api.list_pod_for_all_namespaces,
                field_selector=self.field_selector,
                resource_version=resource_version,
                timeout_seconds=self.watch_timeout,
            ):
                if stop_event.is_set():
                    break
                kind = raw.get("type")
                if kind == "ERROR":
                    status = raw.get("raw_object") or {}
                    raise ApiException(status=status.get("code", 500), reason=status.get("message"))
                if kind not in ("ADDED", "MODIFIED", "DELETED"):
                    continue

                workload = workload_from_pod(raw["object"])
                if kind == "DELETED":
                    self._known.discard(workload.identity)
                else:
                    self._known.add(workload.identity)
                on_event(WorkloadEvent(type=EventType(kind), workload=workload))
        finally:
            self._watch.stop()
            self._watch = None
