"""
Reconciler — drives capture sessions toward the desired state.

For every workload event the desired spec is compared with the
session currently registered for that workload:

    desired   current             action
    -------   -----------------   ------------------------------
    absent    none                nothing
    absent    running             stop, then clean
    present   none                resolve target, start
    present   same spec           nothing
    present   different spec      restart (stop + clean, start) or keep,
                                  depending on ``on_spec_change``

Work on one workload is serialized by a per-key lock; different
workloads never wait on each other. Shutdown stops every session
concurrently and returns when all of them have exited and been
cleaned, so it takes about one grace period no matter how many
sessions there are.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from . import ANNOTATION_KEY
from .artifacts import ArtifactCleaner
from .desired import extract
from .models import (
    AgentConfig,
    CaptureSpec,
    EventType,
    SpecChangePolicy,
    Workload,
    WorkloadEvent,
    WorkloadIdentity,
)
from .registry import Session, SessionExistsError, SessionRegistry
from .resolvers import TargetResolutionFailure, TargetResolver, get_resolver
from .stats import AgentState
from .supervisor import SessionSupervisor, SpawnFailure
from .termination import StopOutcome, TerminationProtocol

logger = logging.getLogger("podcapture.reconciler")


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class Reconciler:
    """Applies workload events to the session registry.

    Args:
        registry: Shared session registry.
        supervisor: Starts capture processes.
        termination: Stops capture processes.
        cleaner: Removes capture files after a stop.
        resolver: Turns workloads into capture targets.
        annotation_key: Annotation carrying the rotation count.
        on_spec_change: Policy for sessions whose desired spec changed.
        state: Counters shared with the status API.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        supervisor: SessionSupervisor,
        termination: TerminationProtocol,
        cleaner: ArtifactCleaner,
        resolver: TargetResolver,
        annotation_key: str = ANNOTATION_KEY,
        on_spec_change: SpecChangePolicy = SpecChangePolicy.RESTART,
        state: Optional[AgentState] = None,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.termination = termination
        self.cleaner = cleaner
        self.resolver = resolver
        self.annotation_key = annotation_key
        self.on_spec_change = SpecChangePolicy(on_spec_change)
        self.state = state or AgentState()
        self._closed = False
        self._gate = threading.Condition()
        self._starting = 0
        self._locks_guard = threading.Lock()
        self._key_locks: dict[WorkloadIdentity, _KeyLock] = {}

    @classmethod
    def from_config(cls, config: AgentConfig, state: Optional[AgentState] = None) -> "Reconciler":
        """Wire a reconciler and its collaborators from configuration."""
        registry = SessionRegistry()
        return cls(
            registry=registry,
            supervisor=SessionSupervisor(
                registry,
                capture_dir=config.capture_dir,
                capture_tool=config.capture_tool,
                rotate_size_mb=config.rotate_size_mb,
                capture_user=config.capture_user,
            ),
            termination=TerminationProtocol(registry, grace_period=config.grace_period),
            cleaner=ArtifactCleaner(config.capture_dir),
            resolver=get_resolver(config),
            annotation_key=config.annotation_key,
            on_spec_change=config.on_spec_change,
            state=state,
        )

    # ------------------------------------------------------------------
    # Event entry points
    # ------------------------------------------------------------------

    def handle(self, event: WorkloadEvent) -> None:
        """Apply one event from the event source."""
        self.state.record_event()
        logger.debug("%s %s", event.type.value, event.workload.identity)
        if event.type == EventType.DELETED:
            self.forget(event.workload.identity)
        else:
            self.reconcile(event.workload)

    def reconcile(self, workload: Workload) -> None:
        """Bring the session for one workload in line with its annotation."""
        key = workload.identity
        desired = self._desired(workload)

        with self._serialized(key):
            if self._closed:
                logger.debug("Ignoring %s, reconciler is shutting down", key)
                return

            current = self.registry.get(key)

            if desired is None:
                if current is not None:
                    self._stop_and_clean(current)
                return

            if current is not None:
                if current.spec == desired:
                    logger.debug("Capture already running for %s, skipping", key)
                    return
                if self.on_spec_change == SpecChangePolicy.KEEP:
                    logger.info(
                        "Capture spec for %s changed (%d -> %d files), keeping current session",
                        key, current.spec.max_files, desired.max_files,
                    )
                    return
                logger.info(
                    "Capture spec for %s changed (%d -> %d files), restarting",
                    key, current.spec.max_files, desired.max_files,
                )
                self._stop_and_clean(current)

            self._start(workload, desired)

    def forget(self, key: WorkloadIdentity) -> Optional[StopOutcome]:
        """Handle a workload that no longer exists."""
        return self.stop_session(key)

    def stop_session(self, key: WorkloadIdentity) -> Optional[StopOutcome]:
        """Stop and clean up the session for key, if any.

        Returns:
            The stop outcome, or None if nothing was running.
        """
        with self._serialized(key):
            session = self.registry.get(key)
            if session is None:
                return None
            return self._stop_and_clean(session)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Refuse further reconciles. Running sessions are untouched.

        Returns once no start is in flight, so every session that will
        ever be registered is visible to a snapshot taken afterwards.
        """
        with self._gate:
            self._closed = True
            while self._starting:
                self._gate.wait()

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self) -> dict[WorkloadIdentity, StopOutcome]:
        """Stop and clean every session concurrently, then return.

        Returns:
            Outcome per workload that still had a session when drained.
        """
        self.close()
        sessions = self.registry.snapshot()
        logger.info("Draining %d capture session(s)", len(sessions))

        outcomes: dict[WorkloadIdentity, StopOutcome] = {}
        outcomes_lock = threading.Lock()

        def drain(key: WorkloadIdentity) -> None:
            try:
                outcome = self.stop_session(key)
            except Exception as exc:
                logger.error("Failed to drain capture for %s: %s", key, exc)
                self.state.record_error(f"Drain {key}: {exc}")
                return
            if outcome is not None:
                with outcomes_lock:
                    outcomes[key] = outcome

        threads = [
            threading.Thread(
                target=drain,
                args=(session.key,),
                name=f"drain-{session.key.namespace}-{session.key.name}",
                daemon=True,
            )
            for session in sessions
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        logger.info("Drained %d capture session(s)", len(outcomes))
        return outcomes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _desired(self, workload: Workload) -> Optional[CaptureSpec]:
        desired = extract(workload, self.annotation_key)
        if desired is None and workload.annotations.get(self.annotation_key):
            self.state.record_invalid_spec()
        return desired

    def _start(self, workload: Workload, spec: CaptureSpec) -> Optional[Session]:
        key = workload.identity
        try:
            target = self.resolver.resolve(workload)
        except TargetResolutionFailure as exc:
            logger.warning(
                "Cannot resolve capture target for %s: %s", key, exc,
                extra={"lifecycle": "resolve-failure", "workload": str(key)},
            )
            self.state.record_resolve_failure(f"Resolve {key}: {exc}")
            return None

        with self._gate:
            if self._closed:
                logger.info("Not starting capture for %s, reconciler is shutting down", key)
                return None
            self._starting += 1
        try:
            session = self.supervisor.start(key, target, spec)
        except SpawnFailure as exc:
            self.state.record_spawn_failure(str(exc))
            return None
        except SessionExistsError as exc:
            logger.warning("Not starting capture for %s: %s", key, exc)
            return None
        finally:
            with self._gate:
                self._starting -= 1
                self._gate.notify_all()

        self.state.record_start()
        return session

    def _stop_and_clean(self, session: Session) -> StopOutcome:
        outcome = self.termination.stop(session)
        if outcome == StopOutcome.DUPLICATE:
            return outcome
        self.state.record_stop(forced=outcome == StopOutcome.FORCED)
        result = self.cleaner.clean(session.key)
        self.state.record_cleanup(result.deleted, result.failed)
        return outcome

    @contextmanager
    def _serialized(self, key: WorkloadIdentity) -> Iterator[None]:
        """Hold the per-key lock; the entry is dropped when nobody uses it."""
        with self._locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]
