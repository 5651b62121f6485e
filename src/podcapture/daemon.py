"""
Capture agent service — the long-running node process.

Connects the pod event source to the reconciler, serves a small
local HTTP API for probes and status queries, and on SIGTERM/SIGINT
drains every capture session before exiting.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional

from .dispatch import KeyedDispatcher
from .models import AgentConfig, LogFormat, WorkloadEvent
from .reconciler import Reconciler
from .stats import AgentState
from .termination import StopOutcome
from .watcher import PodEventSource

logger = logging.getLogger("podcapture.daemon")

DEFAULT_PORT = 9777
_LIFECYCLE_FIELDS = ("lifecycle", "workload", "pid", "max_files", "returncode", "deleted", "failed")


class JsonFormatter(logging.Formatter):
    """One JSON object per record, lifecycle extras included."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _LIFECYCLE_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(log_format: LogFormat = LogFormat.TEXT, level: str = "INFO") -> None:
    """Send agent logs to stderr in text or JSON form."""
    handler = logging.StreamHandler(sys.stderr)
    if LogFormat(log_format) == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)


class AgentService:
    """The per-node capture agent.

    Args:
        config: Agent configuration; ``node_name`` is required unless a
            custom source is given.
        reconciler: Override the reconciler built from config.
        source: Override the pod event source (tests use a fake).
    """

    def __init__(
        self,
        config: AgentConfig,
        reconciler: Optional[Reconciler] = None,
        source: Optional[PodEventSource] = None,
    ):
        self.config = config
        self.state = reconciler.state if reconciler else AgentState()
        self.reconciler = reconciler or Reconciler.from_config(config, state=self.state)
        if source is None:
            if not config.node_name:
                raise ValueError("node_name is required (set NODE_NAME)")
            source = PodEventSource(
                config.node_name,
                kubeconfig=config.kubeconfig,
                watch_timeout=config.watch_timeout,
            )
        self.source = source
        self.dispatcher: KeyedDispatcher[WorkloadEvent] = KeyedDispatcher(
            self.reconciler.handle, name="reconcile"
        )
        self._stop_event = threading.Event()
        self._stopped = False
        self._watch_thread: Optional[threading.Thread] = None
        self._api_thread: Optional[threading.Thread] = None
        self._server: Optional[ThreadingHTTPServer] = None

    @property
    def api_port(self) -> Optional[int]:
        """Port the status API is bound to, once started."""
        return self._server.server_address[1] if self._server else None

    def start(self) -> None:
        """Connect to the cluster and start the watch and API threads.

        Raises:
            EventSourceError: If the event source cannot be established.
        """
        logger.info(
            "Agent starting: node=%s resolver=%s capture_dir=%s grace=%.1fs",
            self.config.node_name,
            self.config.resolver.value,
            self.config.capture_dir,
            self.config.grace_period,
        )
        self.source.connect()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        self._watch_thread = threading.Thread(
            target=self._watch_loop, name="agent-watch", daemon=True
        )
        self._watch_thread.start()
        self._start_api_server()
        logger.info("Agent started")

    def stop(self) -> None:
        """Stop watching and drain every capture session. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Agent stopping, draining captures...")
        self._stop_event.set()
        self.source.stop()
        self.reconciler.close()

        if self._watch_thread is not None:
            self._watch_thread.join(timeout=5)

        if not self.dispatcher.wait_idle(timeout=self.config.grace_period + 5):
            logger.warning(
                "Event handlers still busy for %s, draining anyway",
                ", ".join(str(key) for key in self.dispatcher.busy_keys()),
            )

        outcomes = self.reconciler.shutdown()
        forced = sum(1 for outcome in outcomes.values() if outcome == StopOutcome.FORCED)
        logger.info("Stopped %d capture(s), %d forced", len(outcomes), forced)

        if self._server:
            self._server.shutdown()
            self._server.server_close()
        self.state.running = False
        logger.info("Agent stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled, then drain."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def install_signal_handlers(self) -> None:
        """Register SIGTERM/SIGINT to trigger a graceful drain."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def submit(self, event: WorkloadEvent) -> None:
        """Hand an event to the per-key dispatcher."""
        if self._stop_event.is_set():
            return
        self.dispatcher.submit(event.workload.identity, event)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _watch_loop(self) -> None:
        try:
            self.source.run(self.submit, self._stop_event)
        except Exception as exc:
            logger.error("Event source failed: %s", exc)
            self.state.record_error(f"Event source: {exc}")
            self._stop_event.set()

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        state = self.state
        registry = self.reconciler.registry

        class AgentHandler(BaseHTTPRequestHandler):
            """HTTP handler for the agent status API."""

            def do_GET(self):
                if self.path == "/healthz":
                    self._json_response({"ok": state.running}, status=200 if state.running else 503)
                elif self.path == "/status":
                    snap = state.snapshot()
                    snap["active_sessions"] = len(registry)
                    self._json_response(snap)
                elif self.path == "/sessions":
                    self._json_response(
                        {"sessions": [s.to_dict() for s in registry.snapshot()]}
                    )
                else:
                    self._json_response(
                        {"endpoints": ["/healthz", "/status", "/sessions"]},
                        status=404,
                    )

            def _json_response(self, data: dict, status: int = 200):
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.end_headers()
                self.wfile.write(json.dumps(data, indent=2, default=str).encode())

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = ThreadingHTTPServer(("127.0.0.1", self.config.api_port), AgentHandler)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")
            return

        self._api_thread = threading.Thread(
            target=self._server.serve_forever, name="agent-api", daemon=True
        )
        self._api_thread.start()
        logger.info("API server listening on http://127.0.0.1:%d", self.api_port)


def get_agent_status(port: int = DEFAULT_PORT, path: str = "/status") -> Optional[dict]:
    """Query a running agent's local API.

    Returns:
        Decoded JSON, or None if the agent is unreachable.
    """
    import urllib.error
    import urllib.request

    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{path}", timeout=3) as resp:
            return json.loads(resp.read())
    except (urllib.error.URLError, OSError, json.JSONDecodeError):
        return None
