"""Shared test fixtures for podcapture."""

from __future__ import annotations

import os
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Optional

import pytest

from podcapture.models import Workload, WorkloadIdentity
from podcapture.registry import SessionRegistry
from podcapture.supervisor import SessionSupervisor

# Stand-in for tcpdump. Understands -w and -W, writes the first
# rotation file once its signal handling is in place, then idles.
#   FAKE_TCPDUMP_IGNORE_TERM=<s>  ignore SIGTERM when <s> is in the output name
#   FAKE_TCPDUMP_EXIT_AFTER=<t>   exit with status 3 after t seconds
FAKE_TCPDUMP = """\
import os, signal, sys, time
args = sys.argv[1:]
out = args[args.index("-w") + 1]
ignore = os.environ.get("FAKE_TCPDUMP_IGNORE_TERM", "")
if ignore and ignore in os.path.basename(out):
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
else:
    signal.signal(signal.SIGTERM, lambda sig, frame: sys.exit(0))
with open(out + "0", "w") as fh:
    fh.write("pcap")
exit_after = os.environ.get("FAKE_TCPDUMP_EXIT_AFTER")
deadline = time.time() + float(exit_after) if exit_after else None
while deadline is None or time.time() < deadline:
    time.sleep(0.05)
sys.exit(3)
"""


def make_workload(
    name: str,
    annotation: Optional[str] = None,
    namespace: str = "ns",
    container_ids: Optional[list[str]] = None,
    annotation_key: str = "tcpdump.antrea.io",
) -> Workload:
    """Build a pod snapshot, optionally carrying the capture annotation."""
    annotations = {} if annotation is None else {annotation_key: annotation}
    return Workload(
        identity=WorkloadIdentity(namespace=namespace, name=name),
        annotations=annotations,
        container_ids=container_ids or [],
    )


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    """Poll predicate until it is true or timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def fake_tool(tmp_path: Path) -> list[str]:
    """argv prefix that launches the fake tcpdump."""
    script = tmp_path / "fake_tcpdump.py"
    script.write_text(FAKE_TCPDUMP)
    return [sys.executable, str(script)]


@pytest.fixture
def capture_dir(tmp_path: Path) -> Path:
    path = tmp_path / "captures"
    path.mkdir()
    return path


@pytest.fixture
def registry():
    """Session registry that kills whatever is still registered afterwards."""
    reg = SessionRegistry()
    yield reg
    for session in reg.snapshot():
        try:
            os.killpg(session.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        session.exited.wait(5)


@pytest.fixture
def supervisor(registry, capture_dir, fake_tool) -> SessionSupervisor:
    return SessionSupervisor(registry, capture_dir, capture_tool=fake_tool)


@pytest.fixture
def first_file_written(capture_dir, wait_for):
    """Wait until the fake tool has written its first rotation file."""

    def _wait(key: WorkloadIdentity) -> bool:
        path = capture_dir / f"capture-{key.namespace}_{key.name}.pcap0"
        return wait_for(path.exists)

    return _wait


@pytest.fixture
def workload():
    """Factory for pod snapshots (see make_workload)."""
    return make_workload
