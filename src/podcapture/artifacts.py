"""
Capture artifacts: deterministic file names and cleanup.

Every session writes to ``<capture_dir>/capture-<namespace>_<name>.pcap``;
tcpdump appends the rotation index to that path. Kubernetes object
names never contain an underscore, so the pattern for one workload can
never match files belonging to another.
"""

from __future__ import annotations

import glob
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .models import WorkloadIdentity

logger = logging.getLogger("podcapture.artifacts")


def capture_file(capture_dir: Path, key: WorkloadIdentity) -> Path:
    """Return the base output path tcpdump is given via ``-w``."""
    return Path(capture_dir) / f"capture-{key.namespace}_{key.name}.pcap"


def capture_pattern(capture_dir: Path, key: WorkloadIdentity) -> str:
    """Return the glob matching every rotation file of a workload."""
    base = capture_file(capture_dir, key)
    return os.path.join(glob.escape(str(base.parent)), glob.escape(base.name) + "*")


@dataclass
class CleanupResult:
    """Outcome of one cleanup pass.

    Attributes:
        deleted: Files removed (or already gone).
        failed: Files that could not be removed.
    """

    deleted: int = 0
    failed: int = 0

    @property
    def partial_failure(self) -> bool:
        return self.failed > 0


class ArtifactCleaner:
    """Removes the capture files of a terminated session.

    Args:
        capture_dir: Directory the capture tool writes into.
    """

    def __init__(self, capture_dir: Path):
        self.capture_dir = Path(capture_dir)

    def clean(self, key: WorkloadIdentity) -> CleanupResult:
        """Delete every file matching the workload's output pattern.

        A file that vanished in the meantime counts as deleted. Other
        errors are counted and logged; this method never raises.
        """
        pattern = capture_pattern(self.capture_dir, key)
        result = CleanupResult()

        for path in sorted(glob.glob(pattern)):
            try:
                os.remove(path)
                result.deleted += 1
                logger.debug("Deleted capture file %s", path)
            except FileNotFoundError:
                result.deleted += 1
            except OSError as exc:
                result.failed += 1
                logger.error("Failed to delete capture file %s: %s", path, exc)

        extra = {
            "lifecycle": "cleanup",
            "workload": str(key),
            "deleted": result.deleted,
            "failed": result.failed,
        }
        if result.partial_failure:
            logger.warning(
                "Deleted %d of %d capture file(s) for %s (%d failed)",
                result.deleted, result.deleted + result.failed, key, result.failed,
                extra=extra,
            )
        else:
            logger.info("Deleted %d capture file(s) for %s", result.deleted, key, extra=extra)
        return result
