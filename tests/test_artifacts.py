"""Tests for capture file naming and ArtifactCleaner."""

from __future__ import annotations

import glob
import logging
import os
from pathlib import Path
from unittest.mock import patch

from podcapture.artifacts import ArtifactCleaner, CleanupResult, capture_file, capture_pattern
from podcapture.models import WorkloadIdentity

P1 = WorkloadIdentity(namespace="ns", name="p1")


def _touch(directory: Path, *names: str) -> None:
    for name in names:
        (directory / name).write_text("pcap")


class TestNaming:
    """Tests for deterministic output names."""

    def test_capture_file(self, tmp_path):
        assert capture_file(tmp_path, P1) == tmp_path / "capture-ns_p1.pcap"

    def test_pattern_matches_rotations_only_for_key(self, tmp_path):
        _touch(
            tmp_path,
            "capture-ns_p1.pcap0",
            "capture-ns_p1.pcap1",
            "capture-ns_p10.pcap0",
            "capture-other_p1.pcap0",
            "capture-ns_p1-canary.pcap0",
        )
        matches = sorted(os.path.basename(p) for p in glob.glob(capture_pattern(tmp_path, P1)))
        assert matches == ["capture-ns_p1.pcap0", "capture-ns_p1.pcap1"]

    def test_pattern_escapes_glob_characters(self, tmp_path):
        odd_dir = tmp_path / "cap[1]"
        odd_dir.mkdir()
        _touch(odd_dir, "capture-ns_p1.pcap0")
        assert len(glob.glob(capture_pattern(odd_dir, P1))) == 1


class TestArtifactCleaner:
    """Tests for clean()."""

    def test_deletes_matching_files(self, tmp_path):
        _touch(tmp_path, "capture-ns_p1.pcap0", "capture-ns_p1.pcap1", "capture-ns_p2.pcap0")
        result = ArtifactCleaner(tmp_path).clean(P1)
        assert result == CleanupResult(deleted=2, failed=0)
        assert sorted(p.name for p in tmp_path.iterdir()) == ["capture-ns_p2.pcap0"]

    def test_nothing_to_delete(self, tmp_path):
        result = ArtifactCleaner(tmp_path).clean(P1)
        assert result == CleanupResult(0, 0)
        assert not result.partial_failure

    def test_missing_directory(self, tmp_path):
        result = ArtifactCleaner(tmp_path / "absent").clean(P1)
        assert result == CleanupResult(0, 0)

    def test_vanished_file_counts_as_deleted(self, tmp_path):
        _touch(tmp_path, "capture-ns_p1.pcap0")
        with patch("podcapture.artifacts.os.remove", side_effect=FileNotFoundError):
            result = ArtifactCleaner(tmp_path).clean(P1)
        assert result == CleanupResult(deleted=1, failed=0)

    def test_partial_failure_reported_not_raised(self, tmp_path, caplog):
        _touch(tmp_path, "capture-ns_p1.pcap0", "capture-ns_p1.pcap1")
        real_remove = os.remove

        def flaky_remove(path):
            if path.endswith("pcap1"):
                raise PermissionError("read-only")
            real_remove(path)

        with caplog.at_level(logging.WARNING, logger="podcapture.artifacts"):
            with patch("podcapture.artifacts.os.remove", side_effect=flaky_remove):
                result = ArtifactCleaner(tmp_path).clean(P1)

        assert result == CleanupResult(deleted=1, failed=1)
        assert result.partial_failure
        assert "1 failed" in caplog.text
        summary = [r for r in caplog.records if getattr(r, "lifecycle", None) == "cleanup"]
        assert summary and summary[0].failed == 1

    def test_one_cleanup_record_per_call(self, tmp_path, caplog):
        _touch(tmp_path, "capture-ns_p1.pcap0")
        with caplog.at_level(logging.INFO, logger="podcapture.artifacts"):
            ArtifactCleaner(tmp_path).clean(P1)
        records = [r for r in caplog.records if getattr(r, "lifecycle", None) == "cleanup"]
        assert len(records) == 1
        assert records[0].deleted == 1
