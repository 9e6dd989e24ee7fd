"""Tests for the copy engine."""

import errno
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from tools.tree_backup.copier import CopyEngine, CopyProgress, destination_for
from tools.tree_backup.enumerator import FileEnumerator, ManifestEntry
from tools.tree_backup.errors import FileError
from tools.tree_backup.exclusions import compile_patterns

from conftest import write_tree


def manifest_for(*roots):
    return FileEnumerator(compile_patterns([])).build_manifest(list(roots))


class TestCopyProgress:
    """Test CopyProgress counters."""

    def test_zero_total_is_complete(self):
        """Test that an empty plan reports 100% without dividing by zero."""
        progress = CopyProgress(total_files=0, total_bytes=0)
        assert progress.percent == 100.0

    def test_percent_clamped(self):
        """Test that size drift never reports more than 100%."""
        progress = CopyProgress(total_files=1, total_bytes=10)
        progress.record_copy(25)
        assert progress.bytes_copied == 25
        assert progress.percent == 100.0

    def test_callback_sees_monotonic_percent(self):
        """Test that percent never decreases across updates."""
        seen = []
        progress = CopyProgress(total_files=3, total_bytes=30, callback=lambda p: seen.append(p.percent))

        progress.record_copy(10)
        progress.record_error(FileError(Path("/x"), "copy", "boom"))
        progress.record_copy(10)
        progress.record_copy(10)

        assert seen == sorted(seen)
        assert seen[-1] == 100.0
        assert progress.error_count == 1

    def test_result_snapshot(self):
        """Test converting progress into a CopyResult."""
        progress = CopyProgress(total_files=2, total_bytes=3)
        progress.record_copy(3)
        result = progress.result()

        assert result.files_copied == 1
        assert result.bytes_copied == 3
        assert result.total_files == 2
        assert result.error_count == 0


class TestDestinationFor:
    """Test destination path derivation."""

    def test_reroots_under_destination(self):
        """Test that /data/project/x lands in <dest>/project/x."""
        entry = ManifestEntry(Path("/data/project/src/a.py"), Path("project/src/a.py"), 1)
        assert destination_for(entry, Path("/backup/gen")) == Path("/backup/gen/project/src/a.py")


class TestCopyEngine:
    """Test CopyEngine.copy."""

    @pytest.mark.parametrize("workers", [1, 4])
    def test_round_trip(self, source_tree, tmp_path, workers):
        """Test that every file arrives with identical content and size."""
        manifest = manifest_for(source_tree)
        target = tmp_path / "out"

        result = CopyEngine(workers=workers).copy(manifest, target)

        assert result.error_count == 0
        assert result.files_copied == manifest.total_files
        assert result.bytes_copied == manifest.total_bytes
        for entry in manifest:
            copied = target / entry.relative_path
            assert copied.read_bytes() == entry.absolute_path.read_bytes()
            assert copied.stat().st_size == entry.size

    def test_copy_twice_into_existing_tree(self, source_tree, tmp_path):
        """Test that existing destination directories are not an error."""
        manifest = manifest_for(source_tree)
        target = tmp_path / "out"
        engine = CopyEngine(workers=2)

        first = engine.copy(manifest, target)
        second = engine.copy(manifest, target)

        assert first.error_count == 0
        assert second.error_count == 0
        assert second.files_copied == manifest.total_files

    def test_one_failure_among_many(self, tmp_path):
        """Test that a single failing file does not stop the copy."""
        root = write_tree(tmp_path / "data" / "a", {f"f{i:03d}.txt": str(i) for i in range(100)})
        manifest = manifest_for(root)
        real_copy2 = shutil.copy2

        def flaky_copy2(src, dst, **kwargs):
            if Path(src).name == "f042.txt":
                raise PermissionError(errno.EACCES, "Permission denied", str(src))
            return real_copy2(src, dst, **kwargs)

        with patch("tools.tree_backup.copier.shutil.copy2", side_effect=flaky_copy2):
            result = CopyEngine(workers=4, retry_delay=0).copy(manifest, tmp_path / "out")

        assert result.error_count == 1
        assert result.files_copied == 99
        assert result.errors[0].path == root / "f042.txt"
        assert result.errors[0].operation == "copy"
        assert not (tmp_path / "out" / "a" / "f042.txt").exists()

    def test_transient_error_retried(self, tmp_path):
        """Test that a busy file succeeds on the second attempt."""
        root = write_tree(tmp_path / "data" / "a", {"busy.txt": "data"})
        manifest = manifest_for(root)
        real_copy2 = shutil.copy2
        calls = []

        def busy_once(src, dst, **kwargs):
            calls.append(src)
            if len(calls) == 1:
                raise OSError(errno.EBUSY, "Device or resource busy", str(src))
            return real_copy2(src, dst, **kwargs)

        with patch("tools.tree_backup.copier.shutil.copy2", side_effect=busy_once):
            result = CopyEngine(workers=1, retry_delay=0).copy(manifest, tmp_path / "out")

        assert len(calls) == 2
        assert result.error_count == 0
        assert result.files_copied == 1

    def test_size_drift_uses_actual_size(self, tmp_path):
        """Test that progress counts the size found at copy time."""
        root = write_tree(tmp_path / "data" / "a", {"grows.txt": "12345"})
        manifest = manifest_for(root)
        (root / "grows.txt").write_text("1234567890")

        result = CopyEngine(workers=1).copy(manifest, tmp_path / "out")

        assert manifest.total_bytes == 5
        assert result.bytes_copied == 10

    def test_empty_manifest(self, tmp_path):
        """Test copying an empty tree."""
        root = tmp_path / "data" / "empty"
        root.mkdir(parents=True)
        seen = []

        result = CopyEngine().copy(manifest_for(root), tmp_path / "out", progress_callback=seen.append)

        assert result.files_copied == 0
        assert result.total_bytes == 0
        assert seen == []
        assert (tmp_path / "out").is_dir()

    def test_progress_callback_per_file(self, source_tree, tmp_path):
        """Test that the callback fires once per file with rising byte counts."""
        manifest = manifest_for(source_tree)
        snapshots = []

        CopyEngine(workers=3).copy(
            manifest,
            tmp_path / "out",
            progress_callback=lambda p: snapshots.append((p.files_copied, p.bytes_copied, p.percent)),
        )

        assert len(snapshots) == manifest.total_files
        assert [s[0] for s in snapshots] == list(range(1, manifest.total_files + 1))
        assert [s[1] for s in snapshots] == sorted(s[1] for s in snapshots)
        assert snapshots[-1][2] == 100.0
