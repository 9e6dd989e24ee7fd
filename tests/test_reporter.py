"""Tests for run summaries."""

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from tools.tree_backup.errors import FileError
from tools.tree_backup.reporter import (
    MAX_LISTED_ERRORS,
    RunSummary,
    format_duration,
    format_size,
    format_summary,
    summary_status,
    summary_subject,
)

STARTED = datetime(2024, 1, 1, 12, 0, 0)


def make_summary(**kwargs):
    defaults = dict(
        run_id="20240101_120000",
        started_at=STARTED,
        finished_at=STARTED + timedelta(seconds=75),
        sources=[Path("/data/project")],
        destination=Path("/backup"),
    )
    defaults.update(kwargs)
    return RunSummary(**defaults)


class TestFormatting:
    """Test size and duration helpers."""

    @pytest.mark.parametrize(
        "size,expected",
        [(0, "0.00 B"), (1536, "1.50 KB"), (5 * 1024**3, "5.00 GB")],
    )
    def test_format_size(self, size, expected):
        """Test human-readable sizes."""
        assert format_size(size) == expected

    @pytest.mark.parametrize(
        "seconds,expected",
        [(4.2, "4.20s"), (125, "2m 05s"), (3723, "1h 02m 03s")],
    )
    def test_format_duration(self, seconds, expected):
        """Test human-readable durations."""
        assert format_duration(seconds) == expected


class TestRunSummary:
    """Test summary status and text."""

    def test_status(self):
        """Test OK, WARN and FAILED states."""
        assert summary_status(make_summary()) == "OK"
        assert summary_status(make_summary(errors=[FileError(Path("/x"), "copy", "denied")])) == "WARN"
        assert summary_status(make_summary(fatal_error="locked")) == "FAILED"

    def test_duration(self):
        """Test duration from start and finish times."""
        assert make_summary().duration_seconds == 75.0

    def test_subject(self):
        """Test the notification subject."""
        summary = make_summary(errors=[FileError(Path("/x"), "copy", "denied")] * 2)
        assert summary_subject(summary) == "[tree-backup] WARN project -> /backup (2 errors)"

    def test_always_has_core_fields(self):
        """Test that counts and duration appear even for a failed run."""
        text = format_summary(make_summary(fatal_error="Destination is locked"))

        assert "Files found:  0" in text
        assert "Files copied: 0" in text
        assert "Errors:       0" in text
        assert "Duration:     1m 15s" in text
        assert "Failure:      Destination is locked" in text

    def test_lists_errors(self):
        """Test that per-file errors are listed."""
        text = format_summary(make_summary(errors=[FileError(Path("/data/project/a"), "copy", "denied")]))
        assert "  - copy /data/project/a: denied" in text

    def test_error_list_truncated(self):
        """Test that long error lists are capped."""
        errors = [FileError(Path(f"/f{i}"), "copy", "denied") for i in range(MAX_LISTED_ERRORS + 5)]

        text = format_summary(make_summary(errors=errors))

        assert text.count("  - copy") == MAX_LISTED_ERRORS
        assert "... and 5 more" in text
