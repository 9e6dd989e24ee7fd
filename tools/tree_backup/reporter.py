"""Run summaries for the log, the console and email notifications."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .errors import FileError

MAX_LISTED_ERRORS = 50


@dataclass
class RunSummary:
    """Everything worth reporting about a backup run."""

    run_id: str
    started_at: datetime
    sources: List[Path]
    destination: Path
    finished_at: Optional[datetime] = None
    files_found: int = 0
    bytes_found: int = 0
    files_copied: int = 0
    bytes_copied: int = 0
    errors: List[FileError] = field(default_factory=list)
    generation: Optional[Path] = None
    pruned: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    log_file: Optional[Path] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        return self.fatal_error is None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return max(0.0, (end - self.started_at).total_seconds())


def format_size(size_bytes: float) -> str:
    """
    Format bytes to human-readable size.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string
    """
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


def format_duration(seconds: float) -> str:
    """Format a duration as "1h 02m 03s", "2m 05s" or "4.20s"."""
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    return f"{minutes}m {secs:02d}s"


def summary_status(summary: RunSummary) -> str:
    if not summary.success:
        return "FAILED"
    if summary.error_count:
        return "WARN"
    return "OK"


def summary_subject(summary: RunSummary) -> str:
    """Email subject line for a run."""
    sources = ", ".join(p.name or str(p) for p in summary.sources)
    subject = f"[tree-backup] {summary_status(summary)} {sources} -> {summary.destination}"
    if summary.error_count:
        subject += f" ({summary.error_count} error{'s' if summary.error_count != 1 else ''})"
    return subject


def format_summary(summary: RunSummary) -> str:
    """
    Plain-text report of a run.

    Files found, files copied, error count and duration are always present,
    whatever the outcome.
    """
    lines = [
        f"Backup run {summary.run_id}: {summary_status(summary)}",
        f"Sources:      {', '.join(str(p) for p in summary.sources)}",
        f"Destination:  {summary.destination}",
        f"Started:      {summary.started_at:%Y-%m-%d %H:%M:%S}",
        f"Duration:     {format_duration(summary.duration_seconds)}",
        f"Files found:  {summary.files_found} ({format_size(summary.bytes_found)})",
        f"Files copied: {summary.files_copied} ({format_size(summary.bytes_copied)})",
        f"Errors:       {summary.error_count}",
    ]

    if summary.generation is not None:
        lines.append(f"Generation:   {summary.generation}")
    if summary.pruned:
        lines.append(f"Pruned:       {', '.join(summary.pruned)}")
    if summary.log_file is not None:
        lines.append(f"Log file:     {summary.log_file}")
    if summary.fatal_error:
        lines.append(f"Failure:      {summary.fatal_error}")

    if summary.errors:
        lines.append("")
        lines.append("Errors:")
        for item in summary.errors[:MAX_LISTED_ERRORS]:
            lines.append(f"  - {item}")
        hidden = summary.error_count - MAX_LISTED_ERRORS
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")

    return "\n".join(lines)
