"""Backup run orchestration: enumerate, copy, finalize and rotate generations."""

import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from shared.logger import get_logger

from .archive import ArchiveFinalizer
from .config import BackupConfig
from .copier import CopyEngine, CopyProgress
from .enumerator import FileEnumerator
from .errors import BackupError, FileError, LockError
from .exclusions import build_matcher
from .notifier import EmailNotifier
from .reporter import RunSummary, format_summary, summary_subject
from .retention import PARTIAL_SUFFIX, Generation, GenerationKind, RetentionManager

logger = get_logger(__name__)

LOCK_FILE_NAME = ".tree-backup.lock"
# a lock file without a readable pid is stale once it is this old
LOCK_GRACE_SECONDS = 30.0


@dataclass
class BackupResult:
    """Result of a backup run."""

    success: bool
    generation: Optional[Path]
    summary: RunSummary
    error: Optional[str]
    duration_seconds: float


class RunLock:
    """
    Exclusive lock file at the destination, one backup run at a time.

    A lock left by a process that no longer exists is taken over, as is an
    empty or unreadable lock file older than the grace period.
    """

    def __init__(self, directory: Path, grace_seconds: float = LOCK_GRACE_SECONDS):
        self.path = Path(directory) / LOCK_FILE_NAME
        self.grace_seconds = grace_seconds
        self._held = False

    def acquire(self) -> None:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            owner = self._owner_pid()
            if self._is_stale(owner):
                logger.warning(f"Removing stale lock {self.path} left by pid {owner or 'unknown'}")
                self.path.unlink(missing_ok=True)
                return self.acquire()
            raise LockError(f"Destination is locked by another run ({self.path}, pid {owner})")

        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        self._held = True

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def _owner_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _is_stale(self, owner: Optional[int]) -> bool:
        if owner is not None:
            return not _pid_alive(owner)
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.grace_seconds

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    if os.name != "posix":
        # no cheap liveness probe, assume the owner is still running
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class BackupAutomator:
    """Runs backups of the configured sources and rotates old generations."""

    def __init__(self, config: BackupConfig, log_file: Optional[Path] = None):
        """
        Initialize the backup automator.

        Args:
            config: Backup configuration
            log_file: Log file of this run, attached to notifications
        """
        self.config = config
        self.log_file = log_file
        self.retention = RetentionManager(config.destination, prefix=config.prefix)

    @property
    def generation_kind(self) -> GenerationKind:
        return GenerationKind.ARCHIVE if self.config.compress else GenerationKind.DIRECTORY

    def create_backup(
        self, progress_callback: Optional[Callable[[CopyProgress], None]] = None
    ) -> BackupResult:
        """
        Create a new backup generation of the configured sources.

        Per-file errors do not fail the run, they are counted in the summary.
        The run fails only when a precondition or the configuration is wrong,
        the destination is locked, or the generation cannot be finalized.

        Args:
            progress_callback: Called after each copied file

        Returns:
            BackupResult with the run summary
        """
        started = datetime.now()
        summary = RunSummary(
            run_id=started.strftime("%Y%m%d_%H%M%S"),
            started_at=started,
            sources=list(self.config.sources),
            destination=self.config.destination,
            log_file=self.log_file,
        )

        try:
            self.config.validate()
            matcher = build_matcher(self.config.exclude_patterns, self.config.use_default_excludes)
            sources = self.config.resolved_sources()
            summary.sources = sources
            with RunLock(self.config.destination):
                self._run(sources, matcher, summary, progress_callback)
        except BackupError as e:
            summary.fatal_error = str(e)
            logger.error(f"Backup failed: {e}")
        except Exception as e:
            summary.fatal_error = str(e)
            logger.exception(f"Backup failed unexpectedly: {e}")

        summary.finished_at = datetime.now()
        for line in format_summary(summary).splitlines():
            logger.info(line)

        if self.config.notify:
            self.send_notification(summary)

        return BackupResult(
            success=summary.success,
            generation=summary.generation,
            summary=summary,
            error=summary.fatal_error,
            duration_seconds=summary.duration_seconds,
        )

    def _run(self, sources, matcher, summary: RunSummary, progress_callback) -> None:
        config = self.config
        kind = self.generation_kind

        swept = self.retention.sweep_partials()
        if swept:
            logger.info(f"Removed {len(swept)} unfinished generation(s)")

        for existing_kind in GenerationKind:
            summary.pruned.extend(self._prune(existing_kind, summary))

        manifest = FileEnumerator(matcher).build_manifest(sources)
        summary.files_found = manifest.total_files
        summary.bytes_found = manifest.total_bytes
        summary.errors.extend(manifest.errors)
        logger.info(f"Found {manifest.total_files} file(s) to back up ({manifest.total_bytes} bytes)")

        name = self.retention.new_generation_name()
        staging_root = None
        if config.stage:
            staging_root = config.staging_dir / f"tree-backup_{name}"
            work_dir = staging_root
        else:
            work_dir = config.destination / f"{name}{PARTIAL_SUFFIX}"

        try:
            engine = CopyEngine(workers=config.workers)
            result = engine.copy(manifest, work_dir, progress_callback)
            summary.files_copied = result.files_copied
            summary.bytes_copied = result.bytes_copied
            summary.errors.extend(result.errors)

            finalizer = ArchiveFinalizer(
                compression=config.compression,
                compressor=config.compressor,
                external_tool_path=config.external_tool_path,
            )
            if config.compress:
                keep_source = config.stage and not config.clear_staging_after
                summary.generation = finalizer.finalize(
                    work_dir, config.destination, name, remove_source=not keep_source
                )
            else:
                summary.generation = finalizer.promote(work_dir, config.destination, name)
        finally:
            if staging_root is not None and config.clear_staging_after and staging_root.exists():
                shutil.rmtree(staging_root, ignore_errors=True)
                logger.debug(f"Removed staging area {staging_root}")

        summary.pruned.extend(self._prune(kind, summary))

    def _prune(self, kind: GenerationKind, summary: RunSummary) -> List[str]:
        try:
            return self.retention.prune(kind, self.config.retain_versions)
        except OSError as e:
            path = Path(e.filename) if e.filename else self.config.destination
            logger.error(f"Failed to prune {kind.value} generations: {e}")
            summary.errors.append(FileError(path, "delete", e.strerror or str(e)))
            return []

    def list_generations(self) -> Dict[GenerationKind, List[Generation]]:
        """List existing generations at the destination, oldest first."""
        return {kind: self.retention.list_generations(kind) for kind in GenerationKind}

    def send_notification(self, summary: RunSummary) -> bool:
        """Email the run summary; failures are logged, never raised."""
        config = self.config
        if not (config.notify_to and config.notify_from and config.smtp_host):
            logger.warning("Notification requested but SMTP settings are incomplete")
            return False

        notifier = EmailNotifier(
            smtp_host=config.smtp_host,
            smtp_port=config.smtp_port,
            use_starttls=config.smtp_starttls,
            username=config.smtp_username,
            password=config.smtp_password,
        )
        return notifier.send(
            config.notify_to,
            config.notify_from,
            summary_subject(summary),
            format_summary(summary),
            attachment=self.log_file,
        )
