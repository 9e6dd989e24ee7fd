"""Copy engine executing a backup manifest."""

import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from shared.logger import get_logger
from shared.retry import retry_call

from .enumerator import BackupManifest, ManifestEntry
from .errors import FileError

logger = get_logger(__name__)


@dataclass
class CopyResult:
    """Outcome of copying one manifest."""

    files_copied: int
    bytes_copied: int
    errors: List[FileError] = field(default_factory=list)
    total_files: int = 0
    total_bytes: int = 0

    @property
    def error_count(self) -> int:
        return len(self.errors)


class CopyProgress:
    """
    Run-scoped copy counters, safe to update from several workers.

    The optional callback is invoked under the lock after every file, so the
    values it observes are consistent and percent never decreases.
    """

    def __init__(
        self,
        total_files: int,
        total_bytes: int,
        callback: Optional[Callable[["CopyProgress"], None]] = None,
    ):
        self.total_files = total_files
        self.total_bytes = total_bytes
        self.files_copied = 0
        self.bytes_copied = 0
        self.errors: List[FileError] = []
        self._callback = callback
        self._lock = threading.Lock()

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def percent(self) -> float:
        if self.total_bytes <= 0:
            return 100.0
        return min(100.0, self.bytes_copied * 100.0 / self.total_bytes)

    def record_copy(self, size: int) -> None:
        with self._lock:
            self.files_copied += 1
            self.bytes_copied += max(0, size)
            self._notify()

    def record_error(self, error: FileError) -> None:
        with self._lock:
            self.errors.append(error)
            self._notify()

    def _notify(self) -> None:
        if self._callback is not None:
            self._callback(self)

    def result(self) -> CopyResult:
        with self._lock:
            return CopyResult(
                files_copied=self.files_copied,
                bytes_copied=self.bytes_copied,
                errors=list(self.errors),
                total_files=self.total_files,
                total_bytes=self.total_bytes,
            )


def destination_for(entry: ManifestEntry, destination_root: Path) -> Path:
    """Re-root a manifest entry under the destination."""
    return Path(destination_root).joinpath(*entry.relative_path.parts)


class CopyEngine:
    """
    Copies manifest entries into a destination directory.

    Attributes:
        workers: Size of the worker pool (1 copies in the calling thread)
        retry_attempts: Attempts per file for transient errors
        retry_delay: Initial delay between attempts, in seconds
    """

    def __init__(self, workers: int = 4, retry_attempts: int = 2, retry_delay: float = 0.5):
        self.workers = max(1, workers)
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay

    def copy(
        self,
        manifest: BackupManifest,
        destination_root: Path,
        progress_callback: Optional[Callable[[CopyProgress], None]] = None,
    ) -> CopyResult:
        """
        Copy every file of the manifest under destination_root.

        Args:
            manifest: Files to copy
            destination_root: Directory receiving "<root name>/..." trees
            progress_callback: Called after each file with the progress

        Returns:
            CopyResult with counters and per-file errors
        """
        destination_root = Path(destination_root)
        destination_root.mkdir(parents=True, exist_ok=True)

        progress = CopyProgress(manifest.total_files, manifest.total_bytes, progress_callback)
        entries = list(manifest)

        logger.info(
            f"Copying {progress.total_files} file(s), {progress.total_bytes} bytes "
            f"to {destination_root} with {self.workers} worker(s)"
        )

        if self.workers == 1 or len(entries) <= 1:
            for entry in entries:
                self._copy_entry(entry, destination_root, progress)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                # _copy_entry never raises, list() only drains the iterator
                list(executor.map(lambda e: self._copy_entry(e, destination_root, progress), entries))

        result = progress.result()
        logger.info(
            f"Copied {result.files_copied}/{result.total_files} file(s), "
            f"{result.bytes_copied} bytes, {result.error_count} error(s)"
        )
        return result

    def _copy_entry(self, entry: ManifestEntry, destination_root: Path, progress: CopyProgress) -> None:
        target = destination_for(entry, destination_root)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if os.path.islink(target):
                # copy2 cannot overwrite an existing link when copying links
                os.unlink(target)
            retry_call(
                shutil.copy2,
                entry.absolute_path,
                target,
                follow_symlinks=False,
                attempts=self.retry_attempts,
                delay=self.retry_delay,
            )
            # the file may have changed since the scan
            size = os.lstat(target).st_size
        except OSError as e:
            message = e.strerror or str(e)
            logger.error(f"Failed to copy {entry.absolute_path}: {message}")
            progress.record_error(FileError(entry.absolute_path, "copy", message))
            return

        logger.debug(f"Copied {entry.absolute_path} -> {target} ({size} bytes)")
        progress.record_copy(size)
