"""Source tree enumeration into a backup manifest."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Sequence, Tuple

from shared.logger import get_logger

from .errors import FileError
from .exclusions import ExclusionMatcher, match_offset

logger = get_logger(__name__)


@dataclass(frozen=True)
class ManifestEntry:
    """A file planned for copy."""

    absolute_path: Path
    relative_path: Path
    size: int


@dataclass
class BackupManifest:
    """Files planned for copy, grouped by source root."""

    entries: Dict[Path, List[ManifestEntry]] = field(default_factory=dict)
    errors: List[FileError] = field(default_factory=list)

    @property
    def total_files(self) -> int:
        return sum(len(items) for items in self.entries.values())

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for items in self.entries.values() for entry in items)

    @property
    def roots(self) -> List[Path]:
        return list(self.entries)

    def __iter__(self) -> Iterator[ManifestEntry]:
        for items in self.entries.values():
            yield from items

    def __len__(self) -> int:
        return self.total_files


class FileEnumerator:
    """
    Walks source roots and collects files that survive the exclusion rules.

    The walk runs in two phases: directories first, pruning excluded subtrees
    so they are never descended into, then the files of every surviving
    directory.
    """

    def __init__(self, matcher: ExclusionMatcher):
        """
        Initialize the enumerator.

        Args:
            matcher: Compiled exclusion rules
        """
        self.matcher = matcher

    def enumerate(self, root: Path) -> Tuple[List[ManifestEntry], List[FileError]]:
        """
        Enumerate the files under a source root.

        Args:
            root: Absolute source root

        Returns:
            Tuple of (manifest entries, non-fatal errors)
        """
        root = Path(root)
        errors: List[FileError] = []
        start = match_offset(root)

        if self.matcher.matches(root, start):
            logger.warning(f"Source root {root} is itself excluded, nothing to back up")
            return [], errors

        directories = self._collect_directories(root, start, errors)
        entries: List[ManifestEntry] = []
        anchor = root.parent

        for directory in directories:
            entries.extend(self._collect_files(directory, anchor, start, errors))

        logger.info(
            f"Enumerated {root}: {len(entries)} file(s) in {len(directories)} "
            f"director{'y' if len(directories) == 1 else 'ies'}, {len(errors)} error(s)"
        )
        return entries, errors

    def build_manifest(self, roots: Sequence[Path]) -> BackupManifest:
        """Enumerate every root into one manifest."""
        manifest = BackupManifest()
        for root in roots:
            entries, errors = self.enumerate(Path(root))
            manifest.entries[Path(root)] = entries
            manifest.errors.extend(errors)
        return manifest

    def _collect_directories(self, root: Path, start: int, errors: List[FileError]) -> List[Path]:
        """Phase one: the directories that survive exclusion."""

        def on_error(exc: OSError) -> None:
            path = Path(exc.filename) if exc.filename else root
            logger.debug(f"Cannot scan {path}: {exc.strerror or exc}")
            errors.append(FileError(path, "scan", exc.strerror or str(exc)))

        directories: List[Path] = []
        for current, dirnames, _ in os.walk(root, topdown=True, onerror=on_error, followlinks=False):
            directories.append(Path(current))
            kept = []
            for name in sorted(dirnames):
                candidate = os.path.join(current, name)
                if self.matcher.matches(candidate, start):
                    logger.debug(f"Excluded directory {candidate}")
                    continue
                kept.append(name)
            # os.walk only descends into what is left in dirnames
            dirnames[:] = kept

        return directories

    def _collect_files(
        self, directory: Path, anchor: Path, start: int, errors: List[FileError]
    ) -> List[ManifestEntry]:
        """Phase two: files of one surviving directory."""
        if self.matcher.matches(directory, start):
            return []

        try:
            with os.scandir(directory) as it:
                candidates = sorted(it, key=lambda e: e.name)
        except OSError as e:
            errors.append(FileError(directory, "scan", e.strerror or str(e)))
            return []

        entries = []
        for dir_entry in candidates:
            try:
                if dir_entry.is_dir(follow_symlinks=False):
                    continue
                if self.matcher.matches(dir_entry.path, start):
                    logger.debug(f"Excluded file {dir_entry.path}")
                    continue
                size = dir_entry.stat(follow_symlinks=False).st_size
            except OSError as e:
                logger.debug(f"Cannot stat {dir_entry.path}: {e}")
                errors.append(FileError(Path(dir_entry.path), "scan", e.strerror or str(e)))
                continue

            absolute = Path(dir_entry.path)
            entries.append(
                ManifestEntry(
                    absolute_path=absolute,
                    relative_path=absolute.relative_to(anchor),
                    size=size,
                )
            )

        return entries
