"""Generation naming and count-based retention at a backup destination."""

import glob
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import List, Optional

from shared.logger import get_logger

from .errors import ConfigurationError

logger = get_logger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
PARTIAL_SUFFIX = ".partial"

# longest first so ".tar.gz" wins over ".tar"
ARCHIVE_EXTENSIONS = (".tar.gz", ".tar.bz2", ".tar.xz", ".tar", ".7z", ".zip")


class GenerationKind(Enum):
    """Artifact kind of a backup generation."""

    DIRECTORY = "directory"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class Generation:
    """A finished backup generation found at the destination."""

    path: Path
    kind: GenerationKind
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.path.name


def format_timestamp(moment: datetime) -> str:
    """Format a timestamp for embedding in a generation name."""
    return moment.strftime(TIMESTAMP_FORMAT)


def generation_pattern(prefix: str, kind: GenerationKind) -> "re.Pattern[str]":
    """Regex matching finished generation names of one kind."""
    stamp = r"(?P<stamp>\d{8}_\d{6}_\d{6})"
    if kind is GenerationKind.DIRECTORY:
        return re.compile(rf"^{re.escape(prefix)}_{stamp}$")
    extensions = "|".join(re.escape(ext) for ext in ARCHIVE_EXTENSIONS)
    return re.compile(rf"^{re.escape(prefix)}_{stamp}(?P<ext>{extensions})$")


class RetentionManager:
    """
    Lists and prunes backup generations at one destination.

    Only entries named "<prefix>_<YYYYMMDD>_<HHMMSS>_<micro>[ext]" are ever
    considered, so unrelated content at the destination is left alone. Order
    comes from the embedded timestamp, never from filesystem times.

    Policy: prune(kind, keep=N) leaves at most N generations of that kind.
    """

    def __init__(self, destination: Path, prefix: str = "backup"):
        """
        Initialize the retention manager.

        Args:
            destination: Backup root holding the generations
            prefix: Generation name prefix
        """
        self.destination = Path(destination)
        self.prefix = prefix

    def list_generations(self, kind: GenerationKind) -> List[Generation]:
        """
        List finished generations of a kind, oldest first.

        Args:
            kind: Directory or archive generations

        Returns:
            Generations sorted by embedded timestamp
        """
        if not self.destination.is_dir():
            return []

        pattern = generation_pattern(self.prefix, kind)
        generations = []
        for path in self.destination.iterdir():
            match = pattern.match(path.name)
            if not match:
                continue
            if kind is GenerationKind.DIRECTORY and not path.is_dir():
                continue
            if kind is GenerationKind.ARCHIVE and not path.is_file():
                continue
            timestamp = datetime.strptime(match.group("stamp"), TIMESTAMP_FORMAT)
            generations.append(Generation(path=path, kind=kind, timestamp=timestamp))

        generations.sort(key=lambda g: (g.timestamp, g.name))
        return generations

    def prune_oldest(self, kind: GenerationKind, keep: int) -> Optional[str]:
        """
        Delete the single oldest generation if there are more than keep.

        Returns:
            Name of the deleted generation, or None if nothing was pruned
        """
        self._check_keep(keep)
        generations = self.list_generations(kind)
        if len(generations) <= keep:
            return None

        oldest = generations[0]
        self._delete(oldest.path)
        logger.info(f"Pruned {kind.value} generation {oldest.name} ({len(generations) - 1} left)")
        return oldest.name

    def prune(self, kind: GenerationKind, keep: int) -> List[str]:
        """
        Delete the oldest generations until at most keep remain.

        Args:
            kind: Directory or archive generations
            keep: Generations to retain (>= 1)

        Returns:
            Names of the deleted generations, oldest first
        """
        self._check_keep(keep)
        pruned = []
        while True:
            name = self.prune_oldest(kind, keep)
            if name is None:
                break
            pruned.append(name)
        if not pruned:
            logger.debug(f"No {kind.value} generations to prune (keep={keep})")
        return pruned

    def plan_prune(self, kind: GenerationKind, keep: int) -> List[Generation]:
        """Return the generations prune() would delete, without deleting."""
        self._check_keep(keep)
        generations = self.list_generations(kind)
        return generations[: max(0, len(generations) - keep)]

    def sweep_partials(self) -> List[str]:
        """
        Remove unfinished generations left behind by interrupted runs.

        Must only be called while holding the destination run lock.
        """
        if not self.destination.is_dir():
            return []

        swept = []
        directory_pattern = generation_pattern(self.prefix, GenerationKind.DIRECTORY)
        archive_pattern = generation_pattern(self.prefix, GenerationKind.ARCHIVE)
        for path in sorted(self.destination.iterdir()):
            if not path.name.endswith(PARTIAL_SUFFIX):
                continue
            name = path.name[: -len(PARTIAL_SUFFIX)]
            if not (directory_pattern.match(name) or archive_pattern.match(name)):
                continue
            self._delete(path)
            logger.warning(f"Removed unfinished generation {path.name}")
            swept.append(path.name)
        return swept

    def new_generation_name(self, extension: str = "", now: Optional[datetime] = None) -> str:
        """
        Build a generation name that is unused at the destination.

        The timestamp is bumped by a microsecond while any entry (finished or
        partial, of any kind) already uses the candidate stem.
        """
        moment = now or datetime.now()
        while True:
            stem = f"{self.prefix}_{format_timestamp(moment)}"
            if not self._stem_in_use(stem):
                return f"{stem}{extension}"
            moment += timedelta(microseconds=1)

    def _stem_in_use(self, stem: str) -> bool:
        if not self.destination.is_dir():
            return False
        for path in self.destination.glob(f"{glob.escape(stem)}*"):
            rest = path.name[len(stem):]
            if rest.endswith(PARTIAL_SUFFIX):
                rest = rest[: -len(PARTIAL_SUFFIX)]
            if rest == "" or rest in ARCHIVE_EXTENSIONS:
                return True
        return False

    @staticmethod
    def _check_keep(keep: int) -> None:
        if keep < 1:
            raise ConfigurationError(f"Retention count must be at least 1, got {keep}")

    @staticmethod
    def _delete(path: Path) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
        except FileNotFoundError:
            # already gone, e.g. removed by hand
            logger.debug(f"{path} already removed")
