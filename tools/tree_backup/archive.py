"""Turning a populated backup tree into a finished generation."""

import os
import shutil
import subprocess
import tarfile
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from shared.logger import get_logger

from .errors import CompressionError
from .retention import PARTIAL_SUFFIX

logger = get_logger(__name__)

EXTERNAL_TOOL_NAMES = ("7z", "7za", "7zz")
EXTERNAL_EXTENSION = ".7z"


class CompressionType(Enum):
    """Compression algorithm of the native tar strategy."""

    NONE = "none"
    GZIP = "gzip"
    BZIP2 = "bzip2"
    XZ = "xz"


class Compressor(Enum):
    """Which compression strategy produces the archive."""

    NATIVE = "native"
    EXTERNAL = "external"


_TAR_MODES = {
    CompressionType.NONE: ("w", ".tar"),
    CompressionType.GZIP: ("w:gz", ".tar.gz"),
    CompressionType.BZIP2: ("w:bz2", ".tar.bz2"),
    CompressionType.XZ: ("w:xz", ".tar.xz"),
}


def find_external_tool(tool_path: Optional[Path] = None) -> Optional[Path]:
    """
    Locate a 7-Zip compatible executable.

    Args:
        tool_path: Explicit executable path, used if it exists

    Returns:
        Path to the executable, or None if unavailable
    """
    if tool_path is not None:
        candidate = Path(tool_path).expanduser()
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return candidate
        resolved = shutil.which(str(tool_path))
        return Path(resolved) if resolved else None

    for name in EXTERNAL_TOOL_NAMES:
        resolved = shutil.which(name)
        if resolved:
            return Path(resolved)
    return None


def _tree_members(source_dir: Path) -> List[Path]:
    """Top-level entries of a tree, sorted for reproducible archives."""
    return sorted(source_dir.iterdir(), key=lambda p: p.name)


def create_tar_archive(source_dir: Path, archive_path: Path, compression: CompressionType) -> None:
    """
    Write source_dir's contents to a tar archive.

    Member names are relative to source_dir, nothing of the absolute or
    staging location leaks into the archive.
    """
    mode, _ = _TAR_MODES[compression]
    with tarfile.open(archive_path, mode) as tar:
        for member in _tree_members(source_dir):
            tar.add(member, arcname=member.name, recursive=True)


def create_external_archive(source_dir: Path, archive_path: Path, tool: Path) -> None:
    """
    Write source_dir's contents to a 7z archive with an external tool.

    The tool runs inside source_dir and archives ".", so member names are
    relative to source_dir.
    """
    command = [str(tool), "a", "-t7z", "-y", str(Path(archive_path).resolve()), "."]
    logger.debug(f"Running {' '.join(command)} in {source_dir}")

    try:
        completed = subprocess.run(
            command,
            cwd=str(source_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as e:
        raise CompressionError(f"Failed to run {tool}: {e}")

    if completed.returncode != 0:
        detail = (completed.stderr or completed.stdout or "").strip().splitlines()
        raise CompressionError(
            f"{tool.name} exited with code {completed.returncode}"
            + (f": {detail[-1]}" if detail else "")
        )


class ArchiveFinalizer:
    """
    Finalizes a populated tree into a generation at the destination.

    Either compresses the tree into a single archive or promotes the
    directory itself. Both paths go through a ".partial" name and an atomic
    rename, so a generation is visible only once it is complete.
    """

    def __init__(
        self,
        compression: CompressionType = CompressionType.GZIP,
        compressor: Compressor = Compressor.NATIVE,
        external_tool_path: Optional[Path] = None,
    ):
        """
        Initialize the finalizer.

        Args:
            compression: Algorithm for the native tar strategy
            compressor: Native tarfile or external 7-Zip
            external_tool_path: Explicit path of the external tool
        """
        self.compression = compression
        self.compressor = compressor
        self.external_tool_path = external_tool_path

    def resolve_strategy(self) -> Tuple[Compressor, Optional[Path]]:
        """Pick the strategy to use, falling back to native if needed."""
        if self.compressor is not Compressor.EXTERNAL:
            return Compressor.NATIVE, None

        tool = find_external_tool(self.external_tool_path)
        if tool is None:
            wanted = self.external_tool_path or "/".join(EXTERNAL_TOOL_NAMES)
            logger.warning(f"External compressor {wanted} not found, falling back to native compression")
            return Compressor.NATIVE, None
        return Compressor.EXTERNAL, tool

    def archive_extension(self, strategy: Compressor) -> str:
        if strategy is Compressor.EXTERNAL:
            return EXTERNAL_EXTENSION
        return _TAR_MODES[self.compression][1]

    def finalize(
        self,
        source_dir: Path,
        destination: Path,
        archive_name: str,
        remove_source: bool = True,
    ) -> Path:
        """
        Compress a tree into a single archive at the destination.

        Args:
            source_dir: Staging tree or uncompressed copy to archive
            destination: Backup root receiving the archive
            archive_name: Generation name without extension
            remove_source: Delete source_dir once the archive is in place

        Returns:
            Path of the finished archive

        Raises:
            CompressionError: If the archive cannot be created
        """
        source_dir = Path(source_dir)
        strategy, tool = self.resolve_strategy()
        archive_path = Path(destination) / f"{archive_name}{self.archive_extension(strategy)}"
        partial_path = archive_path.with_name(archive_path.name + PARTIAL_SUFFIX)

        logger.info(f"Compressing {source_dir} into {archive_path.name} ({strategy.value})")
        try:
            if strategy is Compressor.EXTERNAL:
                create_external_archive(source_dir, partial_path, tool)
            else:
                create_tar_archive(source_dir, partial_path, self.compression)
            os.replace(partial_path, archive_path)
        except (OSError, tarfile.TarError, CompressionError) as e:
            _remove_quietly(partial_path)
            if isinstance(e, CompressionError):
                raise
            raise CompressionError(f"Failed to create archive {archive_path.name}: {e}")

        logger.info(f"Archive created: {archive_path} ({archive_path.stat().st_size} bytes)")

        if remove_source:
            shutil.rmtree(source_dir, ignore_errors=True)
            logger.debug(f"Removed uncompressed tree {source_dir}")

        return archive_path

    def promote(self, source_dir: Path, destination: Path, name: str) -> Path:
        """
        Turn a populated directory into a directory generation.

        A staged tree on another filesystem is first moved next to the
        destination under a ".partial" name, then renamed into place.
        """
        source_dir = Path(source_dir)
        final_path = Path(destination) / name
        partial_path = final_path.with_name(name + PARTIAL_SUFFIX)

        if source_dir != partial_path:
            shutil.move(str(source_dir), str(partial_path))
        os.replace(partial_path, final_path)

        logger.info(f"Backup directory finalized: {final_path}")
        return final_path


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove partial archive {path}: {e}")
