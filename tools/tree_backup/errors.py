"""Error types raised by the backup engine."""

from dataclasses import dataclass
from pathlib import Path


class BackupError(Exception):
    """Base class for errors that stop a backup run."""


class PreconditionError(BackupError):
    """A source or destination required by the run is missing or unusable."""


class LockError(PreconditionError):
    """Another run already holds the destination lock."""


class ConfigurationError(BackupError):
    """Invalid configuration values."""


class ExclusionPatternError(ConfigurationError):
    """An exclusion pattern cannot be compiled."""


class CompressionError(BackupError):
    """Archive creation failed."""


@dataclass(frozen=True)
class FileError:
    """A non-fatal problem with a single file or directory."""

    path: Path
    operation: str
    message: str

    def __str__(self) -> str:
        return f"{self.operation} {self.path}: {self.message}"
