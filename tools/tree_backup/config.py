"""Backup run configuration."""

import json
import os
import tempfile
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .archive import CompressionType, Compressor
from .errors import ConfigurationError, PreconditionError


class LogVerbosity(str, Enum):
    """Log levels selectable for a run."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    DEBUG = "debug"


@dataclass
class BackupConfig:
    """Configuration for one backup run."""

    sources: List[Path]
    destination: Path
    exclude_patterns: List[str] = field(default_factory=list)
    use_default_excludes: bool = True
    compress: bool = False
    compression: CompressionType = CompressionType.GZIP
    compressor: Compressor = Compressor.NATIVE
    external_tool_path: Optional[Path] = None
    stage: bool = False
    staging_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    clear_staging_after: bool = True
    retain_versions: int = 3
    prefix: str = "backup"
    workers: int = 4
    notify: bool = False
    notify_to: List[str] = field(default_factory=list)
    notify_from: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 25
    smtp_starttls: bool = False
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    log_directory: Optional[Path] = None
    log_verbosity: LogVerbosity = LogVerbosity.INFO

    def __post_init__(self):
        self.sources = [Path(s).expanduser() for s in self.sources]
        self.destination = Path(self.destination).expanduser()
        self.staging_dir = Path(self.staging_dir).expanduser()
        if self.external_tool_path is not None:
            self.external_tool_path = Path(self.external_tool_path).expanduser()
        if self.log_directory is not None:
            self.log_directory = Path(self.log_directory).expanduser()
        if isinstance(self.notify_to, str):
            self.notify_to = [a.strip() for a in self.notify_to.split(",") if a.strip()]
        self.compression = _coerce(CompressionType, self.compression, "compression")
        self.compressor = _coerce(Compressor, self.compressor, "compressor")
        self.log_verbosity = _coerce(LogVerbosity, self.log_verbosity, "log_verbosity")

    def resolved_sources(self) -> List[Path]:
        """Absolute, symlink-resolved source roots."""
        return [source.resolve() for source in self.sources]

    def validate(self) -> None:
        """
        Check the configuration before anything touches the filesystem.

        Raises:
            ConfigurationError: For invalid values
            PreconditionError: For missing source or destination paths
        """
        if not self.sources:
            raise ConfigurationError("At least one source directory is required")
        if self.retain_versions < 1:
            raise ConfigurationError(f"retain_versions must be at least 1, got {self.retain_versions}")
        if self.workers < 1:
            raise ConfigurationError(f"workers must be at least 1, got {self.workers}")
        if not self.prefix or any(c in self.prefix for c in "/\\"):
            raise ConfigurationError(f"Invalid generation prefix: {self.prefix!r}")
        if self.notify and not (self.notify_to and self.notify_from and self.smtp_host):
            raise ConfigurationError("Notification requires notify_to, notify_from and smtp_host")

        for source in self.sources:
            if not source.exists():
                raise PreconditionError(f"Source path does not exist: {source}")
            if not source.is_dir():
                raise PreconditionError(f"Source path is not a directory: {source}")

        if not self.destination.is_dir():
            raise PreconditionError(f"Destination path does not exist: {self.destination}")

        resolved_sources = self.resolved_sources()
        resolved_destination = self.destination.resolve()
        for source in resolved_sources:
            if resolved_destination == source or source in resolved_destination.parents:
                raise ConfigurationError(f"Destination {self.destination} is inside source {source}")

        # each source is copied to "<generation>/<source name>/..."
        seen: Dict[str, Path] = {}
        for source in resolved_sources:
            key = source.name.lower() if os.name == "nt" else source.name
            if key in seen:
                raise ConfigurationError(
                    f"Sources {seen[key]} and {source} share the name {source.name!r} "
                    f"and would overwrite each other in the backup"
                )
            seen[key] = source
            for other in resolved_sources:
                if other != source and other in source.parents:
                    raise ConfigurationError(f"Source {source} is inside source {other}")

        if self.stage and not self.staging_dir.is_dir():
            raise PreconditionError(f"Staging directory does not exist: {self.staging_dir}")


def _coerce(enum_type, value: Any, name: str):
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(str(value).lower())
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        raise ConfigurationError(f"Invalid {name} {value!r}, expected one of: {choices}")


def config_field_names() -> List[str]:
    return [f.name for f in fields(BackupConfig)]


def load_config_file(path: Path) -> Dict[str, Any]:
    """
    Read configuration values from a JSON file.

    Args:
        path: JSON object whose keys are BackupConfig field names

    Returns:
        Dict of raw values, to be merged with command line options

    Raises:
        ConfigurationError: If the file is unreadable or has unknown keys
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a JSON object")

    unknown = sorted(set(data) - set(config_field_names()))
    if unknown:
        raise ConfigurationError(f"Unknown config key(s) in {path}: {', '.join(unknown)}")

    return data
