"""Tree Backup - Directory-tree backups with compression and count-based retention."""

from .automator import BackupAutomator, BackupResult
from .config import BackupConfig
from .retention import GenerationKind, RetentionManager

__all__ = ["BackupAutomator", "BackupConfig", "BackupResult", "GenerationKind", "RetentionManager"]
