"""Logger setup shared by the CLI tools."""

import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler

from .retry import retry_call

ROOT_LOGGER_NAME = "tree_backup"

FILE_FORMAT = "%(asctime)s [pid %(process)d] %(levelname)s %(name)s: %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class RetryingFileHandler(logging.FileHandler):
    """
    Append-only file handler that tolerates a briefly locked log file.

    A failed write is retried once after a short delay; if that fails too the
    record is dropped so logging can never abort a backup run.
    """

    def __init__(self, filename: Path, retry_delay: float = 0.2, encoding: str = "utf-8"):
        super().__init__(str(filename), mode="a", encoding=encoding, delay=True)
        self.retry_delay = retry_delay
        self.dropped = 0

    def _write(self, record: logging.LogRecord) -> None:
        if self.stream is None:
            self.stream = self._open()
        self.stream.write(self.format(record) + self.terminator)
        self.flush()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            retry_call(
                self._write,
                record,
                attempts=2,
                delay=self.retry_delay,
                retry_on=lambda e: isinstance(e, OSError),
            )
        except OSError:
            self.dropped += 1
            # drop the broken stream so the next record reopens the file
            if self.stream is not None:
                try:
                    self.stream.close()
                except OSError:
                    pass
                self.stream = None


def _level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the tool's logger hierarchy.

    Args:
        name: Usually __name__ of the calling module

    Returns:
        Logger named "tree_backup.<module>"
    """
    short = name.rsplit(".", 1)[-1] if name != ROOT_LOGGER_NAME else ""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{short}" if short else ROOT_LOGGER_NAME)


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure the tool's root logger.

    Args:
        name: Caller name (kept for symmetry with get_logger)
        level: Verbosity (ERROR, WARNING, INFO or DEBUG)
        log_file: Optional file receiving timestamped, pid-tagged records
        console: Attach a rich console handler

    Returns:
        The configured root logger of the hierarchy
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(_level(level))

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        console_handler = RichHandler(show_path=False, rich_tracebacks=False)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RetryingFileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        logger.addHandler(file_handler)

    logger.debug(f"Logging configured for {name} at {level.upper()}")
    return logger


def log_file_for_run(log_directory: Path, run_id: str) -> Path:
    """Return the log file path for a run inside log_directory."""
    return Path(log_directory) / f"tree-backup_{run_id}.log"


def close_handlers() -> None:
    """Flush and detach every handler of the tool's root logger."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
