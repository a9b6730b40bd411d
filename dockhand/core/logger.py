"""Console and file logging for Dockhand.

Every module logs through ``get_logger(__name__)``; the console handler is a
Rich handler on a shared console so CLI tables and log lines interleave
cleanly. File logging is opt-in (``dockhand serve`` turns it on).
"""
import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

console = Console()

ROOT_LOGGER = "dockhand"
DEFAULT_LOG_FILE = Path("/var/log/dockhand/dockhand.log")
FALLBACK_LOG_FILE = Path("/tmp/dockhand.log")

FILE_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
FILE_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_file_handler: Optional[logging.FileHandler] = None
_level = logging.INFO


def setup_file_logging(log_file: Optional[str] = None, verbose: bool = False) -> Path:
    """Attach a file handler to the ``dockhand`` logger tree.

    Args:
        log_file: Target file (defaults to /var/log/dockhand/dockhand.log)
        verbose: Log DEBUG records as well

    Returns:
        Path of the file actually written to. Falls back to /tmp when the
        default location is not writable.
    """
    global _file_handler

    target = Path(log_file) if log_file else DEFAULT_LOG_FILE
    if _file_handler is not None:
        return Path(_file_handler.baseFilename)

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        target = FALLBACK_LOG_FILE

    root_logger = logging.getLogger(ROOT_LOGGER)
    _file_handler = logging.FileHandler(target)
    _file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
    root_logger.addHandler(_file_handler)

    set_verbose(verbose)
    root_logger.info(f"Dockhand logging initialized: {target}")
    return target


def set_verbose(verbose: bool) -> None:
    """Switch every Dockhand logger between INFO and DEBUG."""
    global _level

    _level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger(ROOT_LOGGER).setLevel(_level)
    if _file_handler is not None:
        _file_handler.setLevel(_level)

    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith(ROOT_LOGGER) and isinstance(logger, logging.Logger):
            logger.setLevel(_level)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the shared Rich console handler attached.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger at the current Dockhand verbosity
    """
    logger = logging.getLogger(name)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.setLevel(_level)

    return logger


def log_status(logger: logging.Logger, message: str, is_error: bool = False) -> None:
    """Log a user-facing status message.

    Status messages may span several lines (pull progress lists one line per
    layer); each line is logged separately so the file log stays greppable.
    """
    level = logging.ERROR if is_error else logging.INFO
    for line in message.splitlines() or [""]:
        logger.log(level, line)
