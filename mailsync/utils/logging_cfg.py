"""
Logging configuration for the mail sync engine.

Sets up a rotating file handler and console output once at startup;
every module then logs through logging.getLogger(__name__).
"""
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from mailsync import config

# Maximum log file size (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup log files to keep
BACKUP_COUNT = 5

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None,
                  level: Optional[str] = None) -> Path:
    """
    Configure logging for the application.

    Sets up:
    - Rotating file handler for <log_dir>/mailsync.log
    - Console handler for immediate feedback

    Args:
        debug: If True, sets log level to DEBUG. Otherwise uses `level` or INFO.
        log_dir: Directory for log files. Defaults to ~/.mailsync/logs.
        level: Optional level name (e.g. "WARNING") used when debug is False.

    Returns:
        Path of the log file.
    """
    log_dir = Path(log_dir) if log_dir else config.LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "mailsync.log"

    if debug:
        log_level = logging.DEBUG
    elif level:
        log_level = logging.getLevelName(level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO
    else:
        log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    detailed_formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    simple_formatter = logging.Formatter(fmt='%(levelname)s - %(message)s')

    file_handler = logging.handlers.RotatingFileHandler(
        filename=str(log_file),
        maxBytes=MAX_LOG_SIZE,
        backupCount=BACKUP_COUNT,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    root_logger.addHandler(file_handler)

    # Console only shows WARNING and above unless debug
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.WARNING)
    console_handler.setFormatter(simple_formatter)
    root_logger.addHandler(console_handler)

    _suppress_noisy_loggers()

    logger = logging.getLogger(__name__)
    logger.info(f"Logging started at {logging.getLevelName(log_level)}, file: {log_file}")
    return log_file


def _suppress_noisy_loggers() -> None:
    """Quiet third-party libraries that are chatty at DEBUG/INFO."""
    for name in ("urllib3", "requests", "imaplib", "smtplib", "cryptography", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)
