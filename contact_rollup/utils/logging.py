"""
Logging configuration for contact_rollup.

All package modules log through children of the ``contact_rollup`` logger.
The CLI calls setup_logging() once per invocation, which attaches:

- a console handler on stderr, colored when stderr is a terminal
- a daily run log (contact_rollup_YYYYMMDD.log) that always captures DEBUG

HTTP client loggers (httpx, httpcore) log every request at INFO; they are
held at WARNING unless running verbose.
"""

import logging
import os
import sys
from datetime import date
from pathlib import Path
from typing import Optional, TextIO

ROOT_LOGGER_NAME = "contact_rollup"

CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CONTACT_ROLLUP_LOG_LEVEL"
ENV_DEBUG = "CONTACT_ROLLUP_DEBUG"
ENV_LOG_FILE = "CONTACT_ROLLUP_LOG_FILE"

LOG_FILE_PREFIX = "contact_rollup_"

# Third-party loggers that are chatty at INFO
HTTP_LOGGERS = ("httpx", "httpcore")

LEVEL_NAMES = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class ColoredFormatter(logging.Formatter):
    """
    Console formatter that colors the level name.

    Colors are dropped when the target stream is not a terminal, when
    NO_COLOR is set (https://no-color.org/), or when TERM is "dumb".
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        stream: Optional[TextIO] = None,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = self.stream_supports_color(stream or sys.stderr)

    @staticmethod
    def stream_supports_color(stream: TextIO) -> bool:
        isatty = getattr(stream, "isatty", None)
        if isatty is None or not isatty():
            return False
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)

        # Copy so file handlers sharing the record see the plain level name
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def get_log_level_from_env() -> int:
    """
    Logging level requested through the environment.

    CONTACT_ROLLUP_DEBUG (1/true/yes) wins over CONTACT_ROLLUP_LOG_LEVEL.
    Unknown level names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG
    return LEVEL_NAMES.get(os.environ.get(ENV_LOG_LEVEL, "INFO").upper(), logging.INFO)


def daily_log_file(log_dir: Path, day: Optional[date] = None) -> Path:
    """Run log path for a given day (today by default)."""
    day = day or date.today()
    return log_dir / f"{LOG_FILE_PREFIX}{day.strftime('%Y%m%d')}.log"


def resolve_log_file(log_dir: Optional[Path]) -> Optional[Path]:
    """
    Where the run log should be written.

    CONTACT_ROLLUP_LOG_FILE overrides the daily file in log_dir; setting it
    to "none", "disabled" or "" turns file logging off.

    Returns:
        Log file path, or None when file logging is off
    """
    override = os.environ.get(ENV_LOG_FILE)
    if override is not None:
        if override.strip().lower() in ("none", "disabled", ""):
            return None
        return Path(override).expanduser()
    if log_dir is None:
        return None
    return daily_log_file(log_dir)


def setup_logging(
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    enable_file_logging: bool = True,
    level: Optional[int] = None,
) -> logging.Logger:
    """
    Configure the contact_rollup logger hierarchy.

    Safe to call repeatedly; existing handlers are replaced.

    Args:
        verbose: Use DEBUG and the verbose console format
        log_dir: Directory for the daily run log
        enable_file_logging: Attach the run log handler at all
        level: Explicit console level; defaults to the environment

    Returns:
        The package root logger
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(
        ColoredFormatter(
            VERBOSE_FORMAT if verbose else CONSOLE_FORMAT, DATE_FORMAT, stream=sys.stderr
        )
    )
    logger.addHandler(console)

    file_path = resolve_log_file(log_dir) if enable_file_logging else None
    if file_path is not None:
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(file_path, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not open log file {file_path}: {e}")
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
            logger.addHandler(file_handler)

    # The logger itself passes DEBUG whenever a run log is attached
    logger.setLevel(logging.DEBUG if len(logger.handlers) > 1 else level)

    http_level = logging.DEBUG if verbose else logging.WARNING
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(http_level)

    if file_path is not None:
        logger.debug(f"Run log: {file_path}")
    return logger


def cleanup_old_logs(log_dir: Path, keep_count: int = 10) -> int:
    """
    Delete all but the newest ``keep_count`` daily run logs.

    Run logs are date-stamped, so name order is age order. A keep_count of
    0 or less disables cleanup.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0 or not log_dir.is_dir():
        return 0

    logs = sorted(log_dir.glob(f"{LOG_FILE_PREFIX}*.log"), reverse=True)
    deleted = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
        except OSError as e:
            logging.getLogger(__name__).debug(f"Could not delete {old_log}: {e}")
            continue
        deleted += 1
    return deleted


def get_logger(name: str) -> logging.Logger:
    """Logger under the contact_rollup hierarchy for ``name``."""
    if name != ROOT_LOGGER_NAME and not name.startswith(f"{ROOT_LOGGER_NAME}."):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


__all__ = [
    "setup_logging",
    "cleanup_old_logs",
    "get_logger",
    "get_log_level_from_env",
    "resolve_log_file",
    "daily_log_file",
    "ColoredFormatter",
    "ROOT_LOGGER_NAME",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
