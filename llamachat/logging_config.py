# llamachat/logging_config.py
"""
Process-wide logging for the CLI.

Records always go to a rotating file under the data dir. The console copy,
when enabled, is written to stderr because stdout carries the streamed reply
tokens; only the level name is colored, and only on a terminal.
"""
from __future__ import annotations
import logging, logging.handlers, sys, traceback
from pathlib import Path
from typing import Iterable, TextIO

from .constants import DEFAULT_LOG_MAX_BYTES, DEFAULT_LOG_BACKUP_COUNT, DEFAULT_LOG_FILENAME

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# HTTP stack chatter: one line per connection at DEBUG
QUIET_LOGGERS = ("urllib3", "requests", "charset_normalizer")

LEVEL_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[1;41m",
}


def _level(name: str) -> int:
    lvl = logging.getLevelName(str(name).upper())
    return lvl if isinstance(lvl, int) else logging.INFO


class _LevelColorFormatter(logging.Formatter):
    def __init__(self, stream: TextIO):
        super().__init__(LOG_FORMAT, DATE_FORMAT)
        self.use_color = hasattr(stream, "isatty") and stream.isatty()

    def formatMessage(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno) if self.use_color else None
        if not color:
            return super().formatMessage(record)
        plain = record.levelname
        record.levelname = f"{color}{plain:<8}\x1b[0m"
        try:
            return super().formatMessage(record)
        finally:
            record.levelname = plain


def init_logging(log_dir: Path, level: str = "INFO", log_name: str = DEFAULT_LOG_FILENAME,
                 max_bytes: int = DEFAULT_LOG_MAX_BYTES, backup_count: int = DEFAULT_LOG_BACKUP_COUNT,
                 also_console: bool = True, quiet: Iterable[str] = QUIET_LOGGERS) -> Path:
    """(Re)configure the root logger and return the log file path."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_name
    lvl = _level(level)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(lvl)

    handlers = [logging.handlers.RotatingFileHandler(
        log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8", delay=True)]
    handlers[0].setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
    if also_console:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(_LevelColorFormatter(sys.stderr))
        handlers.append(console)
    for h in handlers:
        h.setLevel(lvl)
        root.addHandler(h)

    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    install_excepthook()
    logging.getLogger(__name__).info("Logging to %s at %s", log_path, logging.getLevelName(lvl))
    return log_path


def _log_uncaught(exc_type, exc, tb) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logging.getLogger("uncaught").critical("Uncaught exception", exc_info=(exc_type, exc, tb))
    summary = "".join(traceback.format_exception_only(exc_type, exc)).strip()
    print(f"\nFATAL: {summary}", file=sys.stderr, flush=True)


def install_excepthook() -> None:
    """Send uncaught exceptions to the log file; the console gets one line."""
    sys.excepthook = _log_uncaught
