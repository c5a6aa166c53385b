"""
Logging
=======

One "mgtweak" logger. Records carry a category in `extra={"cat": ...}`:
SYS, PROTO, TUNNEL, PATCH, EXPLOIT.

LogBook is the operator log sink: a handler that turns records into LogEntry
values and keeps them in an append-only list. Readers get copies.
"""

import logging
from datetime import datetime
from pathlib import Path

from .models import LogEntry, LogLevel

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s [%(levelname)-7s] [%(cat)-6s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

log = logging.getLogger("mgtweak")
log.setLevel(logging.DEBUG)

_LEVEL_MAP = {
    logging.DEBUG: LogLevel.NORMAL,
    logging.INFO: LogLevel.INFO,
    SUCCESS: LogLevel.SUCCESS,
    logging.WARNING: LogLevel.WARNING,
    logging.ERROR: LogLevel.ERROR,
    logging.CRITICAL: LogLevel.ERROR,
}

_REVERSE_MAP = {
    LogLevel.NORMAL: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: SUCCESS,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class _CategoryFilter(logging.Filter):
    """Default the category so formatters never miss %(cat)s."""
    def filter(self, record):
        if not hasattr(record, "cat"):
            record.cat = "SYS"
        return True


class LogBook(logging.Handler):
    """Append-only LogEntry list fed from the mgtweak logger."""

    def __init__(self, level=logging.DEBUG):
        super().__init__(level)
        self._entries = []

    def emit(self, record):
        self._entries.append(LogEntry(
            message=record.getMessage(),
            level=_LEVEL_MAP.get(record.levelno, LogLevel.NORMAL),
            category=getattr(record, "cat", "SYS"),
            timestamp=datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
        ))

    def entries(self, after=0):
        return list(self._entries[after:])

    def __len__(self):
        return len(self._entries)

    def attach(self):
        log.addHandler(self)
        return self

    def detach(self):
        log.removeHandler(self)

    def sink(self, category="EXPLOIT"):
        """Callable handed to collaborators: sink(message, level=LogLevel.NORMAL)."""
        def _sink(message, level=LogLevel.NORMAL):
            logm(_REVERSE_MAP[LogLevel(level)], message, category)
        return _sink


def configure_logging(log_dir=None, console_level=logging.INFO):
    """Console handler plus all.log / warnings.log when a directory is given."""
    cat_filter = _CategoryFilter()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    if log_dir:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)

        fh_all = logging.FileHandler(log_dir / "all.log", encoding="utf-8")
        fh_all.setLevel(logging.DEBUG)
        fh_all.setFormatter(formatter)
        fh_all.addFilter(cat_filter)
        log.addHandler(fh_all)

        fh_warn = logging.FileHandler(log_dir / "warnings.log", encoding="utf-8")
        fh_warn.setLevel(logging.WARNING)
        fh_warn.setFormatter(formatter)
        fh_warn.addFilter(cat_filter)
        log.addHandler(fh_warn)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("[%(levelname)-7s] %(message)s"))
    log.addHandler(ch)
    return log


def logm(level, msg, cat="SYS"):
    """Log with category."""
    log.log(level, msg, extra={"cat": cat})

def log_info(msg, cat="SYS"):     logm(logging.INFO, msg, cat)
def log_warn(msg, cat="SYS"):     logm(logging.WARNING, msg, cat)
def log_error(msg, cat="SYS"):    logm(logging.ERROR, msg, cat)
def log_debug(msg, cat="SYS"):    logm(logging.DEBUG, msg, cat)
def log_success(msg, cat="SYS"):  logm(SUCCESS, msg, cat)
