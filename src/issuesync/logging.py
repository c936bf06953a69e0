"""JSON-lines log file for an issuesync deployment.

Every record under the ``issuesync`` logger lands in
``.issuesync/issuesync.log`` as one JSON object per line. Sync runs attach
their bookkeeping (mode, indexed count, skipped count, watermark, duration)
as ``extra=`` fields, which become top-level keys of the entry so the file
can be filtered with ``jq`` without parsing messages. The file rotates at
5MB and keeps 3 backups.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILENAME = "issuesync.log"
DEFAULT_LOG_LEVEL = "INFO"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUP_COUNT = 3

# Run bookkeeping lifted from ``extra=`` into the entry. Other extras are not written.
RUN_FIELDS = ("mode", "count", "skipped", "watermark", "duration_ms", "error")

_setup_lock = threading.Lock()


class SyncLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=UTC)
        entry: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update({name: record.__dict__[name] for name in RUN_FIELDS if name in record.__dict__})
        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            entry["exception"] = str(exc)
            entry["exception_type"] = type(exc).__name__
        return json.dumps(entry, default=str)


def parse_level(name: str) -> int:
    """Map a level name from config.json (case-insensitive) to its number."""
    level = logging.getLevelNamesMapping().get(str(name).upper())
    if level is None:
        msg = f"Unknown log level: {name!r}"
        raise ValueError(msg)
    return level


def _file_handler(logger: logging.Logger) -> RotatingFileHandler | None:
    return next((h for h in logger.handlers if isinstance(h, RotatingFileHandler)), None)


def setup_logging(issuesync_dir: Path, *, level: str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    """Attach the deployment log file to the ``issuesync`` logger.

    Calling it again for the same directory only updates the level. Calling
    it for another directory moves logging there, closing the old file.
    """
    logger = logging.getLogger("issuesync")
    log_path = Path(os.path.abspath(issuesync_dir / LOG_FILENAME))
    numeric_level = parse_level(level)

    with _setup_lock:
        current = _file_handler(logger)
        if current is not None and current.baseFilename != str(log_path):
            logger.removeHandler(current)
            current.close()
            current = None
        if current is None:
            current = RotatingFileHandler(log_path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT)
            current.setFormatter(SyncLogFormatter())
            logger.addHandler(current)
        logger.setLevel(numeric_level)
    return logger
