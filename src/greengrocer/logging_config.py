"""Configure application logging using the Python standard library.

Every record is rendered as one JSON object per line.  Besides the
timestamp, level, module and message, the formatter copies the context
attributes services attach through ``extra=`` (``user_id``, ``role``,
``order_id``) and flattens a nested ``extra`` dict into the top level so
``logger.info("Order placed", extra={"user_id": 3, "extra": {"total": 9.5}})``
becomes a single flat document.
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime, UTC

from greengrocer.config import resolve_log_dir

LOG_FILE_NAME = "greengrocer.log"
_CONTEXT_FIELDS = ("user_id", "role", "order_id")


class JsonFormatter(logging.Formatter):
    """Format log records as JSON strings."""

    def format(self, record: logging.LogRecord) -> str:
        log_record = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "message": record.getMessage(),
        }
        for field in _CONTEXT_FIELDS:
            if hasattr(record, field):
                log_record[field] = getattr(record, field)
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            log_record.update(extra)
        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_record, default=str)


def configure_logging(log_dir: str | None = None, level: int = logging.INFO,
                      console_level: int | None = None) -> str:
    """Install console and rotating file handlers on the root logger.

    Args:
        log_dir: Directory for ``greengrocer.log``.  Defaults to
            ``GREENGROCER_LOG_DIR`` or ``./logs``; created when missing.
        level: Logging level for the root logger and the file handler.
        console_level: Threshold for the console handler; defaults to
            ``level``.

    Returns:
        The path of the log file being written.
    """
    log_dir = log_dir or resolve_log_dir()
    os.makedirs(log_dir, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    formatter = JsonFormatter()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level if console_level is None else console_level)
    root.addHandler(console_handler)

    log_path = os.path.join(log_dir, LOG_FILE_NAME)
    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_path,
        maxBytes=5 * 1024 * 1024,  # 5 MB per file
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(level)
    root.addHandler(file_handler)
    return log_path
