"""Error reporting for failures that cannot be surfaced to the caller.

The webhook always answers 200 once authorized, so processing failures would
otherwise be invisible to the relay and to us. They are written here as
structured JSON lines, one per failure, to a rotating ``errors.log``.
"""

from __future__ import annotations

import json
import logging
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import EntitlementError
from ..utils.time_utils import utcnow

MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5


class ErrorReporter:
    def report(self, exc: BaseException, *, source: str, context: Optional[Dict[str, Any]] = None) -> None:
        raise NotImplementedError


class LoggingErrorReporter(ErrorReporter):
    """Structured error events on the ``errors`` logger."""

    def __init__(self, log_dir: Optional[Path] = None, logger_name: str = "errors") -> None:
        self.logger = logging.getLogger(logger_name)
        if log_dir is not None:
            self._setup_handler(Path(log_dir))

    def _setup_handler(self, log_dir: Path) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = str(log_dir / "errors.log")
        for existing in self.logger.handlers:
            if getattr(existing, "baseFilename", None) == log_file:
                return
        handler = RotatingFileHandler(log_file, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT)
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter("%(message)s"))
        self.logger.addHandler(handler)

    def report(self, exc: BaseException, *, source: str, context: Optional[Dict[str, Any]] = None) -> None:
        event: Dict[str, Any] = {
            "timestamp": utcnow().isoformat(),
            "event": "internal_error",
            "source": source,
            "error_type": type(exc).__name__,
            "error": str(exc),
            **(context or {}),
        }
        if isinstance(exc, EntitlementError):
            event["code"] = exc.code
            if exc.details:
                event["details"] = exc.details
        else:
            event["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

        event = {k: v for k, v in event.items() if v is not None}
        self.logger.error(json.dumps(event, default=str))
