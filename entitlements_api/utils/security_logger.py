"""Security audit logging for the Entitlement Sync API.

Provides structured logging for security-relevant events:
- ID token authentication failures
- Webhook shared-secret failures
- Admin operations denied for non-admin callers
- Rate limit violations

Logs are structured JSON for easy parsing and alerting.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Any, Optional

from .. import config

# Log rotation settings
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5  # Keep 5 rotated files (50MB total)


class SecurityLogger:
    """Structured security event logger with rotation."""

    def __init__(self, log_dir: Optional[Path] = None):
        self.logger = logging.getLogger("security")
        self.log_file = Path(log_dir or config.LOG_DIR) / "security.log"
        self._setup_handler()

    def _setup_handler(self):
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            self.log_file,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT
        )
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter('%(message)s'))

        # Avoid duplicate handlers
        if not self.logger.handlers:
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.WARNING)

    def log_event(
        self,
        event_type: str,
        severity: str,  # 'low', 'medium', 'high'
        details: Dict[str, Any],
        ip: Optional[str] = None,
        uid: Optional[str] = None,
        path: Optional[str] = None
    ):
        event = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "event": event_type,
            "severity": severity,
            "ip": ip,
            "uid": uid,
            "path": path,
            **details
        }

        # Remove None values
        event = {k: v for k, v in event.items() if v is not None}

        self.logger.warning(json.dumps(event, default=str))

    def auth_failure(
        self,
        ip: str,
        reason: str,
        path: str,
        user_agent: Optional[str] = None,
        uid: Optional[str] = None
    ):
        """Log ID token authentication failure."""
        self.log_event(
            event_type="auth_failure",
            severity="medium",
            details={
                "reason": reason,
                "user_agent": user_agent
            },
            ip=ip,
            uid=uid,
            path=path
        )

    def webhook_auth_failure(self, ip: str, reason: str, path: str):
        """Log a webhook delivery rejected by the shared-secret check."""
        self.log_event(
            event_type="webhook_auth_failure",
            severity="high",
            details={"reason": reason},
            ip=ip,
            path=path
        )

    def admin_denied(self, ip: str, uid: Optional[str], path: str, target_uid: Optional[str] = None):
        """Log a non-admin caller hitting an admin operation."""
        self.log_event(
            event_type="admin_denied",
            severity="high",
            details={"target_uid": target_uid},
            ip=ip,
            uid=uid,
            path=path
        )

    def rate_limit_exceeded(
        self,
        ip: str,
        path: str,
        limit: str,
        method: Optional[str] = None
    ):
        self.log_event(
            event_type="rate_limit_exceeded",
            severity="medium",
            details={
                "limit": limit,
                "method": method
            },
            ip=ip,
            path=path
        )


# Singleton instance
security_logger = SecurityLogger()

