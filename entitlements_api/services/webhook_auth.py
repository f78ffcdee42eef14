"""Shared-secret authorization for billing relay webhooks.

The relay sends the configured token in the Authorization header, either as
``Bearer <token>`` or as the bare token.
"""

from __future__ import annotations

import hmac
import re
from typing import Optional

_BEARER_PREFIX = re.compile(r"^\s*bearer\s+", re.IGNORECASE)


def extract_token(header_value: Optional[str]) -> str:
    if not header_value:
        return ""
    return _BEARER_PREFIX.sub("", header_value, count=1).strip()


def authorize(header_value: Optional[str], expected_secret: Optional[str]) -> bool:
    expected = (expected_secret or "").strip()
    if not expected:
        return False
    token = extract_token(header_value)
    if not token:
        return False
    return hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))
