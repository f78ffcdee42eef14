"""Client IP extraction with trusted proxy support.

X-Forwarded-For and CF-Connecting-IP are only honoured when both
TRUST_PROXY and BEHIND_CLOUDFLARE are set; otherwise the socket peer is used.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

from fastapi import Request

logger = logging.getLogger("api.client_ip")


def _flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true")


_behind_cloudflare = _flag("BEHIND_CLOUDFLARE")
_trust_proxy_env = _flag("TRUST_PROXY")
TRUST_PROXY = _trust_proxy_env and _behind_cloudflare

if _trust_proxy_env and not _behind_cloudflare:
    logger.warning("TRUST_PROXY set without BEHIND_CLOUDFLARE=1; proxy headers will be ignored.")


def get_client_ip(request: Request, trust_proxy: Optional[bool] = None) -> str:
    """Best-known client address for rate limiting and security logs."""
    if trust_proxy is None:
        trust_proxy = TRUST_PROXY

    if trust_proxy:
        cf_ip = request.headers.get("CF-Connecting-IP")
        if cf_ip:
            return cf_ip.strip()

        # first hop is the original client
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"
