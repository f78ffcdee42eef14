"""Rate limiting middleware using slowapi.

Default limits:
- Global: 100 req/min per IP
- Receipt validation / admin writes: 10 req/min
- Webhook deliveries: 300 req/min (relay bursts on batch renewals)
- Reads: 60 req/min

Set RATE_LIMIT_ENABLED=false to turn every limit off (tests, local dev).
"""

from __future__ import annotations

import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .. import config
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

logger = logging.getLogger("api.rate_limit")

RETRY_AFTER_SECONDS = 60


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri="memory://",
    enabled=config.RATE_LIMIT_ENABLED,
)


rate_limit_write = limiter.limit("10/minute")
rate_limit_read = limiter.limit("60/minute")
rate_limit_webhook = limiter.limit("300/minute")
rate_limit_health = limiter.limit("120/minute")


def setup_rate_limiting(app):
    """Configure rate limiting on the FastAPI app."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _custom_rate_limit_handler)
    app.add_middleware(SlowAPIMiddleware)
    logger.info("Rate limiting %s", "enabled" if limiter.enabled else "disabled")


async def _custom_rate_limit_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Log the event and return 429 with a Retry-After header."""
    security_logger.rate_limit_exceeded(
        ip=get_client_ip(request),
        path=request.url.path,
        limit=str(exc.detail),
        method=request.method,
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "Too many requests",
            "code": "RATE_LIMIT_EXCEEDED",
            "details": {"limit": str(exc.detail)},
        },
        headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
    )
