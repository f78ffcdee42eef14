"""Webhooks router - RevenueCat billing relay.

Endpoints:
    POST /api/webhooks/revenuecat - Subscription lifecycle events

Authenticated by the shared secret in the Authorization header, not by a
Firebase token. Once authorized the relay always gets a 200 so it does not
retry deliveries we have already logged.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from ..dependencies import get_entitlement_service
from ..middleware.rate_limit import rate_limit_webhook
from ..services.entitlement_service import EntitlementService
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("api.webhooks")


@router.post("/webhooks/revenuecat", response_class=PlainTextResponse)
@rate_limit_webhook
async def revenuecat_webhook(
    request: Request,
    service: EntitlementService = Depends(get_entitlement_service),
) -> PlainTextResponse:
    authorization = request.headers.get("authorization")
    body = await request.body()

    result = service.handle_webhook(authorization, body)

    if result.status_code == 401:
        security_logger.webhook_auth_failure(
            ip=get_client_ip(request),
            reason="missing_authorization" if not authorization else "invalid_secret",
            path=request.url.path,
        )

    return PlainTextResponse(result.body, status_code=result.status_code)
