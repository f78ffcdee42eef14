"""Admin router - manual entitlement overrides.

Endpoints:
    POST /api/admin/users/upgrade - Grant one year of premium
    POST /api/admin/users/downgrade - Revoke premium immediately
    POST /api/admin/users/reconcile - Repair subscription record and claims

Callers must carry the ``admin`` custom claim (see scripts/set_admin_claim.py).
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from ..dependencies import get_entitlement_service, verify_firebase_token
from ..errors import PermissionDeniedError
from ..middleware.rate_limit import rate_limit_write
from ..models import AdminActionResponse, AdminTargetRequest, ErrorResponse
from ..services.entitlement_service import EntitlementService, TransitionOutcome
from ..utils.client_ip import get_client_ip
from ..utils.security_logger import security_logger

router = APIRouter()
logger = logging.getLogger("api.admin")

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


def _log_denied(request: Request, decoded_token: Dict[str, Any], payload: AdminTargetRequest) -> None:
    security_logger.admin_denied(
        ip=get_client_ip(request),
        uid=decoded_token.get("uid"),
        path=request.url.path,
        target_uid=payload.targetUserId,
    )


def _message(outcome: TransitionOutcome, done: str) -> str:
    if outcome.propagation.ok:
        return done
    return f"{done} (claims update pending)"


@router.post("/admin/users/upgrade", response_model=AdminActionResponse, response_model_exclude_none=True, responses=_ERRORS)
@rate_limit_write
async def admin_upgrade_user(
    request: Request,
    payload: AdminTargetRequest,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> AdminActionResponse:
    try:
        outcome = service.admin_upgrade(decoded_token, payload.targetUserId)
    except PermissionDeniedError:
        _log_denied(request, decoded_token, payload)
        raise
    return AdminActionResponse(success=True, message=_message(outcome, "User upgraded to premium"))


@router.post("/admin/users/downgrade", response_model=AdminActionResponse, response_model_exclude_none=True, responses=_ERRORS)
@rate_limit_write
async def admin_downgrade_user(
    request: Request,
    payload: AdminTargetRequest,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> AdminActionResponse:
    try:
        outcome = service.admin_downgrade(decoded_token, payload.targetUserId)
    except PermissionDeniedError:
        _log_denied(request, decoded_token, payload)
        raise
    return AdminActionResponse(success=True, message=_message(outcome, "User downgraded to free"))


@router.post("/admin/users/reconcile", response_model=AdminActionResponse, responses=_ERRORS)
@rate_limit_write
async def admin_reconcile_user(
    request: Request,
    payload: AdminTargetRequest,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> AdminActionResponse:
    """Project the user's entitlement onto their subscription record."""
    try:
        outcome = service.admin_reconcile(decoded_token, payload.targetUserId)
    except PermissionDeniedError:
        _log_denied(request, decoded_token, payload)
        raise
    message = "Subscription record repaired" if outcome.applied else "Subscription record already in sync"
    return AdminActionResponse(success=True, message=message, repaired=outcome.applied)
