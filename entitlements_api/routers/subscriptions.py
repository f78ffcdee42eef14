"""Subscriptions router - client receipt submission and plan reads.

Endpoints:
    POST /api/subscriptions/ios/validate - Validate an App Store receipt
    POST /api/subscriptions/android/validate - Validate a Play Billing purchase
    GET  /api/subscriptions/me - Effective plan for the caller

The caller's own uid is always the target; clients cannot grant premium to
another account.
"""

import logging

from fastapi import APIRouter, Depends, Request

from ..dependencies import get_entitlement_service, verify_firebase_token
from ..middleware.rate_limit import rate_limit_read, rate_limit_write
from ..models import (
    AndroidPurchaseRequest,
    EntitlementView,
    ErrorResponse,
    IOSReceiptRequest,
    ReceiptValidationResponse,
)
from ..services.entitlement_service import EntitlementService

router = APIRouter()
logger = logging.getLogger("api.subscriptions")

_ERRORS = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


@router.post(
    "/subscriptions/ios/validate",
    response_model=ReceiptValidationResponse,
    response_model_exclude_none=True,
    responses=_ERRORS,
)
@rate_limit_write
async def validate_ios_receipt(
    request: Request,
    payload: IOSReceiptRequest,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> ReceiptValidationResponse:
    """Validate an iOS receipt and grant premium on success."""
    uid = decoded_token.get("uid")
    result = service.validate_ios_receipt(uid, payload.receiptData, payload.productId)
    logger.info("iOS receipt validation uid=%s product=%s success=%s", uid, payload.productId, result.success)
    return result


@router.post(
    "/subscriptions/android/validate",
    response_model=ReceiptValidationResponse,
    response_model_exclude_none=True,
    responses=_ERRORS,
)
@rate_limit_write
async def validate_android_purchase(
    request: Request,
    payload: AndroidPurchaseRequest,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> ReceiptValidationResponse:
    """Validate an Android purchase token and grant premium on success."""
    uid = decoded_token.get("uid")
    result = service.validate_android_purchase(
        uid,
        payload.purchaseToken,
        payload.productId,
        payload.packageName,
    )
    logger.info("Android purchase validation uid=%s product=%s success=%s", uid, payload.productId, result.success)
    return result


@router.get(
    "/subscriptions/me",
    response_model=EntitlementView,
    responses={401: {"model": ErrorResponse}},
)
@rate_limit_read
async def get_my_subscription(
    request: Request,
    decoded_token: dict = Depends(verify_firebase_token),
    service: EntitlementService = Depends(get_entitlement_service),
) -> EntitlementView:
    return service.resolve_plan(decoded_token["uid"], decoded_token)
