"""Pydantic models for the Entitlement Sync API.

Document models mirror the Firestore field names used by the mobile app and
the backoffice (``users/{uid}`` and ``subscriptions/{uid}``), so they stay in
camelCase.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


Plan = Literal["free", "premium"]
SubscriptionStatus = Literal["none", "active", "canceled"]
Platform = Literal["ios", "android"]


# =============================================================================
# DOCUMENT MODELS (Firestore)
# =============================================================================

class UserEntitlement(BaseModel):
    """Entitlement fields stored on ``users/{uid}``."""
    uid: str
    plan: Plan = "free"
    subscriptionStatus: SubscriptionStatus = "none"
    subscriptionProductId: Optional[str] = None
    subscriptionPlatform: Optional[Platform] = None
    subscriptionTransactionId: Optional[str] = None
    subscriptionStartDate: Optional[datetime] = None
    subscriptionEndDate: Optional[datetime] = None
    isTrial: bool = False
    updatedAt: Optional[datetime] = None
    lastBillingEventAtMs: Optional[int] = None


class SubscriptionRecord(BaseModel):
    """Billing-facing projection stored on ``subscriptions/{uid}``."""
    uid: str
    plan: Optional[Plan] = None
    status: Optional[SubscriptionStatus] = None
    currentPeriodStart: Optional[datetime] = None
    currentPeriodEnd: Optional[datetime] = None
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


# =============================================================================
# REQUEST MODELS (Input Validation)
# =============================================================================
# Required fields are Optional here so that missing values reach the service
# layer, which reports them as INVALID_ARGUMENT instead of a schema error.

class IOSReceiptRequest(BaseModel):
    """Receipt submitted by the iOS client after a StoreKit purchase."""
    receiptData: Optional[str] = Field(default=None, max_length=1_000_000)
    productId: Optional[str] = Field(default=None, max_length=255)


class AndroidPurchaseRequest(BaseModel):
    """Purchase submitted by the Android client after a Play Billing purchase."""
    purchaseToken: Optional[str] = Field(default=None, max_length=4096)
    productId: Optional[str] = Field(default=None, max_length=255)
    packageName: Optional[str] = Field(default=None, max_length=255)


class AdminTargetRequest(BaseModel):
    targetUserId: Optional[str] = Field(default=None, max_length=128)


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class ReceiptValidationData(BaseModel):
    valid: bool
    transactionId: Optional[str] = None
    expirationDate: Optional[datetime] = None


class ReceiptValidationResponse(BaseModel):
    """Client RPC result. Invalid receipts are ``success=False``, not errors."""
    success: bool
    data: Optional[ReceiptValidationData] = None
    error: Optional[str] = None


class AdminActionResponse(BaseModel):
    success: bool
    message: str
    repaired: Optional[bool] = None


class EntitlementView(BaseModel):
    """Effective plan for the caller plus the durable record behind it."""
    uid: str
    effectivePlan: Plan
    claimsInSync: bool
    entitlement: Optional[UserEntitlement] = None
    subscription: Optional[SubscriptionRecord] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    code: str
    details: Optional[Dict[str, Any]] = None
