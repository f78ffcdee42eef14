"""Store receipt validation.

Two variants share one contract: ``validate(receipt) -> PurchaseValidationResult``.

- Apple: legacy ``verifyReceipt`` endpoint with the app-specific shared secret.
- Google: Play Developer API ``purchases.subscriptions.get`` using Application
  Default Credentials.

``validate`` never raises. Transport, auth and parse failures are logged and
reported as ``valid=False`` so that a broken validator can never grant
entitlement.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib import error as url_error
from urllib import parse as url_parse
from urllib import request as url_request

import google.auth
from google.auth.transport.requests import Request as GoogleAuthRequest

from .. import config
from ..errors import TransientExternalError
from ..utils.time_utils import datetime_from_millis, parse_epoch_millis, utcnow

logger = logging.getLogger("api.receipt_validation")

USER_AGENT = "entitlement-sync-api/1.0"
ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
ANDROID_PUBLISHER_BASE_URL = "https://androidpublisher.googleapis.com/androidpublisher/v3"

# verifyReceipt status for a sandbox receipt sent to production.
APPLE_STATUS_SANDBOX_RECEIPT = 21007


@dataclass
class PurchaseValidationResult:
    valid: bool
    transaction_id: Optional[str] = None
    purchase_date: Optional[datetime] = None
    expiration_date: Optional[datetime] = None
    is_trial: bool = False
    reason: Optional[str] = None

    @classmethod
    def invalid(cls, reason: str) -> "PurchaseValidationResult":
        return cls(valid=False, reason=reason)


@dataclass
class AppleReceipt:
    receipt_data: str
    product_id: str


@dataclass
class GooglePlayPurchase:
    purchase_token: str
    product_id: str
    package_name: str


class ReceiptValidator:
    """Fail-closed wrapper around a platform-specific ``_validate``."""

    platform = "unknown"

    def validate(self, receipt: Any) -> PurchaseValidationResult:
        try:
            result = self._validate(receipt)
        except TransientExternalError as exc:
            logger.warning(
                "Receipt validation failed platform=%s product=%s code=%s details=%s",
                self.platform,
                getattr(receipt, "product_id", None),
                exc.code,
                exc.details,
            )
            return PurchaseValidationResult.invalid(exc.code)
        except Exception:
            logger.exception(
                "Unexpected receipt validation error platform=%s product=%s",
                self.platform,
                getattr(receipt, "product_id", None),
            )
            return PurchaseValidationResult.invalid("UNEXPECTED_VALIDATION_ERROR")

        if not result.valid:
            logger.info(
                "Receipt rejected platform=%s product=%s reason=%s",
                self.platform,
                getattr(receipt, "product_id", None),
                result.reason,
            )
        return result

    def _validate(self, receipt: Any) -> PurchaseValidationResult:
        raise NotImplementedError


def _read_json_response(req: url_request.Request, timeout: float, *, service: str) -> Dict[str, Any]:
    try:
        with url_request.urlopen(req, timeout=timeout) as resp:
            body = resp.read().decode("utf-8")
    except url_error.HTTPError as http_exc:
        raise TransientExternalError(
            f"{service} verification API request failed",
            code=f"{service.upper()}_API_HTTP_ERROR",
            details={"httpStatus": http_exc.code},
        ) from http_exc
    except url_error.URLError as url_exc:
        raise TransientExternalError(
            f"Unable to reach {service} verification API",
            code=f"{service.upper()}_API_UNREACHABLE",
            details={"reason": str(url_exc.reason)},
        ) from url_exc
    except OSError as os_exc:
        raise TransientExternalError(
            f"{service} verification API connection error",
            code=f"{service.upper()}_API_UNREACHABLE",
            details={"reason": str(os_exc)},
        ) from os_exc

    try:
        parsed = json.loads(body) if body else {}
    except ValueError as parse_exc:
        raise TransientExternalError(
            f"Invalid response from {service} verification API",
            code=f"{service.upper()}_INVALID_RESPONSE",
        ) from parse_exc
    if not isinstance(parsed, dict):
        raise TransientExternalError(
            f"Invalid response from {service} verification API",
            code=f"{service.upper()}_INVALID_RESPONSE",
        )
    return parsed


# ---------------------------------------------------------------------------
# Apple
# ---------------------------------------------------------------------------


class AppleReceiptValidator(ReceiptValidator):
    platform = "ios"

    def __init__(
        self,
        *,
        shared_secret: str,
        environment: str = "production",
        timeout: float = 8.0,
    ) -> None:
        self.shared_secret = shared_secret
        self.environment = environment
        self.timeout = timeout

    @property
    def use_sandbox(self) -> bool:
        return self.environment == "development"

    def _verify_url(self) -> str:
        if self.use_sandbox:
            return config.APPLE_VERIFY_RECEIPT_SANDBOX_URL
        return config.APPLE_VERIFY_RECEIPT_PRODUCTION_URL

    def _post_verify_receipt(self, url: str, receipt_data: str) -> Dict[str, Any]:
        payload = {
            "receipt-data": receipt_data,
            "password": self.shared_secret,
            "exclude-old-transactions": True,
        }
        req = url_request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        return _read_json_response(req, self.timeout, service="Apple")

    def _validate(self, receipt: AppleReceipt) -> PurchaseValidationResult:
        url = self._verify_url()
        body = self._post_verify_receipt(url, receipt.receipt_data)
        status = _as_int(body.get("status"))

        if status == APPLE_STATUS_SANDBOX_RECEIPT and url != config.APPLE_VERIFY_RECEIPT_SANDBOX_URL:
            logger.info("Apple receipt belongs to sandbox; retrying against sandbox endpoint")
            body = self._post_verify_receipt(config.APPLE_VERIFY_RECEIPT_SANDBOX_URL, receipt.receipt_data)
            status = _as_int(body.get("status"))

        if status != 0:
            return PurchaseValidationResult.invalid(f"APPLE_STATUS_{status}")

        purchase = select_apple_transaction(body, receipt.product_id)
        if purchase is None:
            return PurchaseValidationResult.invalid("PRODUCT_NOT_IN_RECEIPT")

        transaction_id = str(purchase.get("transaction_id") or "").strip()
        if not transaction_id:
            return PurchaseValidationResult.invalid("TRANSACTION_ID_MISSING")

        return PurchaseValidationResult(
            valid=True,
            transaction_id=transaction_id,
            purchase_date=datetime_from_millis(purchase.get("purchase_date_ms")) or utcnow(),
            expiration_date=datetime_from_millis(purchase.get("expires_date_ms")),
            is_trial=str(purchase.get("is_trial_period") or "").strip().lower() == "true",
        )


def select_apple_transaction(body: Dict[str, Any], product_id: str) -> Optional[Dict[str, Any]]:
    """Pick the transaction for ``product_id`` with the latest expiry.

    ``latest_receipt_info`` is consulted before ``receipt.in_app``; the first
    list that contains the product wins.
    """
    receipt = body.get("receipt") if isinstance(body.get("receipt"), dict) else {}
    candidate_lists: List[Any] = [body.get("latest_receipt_info"), receipt.get("in_app")]
    for entries in candidate_lists:
        if not isinstance(entries, list):
            continue
        matches = [
            entry
            for entry in entries
            if isinstance(entry, dict) and str(entry.get("product_id") or "") == product_id
        ]
        if matches:
            return max(
                matches,
                key=lambda entry: parse_epoch_millis(entry.get("expires_date_ms"))
                or parse_epoch_millis(entry.get("purchase_date_ms"))
                or 0,
            )
    return None


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ---------------------------------------------------------------------------
# Google Play
# ---------------------------------------------------------------------------


def default_google_access_token() -> str:
    try:
        credentials, _ = google.auth.default(scopes=[ANDROID_PUBLISHER_SCOPE])
        credentials.refresh(GoogleAuthRequest())
    except Exception as exc:
        raise TransientExternalError(
            "Google verification credentials are unavailable",
            code="GOOGLE_VERIFICATION_CREDENTIALS_MISSING",
            details={"reason": str(exc)},
        ) from exc
    token = str(getattr(credentials, "token", "") or "").strip()
    if not token:
        raise TransientExternalError(
            "Failed to obtain Google access token",
            code="GOOGLE_ACCESS_TOKEN_EMPTY",
        )
    return token


class GooglePlayValidator(ReceiptValidator):
    platform = "android"

    def __init__(
        self,
        *,
        expected_package_name: str = "",
        timeout: float = 8.0,
        token_provider: Optional[Callable[[], str]] = None,
    ) -> None:
        self.expected_package_name = expected_package_name
        self.timeout = timeout
        self._token_provider = token_provider or default_google_access_token

    def _get_subscription(self, purchase: GooglePlayPurchase, bearer_token: str) -> Dict[str, Any]:
        path = "/applications/{pkg}/purchases/subscriptions/{sub}/tokens/{token}".format(
            pkg=url_parse.quote(purchase.package_name, safe=""),
            sub=url_parse.quote(purchase.product_id, safe=""),
            token=url_parse.quote(purchase.purchase_token, safe=""),
        )
        req = url_request.Request(
            url=f"{ANDROID_PUBLISHER_BASE_URL}{path}",
            headers={
                "Authorization": f"Bearer {bearer_token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )
        return _read_json_response(req, self.timeout, service="Google")

    def _validate(self, purchase: GooglePlayPurchase) -> PurchaseValidationResult:
        if self.expected_package_name and purchase.package_name != self.expected_package_name:
            return PurchaseValidationResult.invalid("PACKAGE_NAME_MISMATCH")

        subscription = self._get_subscription(purchase, self._token_provider())
        expiration_date = datetime_from_millis(subscription.get("expiryTimeMillis"))
        if expiration_date is None:
            return PurchaseValidationResult.invalid("EXPIRY_MISSING")

        return PurchaseValidationResult(
            valid=True,
            transaction_id=purchase.purchase_token,
            purchase_date=datetime_from_millis(subscription.get("startTimeMillis")) or utcnow(),
            expiration_date=expiration_date,
            # non-renewing purchases are flagged as trials
            is_trial=subscription.get("autoRenewing") is False,
        )
