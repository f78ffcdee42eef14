"""Entitlement orchestration for every entry point.

- client receipt submission (iOS / Android): validate, then persist
- relay webhook delivery: authorize, dedupe, dispatch; always 200 once authorized
- admin override: upgrade / downgrade / reconcile a target user

Every mutation returns a ``TransitionOutcome`` pairing the durable result
with the claims propagation result, so a stale claims cache never masks a
successful billing transition.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .. import config
from ..errors import (
    AuthenticationError,
    ConfigurationError,
    EntitlementError,
    InternalError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ..models import EntitlementView, ReceiptValidationData, ReceiptValidationResponse
from ..utils.time_utils import utcnow
from .claims import ClaimsPropagator, PropagationResult
from .entitlement_store import AppliedTransition, EntitlementRepository
from .error_reporting import ErrorReporter
from .receipt_validation import (
    AppleReceipt,
    GooglePlayPurchase,
    PurchaseValidationResult,
    ReceiptValidator,
)
from .state_machine import (
    BillingEvent,
    EventKind,
    effective_plan,
    plan_reconciliation,
    plan_transition,
)
from .webhook_auth import authorize

logger = logging.getLogger("api.entitlements")


@dataclass
class TransitionOutcome:
    durable: AppliedTransition
    propagation: PropagationResult

    @property
    def applied(self) -> bool:
        return self.durable.applied


@dataclass
class WebhookResponse:
    status_code: int
    body: str


class EntitlementService:
    def __init__(
        self,
        repository: EntitlementRepository,
        claims: ClaimsPropagator,
        *,
        apple_validator: ReceiptValidator,
        google_validator: ReceiptValidator,
        error_reporter: ErrorReporter,
        webhook_secret: str = "",
        ordering: config.OrderingPolicy = "event_time",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._claims = claims
        self._apple = apple_validator
        self._google = google_validator
        self._error_reporter = error_reporter
        self._webhook_secret = webhook_secret
        self._ordering = ordering
        self._clock = clock

    # ------------------------------------------------------------------
    # Core transition
    # ------------------------------------------------------------------

    def apply_event(self, event: BillingEvent) -> TransitionOutcome:
        now = self._clock()
        durable = self._repository.apply(
            event.target_user_id,
            lambda current, record: plan_transition(event, current, record, now=now, ordering=self._ordering),
        )
        return self._finish(durable)

    def _finish(self, durable: AppliedTransition) -> TransitionOutcome:
        transition = durable.transition
        propagation = PropagationResult.not_attempted()
        if durable.applied and transition.claims:
            propagation = self._claims.propagate(durable.uid, transition.claims)
            if not propagation.ok and propagation.error is not None:
                self._error_reporter.report(
                    propagation.error,
                    source="claims_propagation",
                    context={"uid": durable.uid, "kind": transition.kind},
                )

        logger.info(
            "EntitlementTransition kind=%s uid=%s applied=%s skipped=%s from=%s to=%s recordWritten=%s claimsOk=%s",
            transition.kind,
            durable.uid,
            durable.applied,
            transition.skipped,
            transition.from_state.value if transition.from_state else None,
            transition.to_state.value if transition.to_state else None,
            durable.record_written,
            propagation.ok,
        )
        return TransitionOutcome(durable=durable, propagation=propagation)

    # ------------------------------------------------------------------
    # Client receipt submission
    # ------------------------------------------------------------------

    def validate_ios_receipt(
        self,
        uid: Optional[str],
        receipt_data: Optional[str],
        product_id: Optional[str],
    ) -> ReceiptValidationResponse:
        _require_caller(uid)
        if not receipt_data or not product_id:
            raise ValidationError("Receipt data and product ID are required")

        result = self._apple.validate(AppleReceipt(receipt_data=receipt_data, product_id=product_id))
        return self._complete_receipt(
            uid,
            platform="ios",
            product_id=product_id,
            result=result,
            invalid_message="Invalid receipt",
            failure_message="Failed to validate receipt",
        )

    def validate_android_purchase(
        self,
        uid: Optional[str],
        purchase_token: Optional[str],
        product_id: Optional[str],
        package_name: Optional[str],
    ) -> ReceiptValidationResponse:
        _require_caller(uid)
        if not purchase_token or not product_id or not package_name:
            raise ValidationError("Purchase token, product ID, and package name are required")

        result = self._google.validate(
            GooglePlayPurchase(
                purchase_token=purchase_token,
                product_id=product_id,
                package_name=package_name,
            )
        )
        return self._complete_receipt(
            uid,
            platform="android",
            product_id=product_id,
            result=result,
            invalid_message="Invalid purchase",
            failure_message="Failed to validate purchase",
        )

    def _complete_receipt(
        self,
        uid: str,
        *,
        platform: str,
        product_id: str,
        result: PurchaseValidationResult,
        invalid_message: str,
        failure_message: str,
    ) -> ReceiptValidationResponse:
        if not result.valid:
            return ReceiptValidationResponse(success=False, error=invalid_message)

        event = BillingEvent(
            kind=EventKind.CLIENT_RECEIPT,
            target_user_id=uid,
            platform=platform,
            product_id=product_id,
            transaction_id=result.transaction_id,
            purchase=result,
        )
        try:
            self.apply_event(event)
        except Exception as exc:
            logger.exception("Receipt entitlement write failed uid=%s platform=%s", uid, platform)
            raise InternalError(failure_message, details={"platform": platform}) from exc

        return ReceiptValidationResponse(
            success=True,
            data=ReceiptValidationData(
                valid=True,
                transactionId=result.transaction_id,
                expirationDate=result.expiration_date,
            ),
        )

    # ------------------------------------------------------------------
    # Relay webhook
    # ------------------------------------------------------------------

    def handle_webhook(self, authorization: Optional[str], body: Union[bytes, str, None]) -> WebhookResponse:
        if not self._webhook_secret:
            error = ConfigurationError("Webhook secret not configured", details={"env": "REVENUECAT_WEBHOOK_SECRET"})
            self._error_reporter.report(error, source="revenuecat_webhook")
            return WebhookResponse(error.status_code, error.error)
        if not authorization:
            logger.warning("Missing webhook authorization header")
            return WebhookResponse(401, "Unauthorized")
        if not authorize(authorization, self._webhook_secret):
            logger.warning("Invalid webhook authorization token")
            return WebhookResponse(401, "Unauthorized")

        event: Optional[BillingEvent] = None
        try:
            payload = json.loads(body or b"{}")
            event = BillingEvent.from_relay_payload(payload)
            logger.info("Received RevenueCat webhook: %s for user %s", event.kind_name, event.target_user_id)

            if event.known_kind is None:
                logger.info("Unhandled webhook event type: %s", event.kind_name)
                return WebhookResponse(200, "OK")

            if event.event_id and not self._repository.record_event(
                event.event_id, kind=event.kind_name, uid=event.target_user_id
            ):
                return WebhookResponse(200, "OK")

            try:
                self.apply_event(event)
            except Exception:
                if event.event_id:
                    self._release_event(event.event_id)
                raise
        except Exception as exc:
            self._error_reporter.report(
                exc,
                source="revenuecat_webhook",
                context={
                    "eventId": event.event_id if event else None,
                    "type": event.kind_name if event else None,
                    "uid": event.target_user_id if event else None,
                },
            )
            return WebhookResponse(200, "Error logged")

        return WebhookResponse(200, "OK")

    def _release_event(self, event_id: str) -> None:
        try:
            self._repository.release_event(event_id)
        except Exception as exc:
            # Marker stays; the event must be replayed by hand.
            self._error_reporter.report(exc, source="revenuecat_webhook", context={"eventId": event_id})

    # ------------------------------------------------------------------
    # Admin override
    # ------------------------------------------------------------------

    def admin_upgrade(self, caller_claims: Mapping[str, Any], target_user_id: Any) -> TransitionOutcome:
        return self._admin_apply(
            caller_claims,
            target_user_id,
            EventKind.ADMIN_UPGRADE,
            denied_message="Only admins can upgrade users to premium",
            failure_message="Failed to upgrade user to premium",
        )

    def admin_downgrade(self, caller_claims: Mapping[str, Any], target_user_id: Any) -> TransitionOutcome:
        return self._admin_apply(
            caller_claims,
            target_user_id,
            EventKind.ADMIN_DOWNGRADE,
            denied_message="Only admins can downgrade users to free",
            failure_message="Failed to downgrade user to free",
        )

    def _admin_apply(
        self,
        caller_claims: Mapping[str, Any],
        target_user_id: Any,
        kind: EventKind,
        *,
        denied_message: str,
        failure_message: str,
    ) -> TransitionOutcome:
        require_admin(caller_claims, denied_message)
        uid = _require_target(target_user_id)
        try:
            outcome = self.apply_event(BillingEvent(kind=kind, target_user_id=uid))
        except EntitlementError:
            raise
        except Exception as exc:
            logger.exception("Admin %s failed uid=%s", kind.value, uid)
            raise InternalError(failure_message, details={"uid": uid}) from exc
        logger.info("Admin %s by=%s target=%s", kind.value, caller_claims.get("uid"), uid)
        return outcome

    # ------------------------------------------------------------------
    # Reads and repair
    # ------------------------------------------------------------------

    def resolve_plan(self, uid: str, token_claims: Mapping[str, Any]) -> EntitlementView:
        """Effective plan from the durable record, re-syncing stale claims."""
        entitlement = self._repository.get_entitlement(uid)
        subscription = self._repository.get_subscription(uid)
        plan = effective_plan(entitlement, self._clock())
        claims_in_sync = str(token_claims.get("plan") or "free") == plan

        if not claims_in_sync and entitlement is not None:
            logger.info("Claims out of sync uid=%s claimsPlan=%s effectivePlan=%s", uid, token_claims.get("plan"), plan)
            self._claims.propagate(uid, {"plan": plan, "subscriptionStatus": entitlement.subscriptionStatus})

        return EntitlementView(
            uid=uid,
            effectivePlan=plan,
            claimsInSync=claims_in_sync,
            entitlement=entitlement,
            subscription=subscription,
        )

    def admin_reconcile(self, caller_claims: Mapping[str, Any], target_user_id: Any) -> TransitionOutcome:
        require_admin(caller_claims, "Only admins can reconcile subscriptions")
        uid = _require_target(target_user_id)
        outcome = self.reconcile_user(uid)
        logger.info("Admin RECONCILE by=%s target=%s repaired=%s", caller_claims.get("uid"), uid, outcome.applied)
        return outcome

    def reconcile_user(self, uid: str) -> TransitionOutcome:
        durable = self._repository.apply(uid, plan_reconciliation)
        return self._finish(durable)

    def reconcile_all(self) -> Dict[str, int]:
        stats = {"checked": 0, "repaired": 0, "failed": 0}
        for uid in self._repository.iter_user_ids():
            stats["checked"] += 1
            try:
                outcome = self.reconcile_user(uid)
            except NotFoundError:
                continue
            except Exception as exc:
                stats["failed"] += 1
                self._error_reporter.report(exc, source="reconcile", context={"uid": uid})
                continue
            if outcome.applied:
                stats["repaired"] += 1
        logger.info("Reconciliation finished checked=%s repaired=%s failed=%s", stats["checked"], stats["repaired"], stats["failed"])
        return stats


def require_admin(caller_claims: Optional[Mapping[str, Any]], message: str = "Admin privileges required") -> None:
    if not caller_claims or caller_claims.get("admin") is not True:
        raise PermissionDeniedError(message)


def _require_caller(uid: Optional[str]) -> None:
    if not uid:
        raise AuthenticationError("User must be authenticated")


def _require_target(target_user_id: Any) -> str:
    if not target_user_id or not isinstance(target_user_id, str) or not target_user_id.strip():
        raise ValidationError("targetUserId is required and must be a string")
    return target_user_id.strip()
