"""Subscription state machine.

Maps one inbound billing event (relay webhook, client receipt, admin override)
plus the current durable snapshot to a ``Transition``: the user fields to
write, the subscription-record fields to write, and the claims to mirror.

Planning is pure. The Firestore adapter may invoke a planner more than once
when a transaction is retried, so nothing here performs I/O or reads the
clock; ``now`` is passed in.

States::

    FREE --purchase/admin upgrade--> ACTIVE --cancellation--> CANCELED_PENDING_EXPIRY
      ^                                |  ^                        |
      |                                |  +------renewal-----------+
      +------- EXPIRED <--expiration/admin downgrade---------------+
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .. import config
from ..errors import ValidationError
from ..models import SubscriptionRecord, UserEntitlement
from ..utils.time_utils import add_days, add_years, datetime_from_millis, parse_epoch_millis
from .receipt_validation import PurchaseValidationResult

logger = logging.getLogger("api.state_machine")


class EventKind(str, Enum):
    INITIAL_PURCHASE = "INITIAL_PURCHASE"
    RENEWAL = "RENEWAL"
    CANCELLATION = "CANCELLATION"
    EXPIRATION = "EXPIRATION"
    ADMIN_UPGRADE = "ADMIN_UPGRADE"
    ADMIN_DOWNGRADE = "ADMIN_DOWNGRADE"
    CLIENT_RECEIPT = "CLIENT_RECEIPT"
    RECONCILE = "RECONCILE"


WEBHOOK_KINDS = frozenset(
    {EventKind.INITIAL_PURCHASE, EventKind.RENEWAL, EventKind.CANCELLATION, EventKind.EXPIRATION}
)


class EntitlementState(str, Enum):
    FREE = "FREE"
    ACTIVE = "ACTIVE"
    CANCELED_PENDING_EXPIRY = "CANCELED_PENDING_EXPIRY"
    EXPIRED = "EXPIRED"


def classify(entitlement: Optional[UserEntitlement]) -> EntitlementState:
    if entitlement is None or entitlement.plan != "premium":
        if entitlement is not None and entitlement.subscriptionStatus == "canceled":
            return EntitlementState.EXPIRED
        return EntitlementState.FREE
    if entitlement.subscriptionStatus == "canceled":
        return EntitlementState.CANCELED_PENDING_EXPIRY
    return EntitlementState.ACTIVE


def effective_plan(entitlement: Optional[UserEntitlement], now: datetime) -> str:
    """Plan a caller should be served right now.

    A premium record past its end date reads as free even before the
    EXPIRATION event lands; the durable record itself is not touched.
    """
    if entitlement is None or entitlement.plan != "premium":
        return "free"
    if entitlement.subscriptionStatus == "none":
        return "free"
    end = entitlement.subscriptionEndDate
    if end is not None and end <= now:
        return "free"
    return "premium"


_STORE_PLATFORMS = {
    "APP_STORE": "ios",
    "MAC_APP_STORE": "ios",
    "PLAY_STORE": "android",
    "IOS": "ios",
    "ANDROID": "android",
}


def _normalize_platform(value: Any) -> Optional[str]:
    return _STORE_PLATFORMS.get(str(value or "").strip().upper())


@dataclass
class BillingEvent:
    kind: Union[EventKind, str]
    target_user_id: str
    expiration_at_ms: Optional[int] = None
    transaction_id: Optional[str] = None
    platform: Optional[str] = None
    product_id: Optional[str] = None
    purchased_at_ms: Optional[int] = None
    event_id: Optional[str] = None
    event_timestamp_ms: Optional[int] = None
    purchase: Optional[PurchaseValidationResult] = None

    @property
    def known_kind(self) -> Optional[EventKind]:
        if isinstance(self.kind, EventKind):
            return self.kind
        try:
            return EventKind(str(self.kind))
        except ValueError:
            return None

    @property
    def kind_name(self) -> str:
        return self.kind.value if isinstance(self.kind, EventKind) else str(self.kind)

    @classmethod
    def from_relay_payload(cls, payload: Any) -> "BillingEvent":
        """Build an event from the relay envelope ``{"event": {...}}``."""
        event = payload.get("event") if isinstance(payload, dict) else None
        if not isinstance(event, dict):
            raise ValidationError("Webhook body is missing the event object", code="WEBHOOK_EVENT_MISSING")

        app_user_id = str(event.get("app_user_id") or "").strip()
        if not app_user_id:
            raise ValidationError("Webhook event is missing app_user_id", code="WEBHOOK_USER_MISSING")

        raw_type = str(event.get("type") or "").strip().upper()
        try:
            kind: Union[EventKind, str] = EventKind(raw_type)
        except ValueError:
            kind = raw_type
        if isinstance(kind, EventKind) and kind not in WEBHOOK_KINDS:
            # admin and client kinds cannot be injected through the relay
            kind = f"RELAY_{raw_type}"

        return cls(
            kind=kind,
            target_user_id=app_user_id,
            expiration_at_ms=parse_epoch_millis(event.get("expiration_at_ms")),
            transaction_id=str(event.get("transaction_id") or "").strip() or None,
            platform=_normalize_platform(event.get("store")),
            product_id=str(event.get("product_id") or "").strip() or None,
            purchased_at_ms=parse_epoch_millis(event.get("purchased_at_ms")),
            event_id=str(event.get("id") or "").strip() or None,
            event_timestamp_ms=parse_epoch_millis(event.get("event_timestamp_ms")),
        )


@dataclass
class Transition:
    kind: str
    user_updates: Dict[str, Any] = field(default_factory=dict)
    record_updates: Dict[str, Any] = field(default_factory=dict)
    create_record: bool = False
    claims: Optional[Dict[str, str]] = None
    skipped: Optional[str] = None
    from_state: Optional[EntitlementState] = None
    to_state: Optional[EntitlementState] = None

    @property
    def applies(self) -> bool:
        return self.skipped is None

    @classmethod
    def skip(cls, kind: str, reason: str, current: Optional[UserEntitlement] = None) -> "Transition":
        state = classify(current)
        return cls(kind=kind, skipped=reason, from_state=state, to_state=state)


def project_entitlement(current: UserEntitlement, updates: Mapping[str, Any]) -> UserEntitlement:
    """Return ``current`` with ``updates`` applied, as a new model."""
    if not updates:
        return current
    return current.model_copy(update=dict(updates))


def _claims(plan: str, status: str) -> Dict[str, str]:
    return {"plan": plan, "subscriptionStatus": status}


# ---------------------------------------------------------------------------
# Per-event planners
# ---------------------------------------------------------------------------

Planner = Callable[[BillingEvent, UserEntitlement, Optional[SubscriptionRecord], datetime], Transition]


def _plan_client_receipt(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    purchase = event.purchase
    if purchase is None or not purchase.valid:
        return Transition.skip(event.kind_name, "invalid_receipt", current)

    start = purchase.purchase_date or now
    end = purchase.expiration_date or add_days(start, config.DEFAULT_SUBSCRIPTION_DAYS)
    return Transition(
        kind=event.kind_name,
        user_updates={
            "plan": "premium",
            "subscriptionStatus": "active",
            "subscriptionProductId": event.product_id,
            "subscriptionStartDate": start,
            "subscriptionEndDate": end,
            "subscriptionPlatform": event.platform,
            "subscriptionTransactionId": purchase.transaction_id,
            "isTrial": bool(purchase.is_trial),
        },
        record_updates={
            "plan": "premium",
            "status": "active",
            "currentPeriodStart": start,
            "currentPeriodEnd": end,
        },
        create_record=True,
        claims=_claims("premium", "active"),
    )


def _plan_initial_purchase(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    start = datetime_from_millis(event.purchased_at_ms)
    end = datetime_from_millis(event.expiration_at_ms)
    if end is None and start is not None:
        end = add_days(start, config.DEFAULT_SUBSCRIPTION_DAYS)
    if end is None:
        return Transition.skip(event.kind_name, "missing_expiration", current)

    user_updates: Dict[str, Any] = {
        "plan": "premium",
        "subscriptionStatus": "active",
        "subscriptionEndDate": end,
    }
    record_updates: Dict[str, Any] = {"plan": "premium", "status": "active", "currentPeriodEnd": end}
    if start is not None:
        user_updates["subscriptionStartDate"] = start
        record_updates["currentPeriodStart"] = start
    if event.product_id:
        user_updates["subscriptionProductId"] = event.product_id
    if event.platform:
        user_updates["subscriptionPlatform"] = event.platform
    if event.transaction_id:
        user_updates["subscriptionTransactionId"] = event.transaction_id

    return Transition(
        kind=event.kind_name,
        user_updates=user_updates,
        record_updates=record_updates,
        create_record=True,
        claims=_claims("premium", "active"),
    )


def _plan_renewal(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    end = datetime_from_millis(event.expiration_at_ms)
    if end is None:
        return Transition.skip(event.kind_name, "missing_expiration", current)

    user_updates: Dict[str, Any] = {
        "plan": "premium",
        "subscriptionStatus": "active",
        "subscriptionEndDate": end,
    }
    if event.transaction_id:
        user_updates["subscriptionTransactionId"] = event.transaction_id
    return Transition(
        kind=event.kind_name,
        user_updates=user_updates,
        record_updates={"plan": "premium", "status": "active", "currentPeriodEnd": end},
        claims=_claims("premium", "active"),
    )


def _plan_cancellation(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    end = datetime_from_millis(event.expiration_at_ms)
    user_updates: Dict[str, Any] = {"subscriptionStatus": "canceled"}
    record_updates: Dict[str, Any] = {"status": "canceled"}
    # A missing expiry never clears a known one.
    if end is not None:
        user_updates["subscriptionEndDate"] = end
        record_updates["currentPeriodEnd"] = end
    return Transition(
        kind=event.kind_name,
        user_updates=user_updates,
        record_updates=record_updates,
        claims=_claims(current.plan, "canceled"),
    )


def _plan_downgrade(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    return Transition(
        kind=event.kind_name,
        user_updates={"plan": "free", "subscriptionStatus": "canceled"},
        record_updates={"plan": "free", "status": "canceled"},
        claims=_claims("free", "canceled"),
    )


def _plan_admin_upgrade(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    now: datetime,
) -> Transition:
    end = add_years(now, 1)
    return Transition(
        kind=event.kind_name,
        user_updates={
            "plan": "premium",
            "subscriptionStatus": "active",
            "subscriptionStartDate": now,
            "subscriptionEndDate": end,
        },
        record_updates={
            "plan": "premium",
            "status": "active",
            "currentPeriodStart": now,
            "currentPeriodEnd": end,
        },
        create_record=True,
        claims=_claims("premium", "active"),
    )


_PLANNERS: Dict[EventKind, Planner] = {
    EventKind.CLIENT_RECEIPT: _plan_client_receipt,
    EventKind.INITIAL_PURCHASE: _plan_initial_purchase,
    EventKind.RENEWAL: _plan_renewal,
    EventKind.CANCELLATION: _plan_cancellation,
    EventKind.EXPIRATION: _plan_downgrade,
    EventKind.ADMIN_UPGRADE: _plan_admin_upgrade,
    EventKind.ADMIN_DOWNGRADE: _plan_downgrade,
}


def is_stale(event: BillingEvent, current: Optional[UserEntitlement]) -> bool:
    """True when a relay event is older than the last one applied."""
    if event.known_kind not in WEBHOOK_KINDS or event.event_timestamp_ms is None:
        return False
    if current is None or current.lastBillingEventAtMs is None:
        return False
    return event.event_timestamp_ms < current.lastBillingEventAtMs


def plan_transition(
    event: BillingEvent,
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
    *,
    now: datetime,
    ordering: config.OrderingPolicy = "event_time",
) -> Transition:
    kind = event.known_kind
    planner = _PLANNERS.get(kind) if kind is not None else None
    if planner is None:
        logger.info("Ignoring unrecognized billing event type=%s uid=%s", event.kind_name, event.target_user_id)
        return Transition.skip(event.kind_name, "unrecognized_event", current)

    if ordering == "event_time" and is_stale(event, current):
        logger.info(
            "Ignoring stale billing event type=%s uid=%s eventTs=%s lastAppliedTs=%s",
            event.kind_name,
            event.target_user_id,
            event.event_timestamp_ms,
            current.lastBillingEventAtMs,
        )
        return Transition.skip(event.kind_name, "stale_event", current)

    transition = planner(event, current, record, now)
    if not transition.applies:
        return transition

    if kind in WEBHOOK_KINDS and event.event_timestamp_ms is not None:
        previous = current.lastBillingEventAtMs or 0
        transition.user_updates["lastBillingEventAtMs"] = max(previous, event.event_timestamp_ms)

    transition.from_state = classify(current)
    transition.to_state = classify(project_entitlement(current, transition.user_updates))
    return transition


def plan_reconciliation(
    current: UserEntitlement,
    record: Optional[SubscriptionRecord],
) -> Transition:
    """Project the user entitlement onto its subscription record.

    Only fields that diverge are rewritten. A missing record is created only
    for premium users, matching the lazy creation on the first paid transition.
    """
    kind = EventKind.RECONCILE.value
    expected: Dict[str, Any] = {"plan": current.plan}
    if current.subscriptionStatus != "none":
        expected["status"] = current.subscriptionStatus
    if current.subscriptionEndDate is not None:
        expected["currentPeriodEnd"] = current.subscriptionEndDate
    if current.subscriptionStartDate is not None:
        expected["currentPeriodStart"] = current.subscriptionStartDate

    claims = _claims(current.plan, current.subscriptionStatus)
    if record is None:
        if current.plan != "premium":
            return Transition.skip(kind, "in_sync", current)
        return Transition(
            kind=kind,
            record_updates=expected,
            create_record=True,
            claims=claims,
            from_state=classify(current),
            to_state=classify(current),
        )

    diverged = {key: value for key, value in expected.items() if getattr(record, key) != value}
    if not diverged:
        return Transition.skip(kind, "in_sync", current)
    return Transition(
        kind=kind,
        record_updates=diverged,
        claims=claims,
        from_state=classify(current),
        to_state=classify(current),
    )
