from datetime import datetime, timedelta, timezone

import pytest

from entitlements_api.errors import ValidationError
from entitlements_api.models import SubscriptionRecord, UserEntitlement
from entitlements_api.services.receipt_validation import PurchaseValidationResult
from entitlements_api.services.state_machine import (
    BillingEvent,
    EntitlementState,
    EventKind,
    classify,
    effective_plan,
    plan_reconciliation,
    plan_transition,
    project_entitlement,
)
from entitlements_api.utils.time_utils import add_years, datetime_from_millis

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
PURCHASED_MS = 1_735_689_600_000  # 2025-01-01T00:00:00Z
EXPIRES_MS = 1_767_225_600_000  # 2026-01-01T00:00:00Z
RENEWED_MS = 1_798_761_600_000  # 2027-01-01T00:00:00Z


def fresh(uid="u1", **fields):
    return UserEntitlement(uid=uid, **fields)


def step(current, event, ordering="event_time", record=None):
    transition = plan_transition(event, current, record, now=NOW, ordering=ordering)
    return project_entitlement(current, transition.user_updates), transition


def relay(kind, **fields):
    return BillingEvent(kind=kind, target_user_id="u1", **fields)


def test_initial_purchase_then_expiration_leaves_user_free():
    ent, purchase = step(fresh(), relay(EventKind.INITIAL_PURCHASE, purchased_at_ms=PURCHASED_MS, expiration_at_ms=EXPIRES_MS))
    assert ent.plan == "premium"
    assert ent.subscriptionStatus == "active"
    assert ent.subscriptionEndDate == datetime_from_millis(EXPIRES_MS)
    assert purchase.create_record is True
    assert purchase.from_state is EntitlementState.FREE
    assert purchase.to_state is EntitlementState.ACTIVE

    ent, expiration = step(ent, relay(EventKind.EXPIRATION))
    assert ent.plan == "free"
    assert ent.subscriptionStatus == "canceled"
    assert expiration.claims == {"plan": "free", "subscriptionStatus": "canceled"}
    assert expiration.to_state is EntitlementState.EXPIRED
    assert effective_plan(ent, NOW) == "free"


def test_renewal_is_idempotent():
    start = fresh(plan="premium", subscriptionStatus="active", subscriptionEndDate=datetime_from_millis(EXPIRES_MS))
    renewal = relay(EventKind.RENEWAL, expiration_at_ms=RENEWED_MS, transaction_id="tx-2")

    once, first = step(start, renewal)
    twice, second = step(once, renewal)

    assert once == twice
    assert first.user_updates == second.user_updates
    assert twice.plan == "premium"
    assert twice.subscriptionEndDate == datetime_from_millis(RENEWED_MS)
    assert twice.subscriptionTransactionId == "tx-2"
    assert first.create_record is False


def test_renewal_restores_premium_after_cancellation():
    canceled = fresh(plan="premium", subscriptionStatus="canceled")
    ent, transition = step(canceled, relay(EventKind.RENEWAL, expiration_at_ms=RENEWED_MS))
    assert (ent.plan, ent.subscriptionStatus) == ("premium", "active")
    assert transition.from_state is EntitlementState.CANCELED_PENDING_EXPIRY
    assert transition.to_state is EntitlementState.ACTIVE


def test_renewal_without_expiration_is_skipped():
    current = fresh(plan="premium", subscriptionStatus="active")
    _, transition = step(current, relay(EventKind.RENEWAL))
    assert transition.skipped == "missing_expiration"
    assert transition.user_updates == {}


def test_admin_upgrade_then_downgrade_leaves_free_canceled():
    ent, upgrade = step(fresh(), BillingEvent(kind=EventKind.ADMIN_UPGRADE, target_user_id="u1"))
    assert ent.plan == "premium"
    assert ent.subscriptionStartDate == NOW
    assert ent.subscriptionEndDate == add_years(NOW, 1)
    assert upgrade.record_updates["currentPeriodEnd"] == add_years(NOW, 1)

    ent, _ = step(ent, BillingEvent(kind=EventKind.ADMIN_DOWNGRADE, target_user_id="u1"))
    assert (ent.plan, ent.subscriptionStatus) == ("free", "canceled")


def test_cancellation_without_expiration_keeps_end_date():
    end = datetime_from_millis(EXPIRES_MS)
    current = fresh(plan="premium", subscriptionStatus="active", subscriptionEndDate=end)

    ent, transition = step(current, relay(EventKind.CANCELLATION))

    assert ent.subscriptionEndDate == end
    assert ent.plan == "premium"
    assert ent.subscriptionStatus == "canceled"
    assert "subscriptionEndDate" not in transition.user_updates
    assert "currentPeriodEnd" not in transition.record_updates
    assert transition.claims == {"plan": "premium", "subscriptionStatus": "canceled"}


def test_cancellation_with_expiration_moves_end_date():
    current = fresh(plan="premium", subscriptionStatus="active", subscriptionEndDate=datetime_from_millis(RENEWED_MS))
    ent, transition = step(current, relay(EventKind.CANCELLATION, expiration_at_ms=EXPIRES_MS))
    assert ent.subscriptionEndDate == datetime_from_millis(EXPIRES_MS)
    assert transition.record_updates == {"status": "canceled", "currentPeriodEnd": datetime_from_millis(EXPIRES_MS)}


def test_initial_purchase_without_expiration_defaults_to_a_year_from_purchase():
    ent, _ = step(fresh(), relay(EventKind.INITIAL_PURCHASE, purchased_at_ms=PURCHASED_MS))
    assert ent.subscriptionEndDate == datetime_from_millis(PURCHASED_MS) + timedelta(days=365)


def test_initial_purchase_without_any_dates_is_skipped():
    _, transition = step(fresh(), relay(EventKind.INITIAL_PURCHASE))
    assert transition.skipped == "missing_expiration"
    assert not transition.applies


def test_client_receipt_uses_validated_dates():
    purchase = PurchaseValidationResult(
        valid=True,
        transaction_id="1000",
        purchase_date=datetime_from_millis(PURCHASED_MS),
        expiration_date=datetime_from_millis(EXPIRES_MS),
        is_trial=True,
    )
    event = BillingEvent(
        kind=EventKind.CLIENT_RECEIPT,
        target_user_id="u1",
        platform="ios",
        product_id="premium_yearly",
        purchase=purchase,
    )
    ent, transition = step(fresh(), event)
    assert ent.subscriptionPlatform == "ios"
    assert ent.subscriptionProductId == "premium_yearly"
    assert ent.subscriptionTransactionId == "1000"
    assert ent.isTrial is True
    assert transition.record_updates["currentPeriodStart"] == datetime_from_millis(PURCHASED_MS)
    assert "lastBillingEventAtMs" not in transition.user_updates


def test_stale_cancellation_is_ignored_under_event_time_ordering():
    ent, _ = step(fresh(), relay(EventKind.RENEWAL, expiration_at_ms=RENEWED_MS, event_timestamp_ms=2_000_000_000_000))
    assert ent.lastBillingEventAtMs == 2_000_000_000_000

    late = relay(EventKind.CANCELLATION, event_timestamp_ms=1_999_999_999_000)
    after, transition = step(ent, late, ordering="event_time")

    assert transition.skipped == "stale_event"
    assert after == ent
    assert after.subscriptionStatus == "active"


def test_stale_cancellation_is_applied_under_arrival_ordering():
    ent, _ = step(fresh(), relay(EventKind.RENEWAL, expiration_at_ms=RENEWED_MS, event_timestamp_ms=2_000_000_000_000))

    late = relay(EventKind.CANCELLATION, event_timestamp_ms=1_999_999_999_000)
    after, transition = step(ent, late, ordering="arrival")

    assert transition.applies
    assert after.subscriptionStatus == "canceled"
    assert after.lastBillingEventAtMs == 2_000_000_000_000


def test_event_with_same_timestamp_is_not_stale():
    ent = fresh(plan="premium", subscriptionStatus="active", lastBillingEventAtMs=2_000_000_000_000)
    _, transition = step(ent, relay(EventKind.CANCELLATION, event_timestamp_ms=2_000_000_000_000))
    assert transition.applies


def test_admin_events_ignore_event_ordering():
    ent = fresh(plan="premium", subscriptionStatus="active", lastBillingEventAtMs=2_000_000_000_000)
    after, transition = step(ent, BillingEvent(kind=EventKind.ADMIN_DOWNGRADE, target_user_id="u1"))
    assert transition.applies
    assert after.plan == "free"
    assert after.lastBillingEventAtMs == 2_000_000_000_000


def test_unrecognized_event_is_skipped_without_updates():
    current = fresh(plan="premium", subscriptionStatus="active")
    after, transition = step(current, relay("PRODUCT_CHANGE"))
    assert transition.skipped == "unrecognized_event"
    assert after == current
    assert transition.claims is None


class TestRelayPayload:
    def test_parses_relay_envelope(self):
        event = BillingEvent.from_relay_payload(
            {
                "event": {
                    "id": "evt-1",
                    "type": "renewal",
                    "app_user_id": " u1 ",
                    "product_id": "premium_yearly",
                    "purchased_at_ms": PURCHASED_MS,
                    "expiration_at_ms": str(EXPIRES_MS),
                    "transaction_id": 12345,
                    "event_timestamp_ms": 1_735_700_000_000,
                    "store": "APP_STORE",
                }
            }
        )
        assert event.kind is EventKind.RENEWAL
        assert event.target_user_id == "u1"
        assert event.expiration_at_ms == EXPIRES_MS
        assert event.transaction_id == "12345"
        assert event.platform == "ios"
        assert event.event_id == "evt-1"

    @pytest.mark.parametrize("store,platform", [("PLAY_STORE", "android"), ("MAC_APP_STORE", "ios"), ("STRIPE", None)])
    def test_store_mapping(self, store, platform):
        event = BillingEvent.from_relay_payload({"event": {"type": "RENEWAL", "app_user_id": "u1", "store": store}})
        assert event.platform == platform

    def test_seconds_are_scaled_to_millis(self):
        event = BillingEvent.from_relay_payload(
            {"event": {"type": "RENEWAL", "app_user_id": "u1", "expiration_at_ms": 1_767_225_600}}
        )
        assert event.expiration_at_ms == EXPIRES_MS

    @pytest.mark.parametrize("kind", ["ADMIN_UPGRADE", "CLIENT_RECEIPT", "RECONCILE"])
    def test_internal_kinds_cannot_arrive_through_the_relay(self, kind):
        event = BillingEvent.from_relay_payload({"event": {"type": kind, "app_user_id": "u1"}})
        assert event.known_kind is None
        assert event.kind_name == f"RELAY_{kind}"

    def test_unknown_type_is_kept_verbatim(self):
        event = BillingEvent.from_relay_payload({"event": {"type": "BILLING_ISSUE", "app_user_id": "u1"}})
        assert event.known_kind is None
        assert event.kind_name == "BILLING_ISSUE"

    @pytest.mark.parametrize("payload", [{}, {"event": None}, {"event": "x"}, [], None])
    def test_missing_event_object(self, payload):
        with pytest.raises(ValidationError) as exc_info:
            BillingEvent.from_relay_payload(payload)
        assert exc_info.value.code == "WEBHOOK_EVENT_MISSING"

    def test_missing_user(self):
        with pytest.raises(ValidationError) as exc_info:
            BillingEvent.from_relay_payload({"event": {"type": "RENEWAL", "app_user_id": "  "}})
        assert exc_info.value.code == "WEBHOOK_USER_MISSING"


class TestEffectivePlan:
    def test_premium_until_end_date(self):
        ent = fresh(plan="premium", subscriptionStatus="canceled", subscriptionEndDate=NOW + timedelta(days=1))
        assert effective_plan(ent, NOW) == "premium"

    def test_past_end_date_reads_free(self):
        ent = fresh(plan="premium", subscriptionStatus="active", subscriptionEndDate=NOW - timedelta(seconds=1))
        assert effective_plan(ent, NOW) == "free"

    def test_status_none_reads_free(self):
        assert effective_plan(fresh(plan="premium"), NOW) == "free"

    def test_missing_user_reads_free(self):
        assert effective_plan(None, NOW) == "free"


def test_classify_states():
    assert classify(None) is EntitlementState.FREE
    assert classify(fresh()) is EntitlementState.FREE
    assert classify(fresh(plan="premium", subscriptionStatus="active")) is EntitlementState.ACTIVE
    assert classify(fresh(plan="premium", subscriptionStatus="canceled")) is EntitlementState.CANCELED_PENDING_EXPIRY
    assert classify(fresh(subscriptionStatus="canceled")) is EntitlementState.EXPIRED


class TestReconciliation:
    def test_in_sync_record_is_skipped(self):
        end = datetime_from_millis(EXPIRES_MS)
        ent = fresh(plan="premium", subscriptionStatus="active", subscriptionEndDate=end)
        record = SubscriptionRecord(uid="u1", plan="premium", status="active", currentPeriodEnd=end)
        transition = plan_reconciliation(ent, record)
        assert transition.skipped == "in_sync"

    def test_diverged_fields_are_rewritten(self):
        end = datetime_from_millis(EXPIRES_MS)
        ent = fresh(plan="free", subscriptionStatus="canceled", subscriptionEndDate=end)
        record = SubscriptionRecord(uid="u1", plan="premium", status="active", currentPeriodEnd=end)
        transition = plan_reconciliation(ent, record)
        assert transition.record_updates == {"plan": "free", "status": "canceled"}
        assert transition.user_updates == {}
        assert transition.claims == {"plan": "free", "subscriptionStatus": "canceled"}

    def test_missing_record_created_for_premium_only(self):
        premium = fresh(plan="premium", subscriptionStatus="active")
        created = plan_reconciliation(premium, None)
        assert created.create_record is True
        assert created.record_updates == {"plan": "premium", "status": "active"}

        assert plan_reconciliation(fresh(), None).skipped == "in_sync"


def test_add_years_handles_leap_day():
    leap = datetime(2024, 2, 29, tzinfo=timezone.utc)
    assert add_years(leap, 1) == datetime(2025, 2, 28, tzinfo=timezone.utc)
