"""Durable entitlement storage.

``EntitlementRepository`` is the port the service layer talks to. The
Firestore adapter keeps the two documents for a user in step:

- ``users/{uid}``: the entitlement fields read by the rest of the app
- ``subscriptions/{uid}``: the billing-facing projection, created lazily

Both writes for one transition happen inside a single Firestore transaction,
together with the reads the planner decides on. Relay event ids are recorded
in ``billingEvents/{eventId}`` so duplicate deliveries can be dropped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from google.api_core.exceptions import AlreadyExists
from google.cloud import firestore

from .. import config
from ..errors import NotFoundError
from ..models import SubscriptionRecord, UserEntitlement
from ..utils.time_utils import to_datetime
from .state_machine import Transition, project_entitlement

logger = logging.getLogger("api.entitlement_store")

EntitlementPlanner = Callable[[UserEntitlement, Optional[SubscriptionRecord]], Transition]

_USER_DATETIME_FIELDS = ("subscriptionStartDate", "subscriptionEndDate", "updatedAt")
_RECORD_DATETIME_FIELDS = ("currentPeriodStart", "currentPeriodEnd", "createdAt", "updatedAt")


@dataclass
class AppliedTransition:
    """Durable half of a transition outcome."""
    uid: str
    transition: Transition
    before: UserEntitlement
    after: UserEntitlement
    user_written: bool = False
    record_written: bool = False
    record_created: bool = False

    @property
    def applied(self) -> bool:
        return self.transition.applies


def user_not_found(uid: str) -> NotFoundError:
    return NotFoundError("User not found", code="USER_NOT_FOUND", details={"uid": uid})


# ---------------------------------------------------------------------------
# Document coercion
# ---------------------------------------------------------------------------


def entitlement_from_doc(uid: str, data: Optional[Dict[str, Any]]) -> UserEntitlement:
    """Tolerant read of ``users/{uid}``; unknown enum values fall back to defaults."""
    data = data or {}
    plan = str(data.get("plan") or "").strip().lower()
    status = str(data.get("subscriptionStatus") or "").strip().lower()
    platform = str(data.get("subscriptionPlatform") or "").strip().lower()
    last_event = data.get("lastBillingEventAtMs")
    fields: Dict[str, Any] = {
        "uid": uid,
        "plan": plan if plan in ("free", "premium") else "free",
        "subscriptionStatus": status if status in ("none", "active", "canceled") else "none",
        "subscriptionPlatform": platform if platform in ("ios", "android") else None,
        "subscriptionProductId": data.get("subscriptionProductId") or None,
        "subscriptionTransactionId": data.get("subscriptionTransactionId") or None,
        "isTrial": bool(data.get("isTrial")),
        "lastBillingEventAtMs": int(last_event) if isinstance(last_event, (int, float)) else None,
    }
    for name in _USER_DATETIME_FIELDS:
        fields[name] = to_datetime(data.get(name))
    return UserEntitlement(**fields)


def record_from_doc(uid: str, data: Optional[Dict[str, Any]]) -> SubscriptionRecord:
    data = data or {}
    plan = str(data.get("plan") or "").strip().lower()
    status = str(data.get("status") or "").strip().lower()
    fields: Dict[str, Any] = {
        "uid": str(data.get("uid") or uid),
        "plan": plan if plan in ("free", "premium") else None,
        "status": status if status in ("none", "active", "canceled") else None,
    }
    for name in _RECORD_DATETIME_FIELDS:
        fields[name] = to_datetime(data.get(name))
    return SubscriptionRecord(**fields)


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


class EntitlementRepository:
    def get_entitlement(self, uid: str) -> Optional[UserEntitlement]:
        raise NotImplementedError

    def get_subscription(self, uid: str) -> Optional[SubscriptionRecord]:
        raise NotImplementedError

    def apply(self, uid: str, planner: EntitlementPlanner) -> AppliedTransition:
        """Plan against a fresh snapshot and persist the result.

        Raises NotFoundError when ``users/{uid}`` does not exist.
        """
        raise NotImplementedError

    def record_event(self, event_id: str, *, kind: str, uid: str) -> bool:
        """Remember a relay event id. Returns False if it was already recorded."""
        raise NotImplementedError

    def release_event(self, event_id: str) -> None:
        """Forget a relay event id so a redelivery is processed again."""
        raise NotImplementedError

    def iter_user_ids(self) -> Iterator[str]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# Firestore adapter
# ---------------------------------------------------------------------------


class FirestoreEntitlementRepository(EntitlementRepository):
    def __init__(self, db: firestore.Client) -> None:
        self._db = db

    def _user_ref(self, uid: str):
        return self._db.collection(config.USERS_COLLECTION).document(uid)

    def _record_ref(self, uid: str):
        return self._db.collection(config.SUBSCRIPTIONS_COLLECTION).document(uid)

    def get_entitlement(self, uid: str) -> Optional[UserEntitlement]:
        snap = self._user_ref(uid).get()
        if not snap.exists:
            return None
        return entitlement_from_doc(uid, snap.to_dict())

    def get_subscription(self, uid: str) -> Optional[SubscriptionRecord]:
        snap = self._record_ref(uid).get()
        if not snap.exists:
            return None
        return record_from_doc(uid, snap.to_dict())

    def apply(self, uid: str, planner: EntitlementPlanner) -> AppliedTransition:
        user_ref = self._user_ref(uid)
        record_ref = self._record_ref(uid)

        @firestore.transactional
        def apply_in_transaction(transaction) -> AppliedTransition:
            user_snap = user_ref.get(transaction=transaction)
            if not user_snap.exists:
                raise user_not_found(uid)
            record_snap = record_ref.get(transaction=transaction)

            before = entitlement_from_doc(uid, user_snap.to_dict())
            record = record_from_doc(uid, record_snap.to_dict()) if record_snap.exists else None
            transition = planner(before, record)
            result = AppliedTransition(uid=uid, transition=transition, before=before, after=before)
            if not transition.applies:
                return result

            if transition.user_updates:
                transaction.update(
                    user_ref,
                    {**transition.user_updates, "updatedAt": firestore.SERVER_TIMESTAMP},
                )
                result.user_written = True

            if transition.record_updates:
                if record is not None:
                    transaction.update(
                        record_ref,
                        {**transition.record_updates, "updatedAt": firestore.SERVER_TIMESTAMP},
                    )
                    result.record_written = True
                elif transition.create_record:
                    transaction.set(
                        record_ref,
                        {
                            "uid": uid,
                            **transition.record_updates,
                            "createdAt": firestore.SERVER_TIMESTAMP,
                            "updatedAt": firestore.SERVER_TIMESTAMP,
                        },
                    )
                    result.record_written = True
                    result.record_created = True

            result.after = project_entitlement(before, transition.user_updates)
            return result

        return apply_in_transaction(self._db.transaction())

    def record_event(self, event_id: str, *, kind: str, uid: str) -> bool:
        ref = self._db.collection(config.BILLING_EVENTS_COLLECTION).document(event_id)
        try:
            ref.create(
                {
                    "eventId": event_id,
                    "type": kind,
                    "uid": uid,
                    "receivedAt": firestore.SERVER_TIMESTAMP,
                }
            )
        except AlreadyExists:
            logger.info("Billing event %s already processed", event_id)
            return False
        return True

    def release_event(self, event_id: str) -> None:
        self._db.collection(config.BILLING_EVENTS_COLLECTION).document(event_id).delete()

    def iter_user_ids(self) -> Iterator[str]:
        for ref in self._db.collection(config.USERS_COLLECTION).list_documents():
            yield ref.id
