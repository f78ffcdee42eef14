"""Shared fixtures: in-memory store, fake claims, stub validators, API client."""

import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="entitlements-test-logs-"))
os.environ["RATE_LIMIT_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from entitlements_api.dependencies import get_entitlement_service, verify_firebase_token
from entitlements_api.errors import PropagationError
from entitlements_api.main import app
from entitlements_api.models import SubscriptionRecord, UserEntitlement
from entitlements_api.services.claims import PropagationResult
from entitlements_api.services.entitlement_service import EntitlementService
from entitlements_api.services.entitlement_store import (
    AppliedTransition,
    EntitlementRepository,
    entitlement_from_doc,
    record_from_doc,
    user_not_found,
)
from entitlements_api.services.error_reporting import ErrorReporter
from entitlements_api.services.receipt_validation import PurchaseValidationResult, ReceiptValidator
from entitlements_api.services.state_machine import project_entitlement

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "relay-secret"


class InMemoryEntitlementRepository(EntitlementRepository):
    """Dict-backed repository with the same write rules as the Firestore adapter."""

    def __init__(self, clock=lambda: NOW):
        self.users: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.events: Dict[str, Dict[str, Any]] = {}
        self.apply_calls = 0
        self.fail_writes: Optional[Exception] = None
        self._clock = clock

    def add_user(self, uid: str, **fields) -> None:
        self.users[uid] = dict(fields)

    def get_entitlement(self, uid: str) -> Optional[UserEntitlement]:
        if uid not in self.users:
            return None
        return entitlement_from_doc(uid, self.users[uid])

    def get_subscription(self, uid: str) -> Optional[SubscriptionRecord]:
        if uid not in self.subscriptions:
            return None
        return record_from_doc(uid, self.subscriptions[uid])

    def apply(self, uid, planner) -> AppliedTransition:
        self.apply_calls += 1
        if uid not in self.users:
            raise user_not_found(uid)
        before = entitlement_from_doc(uid, self.users[uid])
        record = self.get_subscription(uid)
        transition = planner(before, record)
        result = AppliedTransition(uid=uid, transition=transition, before=before, after=before)
        if not transition.applies:
            return result
        if self.fail_writes is not None:
            raise self.fail_writes

        if transition.user_updates:
            self.users[uid].update(transition.user_updates, updatedAt=self._clock())
            result.user_written = True
        if transition.record_updates:
            if record is not None:
                self.subscriptions[uid].update(transition.record_updates, updatedAt=self._clock())
                result.record_written = True
            elif transition.create_record:
                self.subscriptions[uid] = {
                    "uid": uid,
                    **transition.record_updates,
                    "createdAt": self._clock(),
                    "updatedAt": self._clock(),
                }
                result.record_written = True
                result.record_created = True
        result.after = project_entitlement(before, transition.user_updates)
        return result

    def record_event(self, event_id: str, *, kind: str, uid: str) -> bool:
        if event_id in self.events:
            return False
        self.events[event_id] = {"type": kind, "uid": uid}
        return True

    def release_event(self, event_id: str) -> None:
        self.events.pop(event_id, None)

    def iter_user_ids(self) -> Iterator[str]:
        return iter(list(self.users))


class FakeClaims:
    def __init__(self):
        self.calls: List[Tuple[str, Dict[str, str]]] = []
        self.current: Dict[str, Dict[str, Any]] = {}
        self.fail = False

    def propagate(self, uid: str, claims: Dict[str, str]) -> PropagationResult:
        self.calls.append((uid, dict(claims)))
        if self.fail:
            return PropagationResult(
                attempted=True,
                ok=False,
                claims=claims,
                error=PropagationError("Failed to update custom claims", details={"uid": uid}),
            )
        self.current.setdefault(uid, {}).update(claims)
        return PropagationResult(attempted=True, ok=True, claims=claims)


class StubValidator(ReceiptValidator):
    def __init__(self, result: Optional[PurchaseValidationResult] = None):
        self.result = result or PurchaseValidationResult.invalid("NOT_CONFIGURED")
        self.calls: List[Any] = []

    def _validate(self, receipt):
        self.calls.append(receipt)
        return self.result


class RecordingReporter(ErrorReporter):
    def __init__(self):
        self.reports: List[Tuple[BaseException, str, Dict[str, Any]]] = []

    def report(self, exc, *, source, context=None):
        self.reports.append((exc, source, dict(context or {})))


@pytest.fixture
def repo():
    return InMemoryEntitlementRepository()


@pytest.fixture
def claims():
    return FakeClaims()


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def apple():
    return StubValidator()


@pytest.fixture
def google_play():
    return StubValidator()


@pytest.fixture
def make_service(repo, claims, reporter, apple, google_play):
    def _make(**overrides) -> EntitlementService:
        kwargs = dict(
            apple_validator=apple,
            google_validator=google_play,
            error_reporter=reporter,
            webhook_secret=WEBHOOK_SECRET,
            ordering="event_time",
            clock=lambda: NOW,
        )
        kwargs.update(overrides)
        return EntitlementService(repo, claims, **kwargs)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


@pytest.fixture
def caller():
    """Decoded ID token returned by the overridden auth dependency."""
    return {"uid": "user-1"}


@pytest.fixture
def client(service, caller):
    app.dependency_overrides[get_entitlement_service] = lambda: service
    app.dependency_overrides[verify_firebase_token] = lambda: caller
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def anonymous_client(service):
    app.dependency_overrides[get_entitlement_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
