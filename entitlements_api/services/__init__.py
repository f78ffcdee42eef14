"""Entitlement domain services."""

from .claims import ClaimsPropagator, PropagationResult
from .entitlement_service import EntitlementService, TransitionOutcome, WebhookResponse
from .entitlement_store import AppliedTransition, EntitlementRepository, FirestoreEntitlementRepository
from .error_reporting import ErrorReporter, LoggingErrorReporter
from .receipt_validation import AppleReceiptValidator, GooglePlayValidator, PurchaseValidationResult
from .state_machine import BillingEvent, EventKind, plan_transition

__all__ = [
    'AppleReceiptValidator',
    'AppliedTransition',
    'BillingEvent',
    'ClaimsPropagator',
    'EntitlementRepository',
    'EntitlementService',
    'ErrorReporter',
    'EventKind',
    'FirestoreEntitlementRepository',
    'GooglePlayValidator',
    'LoggingErrorReporter',
    'PropagationResult',
    'PurchaseValidationResult',
    'TransitionOutcome',
    'WebhookResponse',
    'plan_transition',
]
