"""Mirror the durable entitlement into Firebase Auth custom claims.

Claims are a cache for low-latency checks elsewhere in the app. Updating them
is best-effort: a failure is logged and returned, never raised, and the
durable write it follows is not rolled back.

The merge reads the current claims and then writes the whole map. Firebase
Auth has no compare-and-set for custom claims, so a concurrent writer (such
as scripts/set_admin_claim.py) that lands between the two calls is
overwritten. Last write wins; rerun the admin script if that happens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import firebase_admin
from firebase_admin import auth

from ..errors import PropagationError

logger = logging.getLogger("api.claims")


@dataclass
class PropagationResult:
    attempted: bool
    ok: bool
    claims: Optional[Dict[str, str]] = None
    error: Optional[PropagationError] = None

    @classmethod
    def not_attempted(cls) -> "PropagationResult":
        return cls(attempted=False, ok=True)


class ClaimsPropagator:
    def __init__(self, app: Optional[firebase_admin.App] = None) -> None:
        self._app = app

    def propagate(self, uid: str, claims: Dict[str, str]) -> PropagationResult:
        """Merge ``claims`` into the user's existing custom claims."""
        try:
            user = auth.get_user(uid, app=self._app)
            merged = dict(user.custom_claims or {})
            merged.update(claims)
            auth.set_custom_user_claims(uid, merged, app=self._app)
        except Exception as exc:
            error = PropagationError(
                "Failed to update custom claims",
                details={"uid": uid, "claims": claims, "reason": str(exc)},
            )
            error.__cause__ = exc
            logger.error("Failed to update custom claims uid=%s claims=%s: %s", uid, claims, exc)
            return PropagationResult(attempted=True, ok=False, claims=claims, error=error)

        logger.info("Custom claims updated uid=%s plan=%s status=%s", uid, claims.get("plan"), claims.get("subscriptionStatus"))
        return PropagationResult(attempted=True, ok=True, claims=claims)
