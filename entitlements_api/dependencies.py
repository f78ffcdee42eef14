"""FastAPI dependencies for authentication, database connections, and shared resources.

All endpoints use these dependencies for:
- Firebase token verification
- Firestore client access
- The EntitlementService graph (built once per process)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Dict, Any

from fastapi import HTTPException, Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

import firebase_admin
from firebase_admin import auth, credentials, firestore

from . import config
from .services.claims import ClaimsPropagator
from .services.entitlement_service import EntitlementService
from .services.entitlement_store import FirestoreEntitlementRepository
from .services.error_reporting import LoggingErrorReporter
from .services.receipt_validation import AppleReceiptValidator, GooglePlayValidator
from .utils.client_ip import get_client_ip
from .utils.security_logger import security_logger
from .utils.time_utils import utcnow

logger = logging.getLogger("api.dependencies")

# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)


# =============================================================================
# FIREBASE INITIALIZATION
# =============================================================================

_firebase_app: Optional[firebase_admin.App] = None
_firestore_client = None
_entitlement_service: Optional[EntitlementService] = None


def get_firebase_app() -> firebase_admin.App:
    """Get or initialize Firebase Admin app."""
    global _firebase_app

    if _firebase_app is not None:
        return _firebase_app

    try:
        _firebase_app = firebase_admin.get_app()
        return _firebase_app
    except ValueError:
        pass

    if Path(config.SERVICE_ACCOUNT_PATH).exists():
        cred = credentials.Certificate(config.SERVICE_ACCOUNT_PATH)
    else:
        # Cloud Run / GCE: fall back to the ambient service account
        logger.warning("Service account not found at %s; using application default credentials", config.SERVICE_ACCOUNT_PATH)
        cred = credentials.ApplicationDefault()

    _firebase_app = firebase_admin.initialize_app(cred)
    logger.info("Firebase Admin initialized")
    return _firebase_app


def get_firestore() -> firestore.Client:
    """Get Firestore client (singleton)."""
    global _firestore_client

    if _firestore_client is None:
        get_firebase_app()
        _firestore_client = firestore.client()
        logger.info("Firestore client initialized")

    return _firestore_client


# =============================================================================
# SERVICE GRAPH
# =============================================================================

def build_entitlement_service(db, app: Optional[firebase_admin.App] = None) -> EntitlementService:
    """Wire the production service graph from config."""
    return EntitlementService(
        FirestoreEntitlementRepository(db),
        ClaimsPropagator(app),
        apple_validator=AppleReceiptValidator(
            shared_secret=config.APPLE_SHARED_SECRET,
            environment=config.DEPLOYMENT_ENV,
            timeout=config.APPLE_API_TIMEOUT_SEC,
        ),
        google_validator=GooglePlayValidator(
            expected_package_name=config.GOOGLE_PLAY_PACKAGE_NAME,
            timeout=config.GOOGLE_API_TIMEOUT_SEC,
        ),
        error_reporter=LoggingErrorReporter(config.LOG_DIR),
        webhook_secret=config.REVENUECAT_WEBHOOK_SECRET,
        ordering=config.WEBHOOK_EVENT_ORDERING,
    )


def get_entitlement_service() -> EntitlementService:
    """Get the EntitlementService (singleton)."""
    global _entitlement_service

    if _entitlement_service is None:
        _entitlement_service = build_entitlement_service(get_firestore(), get_firebase_app())
        logger.info(
            "EntitlementService initialized (environment=%s, ordering=%s)",
            config.DEPLOYMENT_ENV,
            config.WEBHOOK_EVENT_ORDERING,
        )

    return _entitlement_service


# =============================================================================
# AUTHENTICATION
# =============================================================================

async def verify_firebase_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)
) -> Dict[str, Any]:
    """Verify Firebase ID token from Authorization header.

    Security checks:
    - Valid signature (RS256)
    - Not expired
    - Not revoked
    - Token age < MAX_TOKEN_AGE_SECONDS (force refresh)
    - Not from the future (clock skew attack)

    Returns:
        Decoded token claims including 'uid' and any custom claims
        (plan, subscriptionStatus, admin)

    Raises:
        HTTPException 401 on any auth failure
    """
    if credentials is None:
        _log_auth_failure(request, "missing_auth_header")
        raise HTTPException(401, "Missing Authorization header")

    token = credentials.credentials

    try:
        get_firebase_app()

        decoded = auth.verify_id_token(token, check_revoked=True)

        if not config.SKIP_TOKEN_AGE_CHECK:
            now = utcnow().timestamp()
            issued_at = decoded.get('iat', 0)

            if now - issued_at > config.MAX_TOKEN_AGE_SECONDS:
                _log_auth_failure(request, "token_too_old", uid=decoded.get('uid'))
                raise HTTPException(401, "Token too old, please re-authenticate")

            if issued_at > now + config.CLOCK_SKEW_SECONDS:
                _log_auth_failure(request, "future_token", uid=decoded.get('uid'))
                raise HTTPException(401, "Invalid token timestamp")

        return decoded

    except HTTPException:
        raise
    except auth.RevokedIdTokenError:
        _log_auth_failure(request, "revoked_token")
        raise HTTPException(401, "Token has been revoked")
    except auth.ExpiredIdTokenError:
        _log_auth_failure(request, "expired_token")
        raise HTTPException(401, "Token has expired")
    except auth.InvalidIdTokenError as e:
        _log_auth_failure(request, "invalid_token", error=str(e))
        raise HTTPException(401, "Invalid token")
    except Exception as e:
        _log_auth_failure(request, "auth_error", error=str(e))
        raise HTTPException(401, "Authentication failed")


def _log_auth_failure(request: Request, reason: str, uid: Optional[str] = None, **extra):
    """Log authentication failure for security monitoring."""
    if extra:
        logger.debug("Auth failure detail reason=%s extra=%s", reason, extra)
    security_logger.auth_failure(
        ip=get_client_ip(request),
        reason=reason,
        path=request.url.path,
        user_agent=request.headers.get("user-agent", "unknown"),
        uid=uid,
    )
