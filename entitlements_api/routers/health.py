"""Health check router.

Endpoints:
    GET /api/health - Liveness, no auth required
    GET /api/health/firebase - Firestore connectivity
"""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request

from .. import config
from ..dependencies import get_firestore
from ..middleware.rate_limit import rate_limit_health

router = APIRouter()
logger = logging.getLogger("api.health")


@router.get("/health")
@rate_limit_health
async def health_check(request: Request) -> dict:
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": config.API_VERSION,
        "webhookConfigured": bool(config.REVENUECAT_WEBHOOK_SECRET),
    }


@router.get("/health/firebase")
@rate_limit_health
async def firebase_health(
    request: Request,
    db=Depends(get_firestore),
) -> dict:
    """Performs a simple read to verify connectivity."""
    try:
        # a missing document still proves the connection works
        db.collection(config.USERS_COLLECTION).document("_health").get()
        return {
            "status": "healthy",
            "timestamp": datetime.utcnow().isoformat()
        }
    except Exception as e:
        logger.error("Firestore health check failed: %s", e)
        return {
            "status": "unhealthy",
            "error": str(e) if config.DEBUG_MODE else "Firestore connection failed",
            "timestamp": datetime.utcnow().isoformat()
        }
