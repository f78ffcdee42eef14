"""Entitlement Sync API.

FastAPI backend that keeps a user's premium entitlement consistent across:
- Apple / Google Play receipt validation (client submitted)
- RevenueCat webhook deliveries
- Admin overrides

Security: Firebase Auth tokens required for every endpoint except the
webhook (shared secret) and /api/health.
"""
