"""Grant or revoke the ``admin`` custom claim on a Firebase user.

Admin routes (/api/admin/users/*) check this claim on the caller's ID token.
The user has to sign in again (or force a token refresh) to pick it up.

Usage:
    python scripts/set_admin_claim.py <uid>
    python scripts/set_admin_claim.py <uid> --revoke
    python scripts/set_admin_claim.py <uid> --show
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth

from entitlements_api.dependencies import get_firebase_app


def set_admin(uid: str, admin: bool, app: Optional[firebase_admin.App] = None) -> Dict[str, Any]:
    """Set or clear the admin claim, keeping every other custom claim."""
    user = auth.get_user(uid, app=app)
    claims = dict(user.custom_claims or {})
    if admin:
        claims["admin"] = True
    else:
        claims.pop("admin", None)
    auth.set_custom_user_claims(uid, claims, app=app)
    return claims


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Grant or revoke the admin custom claim')
    parser.add_argument('uid', help='Firebase user ID')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--revoke', action='store_true', help='Remove the admin claim')
    group.add_argument('--show', action='store_true', help='Print current custom claims only')
    args = parser.parse_args(argv)

    app = get_firebase_app()

    try:
        if args.show:
            claims = auth.get_user(args.uid, app=app).custom_claims or {}
        else:
            claims = set_admin(args.uid, not args.revoke, app=app)
    except auth.UserNotFoundError:
        print(f"User not found: {args.uid}", file=sys.stderr)
        return 1

    action = "Current" if args.show else ("Revoked admin, remaining" if args.revoke else "Granted admin, now")
    print(f"{action} claims for {args.uid}: {claims}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
