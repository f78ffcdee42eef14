"""Repair drift between users/{uid} and subscriptions/{uid}.

The user document is authoritative. For every user (or one ``--uid``) the
subscription record is rewritten where it diverges, created for premium users
that have none, and the plan claims are re-mirrored.

Usage:
    # Report what would change
    python scripts/reconcile_subscriptions.py --dry-run

    # Repair everything
    python scripts/reconcile_subscriptions.py

    # Repair a single user
    python scripts/reconcile_subscriptions.py --uid abc123
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Dict

from entitlements_api.dependencies import build_entitlement_service, get_firebase_app, get_firestore
from entitlements_api.errors import NotFoundError
from entitlements_api.services.entitlement_store import FirestoreEntitlementRepository
from entitlements_api.services.state_machine import plan_reconciliation

logger = logging.getLogger("scripts.reconcile")


def dry_run(repository: FirestoreEntitlementRepository) -> Dict[str, int]:
    stats = {"checked": 0, "diverged": 0}
    for uid in repository.iter_user_ids():
        entitlement = repository.get_entitlement(uid)
        if entitlement is None:
            continue
        stats["checked"] += 1
        transition = plan_reconciliation(entitlement, repository.get_subscription(uid))
        if transition.applies:
            stats["diverged"] += 1
            print(f"  {uid}: {sorted(transition.record_updates)}" + (" (create)" if transition.create_record else ""))
    return stats


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Reconcile subscription records with user entitlements')
    parser.add_argument('--uid', help='Reconcile a single user')
    parser.add_argument('--dry-run', action='store_true', help='Report divergence without writing')
    parser.add_argument('-v', '--verbose', action='store_true')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(name)s] %(levelname)s: %(message)s'
    )

    db = get_firestore()

    if args.dry_run:
        stats = dry_run(FirestoreEntitlementRepository(db))
        print(f"Checked {stats['checked']} users, {stats['diverged']} diverged")
        return 0

    service = build_entitlement_service(db, get_firebase_app())

    if args.uid:
        try:
            outcome = service.reconcile_user(args.uid)
        except NotFoundError:
            print(f"User not found: {args.uid}", file=sys.stderr)
            return 1
        print(f"{args.uid}: {'repaired' if outcome.applied else 'already in sync'}")
        return 0

    stats = service.reconcile_all()
    print(f"Checked {stats['checked']} users, repaired {stats['repaired']}, failed {stats['failed']}")
    return 1 if stats["failed"] else 0


if __name__ == '__main__':
    sys.exit(main())
