from unittest.mock import MagicMock

from scripts import reconcile_subscriptions, set_admin_claim


def test_set_admin_keeps_plan_claims(monkeypatch):
    written = {}
    monkeypatch.setattr(
        set_admin_claim.auth,
        "get_user",
        lambda uid, app=None: MagicMock(custom_claims={"plan": "premium", "subscriptionStatus": "active"}),
    )
    monkeypatch.setattr(
        set_admin_claim.auth,
        "set_custom_user_claims",
        lambda uid, claims, app=None: written.update({uid: claims}),
    )

    granted = set_admin_claim.set_admin("u1", True)
    assert granted == {"plan": "premium", "subscriptionStatus": "active", "admin": True}
    assert written["u1"] == granted


def test_revoke_admin_removes_only_admin(monkeypatch):
    monkeypatch.setattr(
        set_admin_claim.auth,
        "get_user",
        lambda uid, app=None: MagicMock(custom_claims={"plan": "free", "admin": True}),
    )
    monkeypatch.setattr(set_admin_claim.auth, "set_custom_user_claims", lambda uid, claims, app=None: None)

    assert set_admin_claim.set_admin("u1", False) == {"plan": "free"}


def test_reconcile_dry_run_reports_without_writing(repo, capsys):
    repo.add_user("synced")
    repo.add_user("diverged", plan="free", subscriptionStatus="canceled")
    repo.subscriptions["diverged"] = {"uid": "diverged", "plan": "premium", "status": "active"}

    stats = reconcile_subscriptions.dry_run(repo)

    assert stats == {"checked": 2, "diverged": 1}
    assert repo.apply_calls == 0
    assert repo.subscriptions["diverged"]["plan"] == "premium"
    assert "diverged" in capsys.readouterr().out
