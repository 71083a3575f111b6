"""
API tests for the entitlement engine routes.

Runs the FastAPI app against the test database by overriding the
get_db_session dependency. Accounts are anchored at the wall clock so the
routes (which use the current time) see the opening period.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from entitlement_engine.database.session import get_db_session
from entitlement_engine.main import app
from entitlement_engine.models.base import utcnow
from entitlement_engine.models.credit import CreditAccount, CreditTransaction
from entitlement_engine.models.usage import UsageRecord

ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "test-webhook-secret"


@pytest.fixture
def client(db_session):
    def _override():
        yield db_session

    app.dependency_overrides[get_db_session] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def account(account_service):
    return account_service.create_account("USER", "prof-1", now=utcnow())


def _headers(account_id, **extra):
    headers = {"X-Account-Id": account_id}
    headers.update(extra)
    return headers


def _sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


# =============================================================================
# Evaluate
# =============================================================================

class TestEvaluateRoutes:

    def test_missing_account_context(self, client):
        response = client.get("/api/entitlements/AI_GRADING")
        assert response.status_code == 403

    def test_unknown_account(self, client, db_session):
        response = client.get("/api/entitlements/AI_GRADING", headers=_headers("missing"))
        assert response.status_code == 404

    def test_allowed_decision(self, client, account):
        response = client.get("/api/entitlements/AI_GRADING", headers=_headers(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["credit_cost"] == 1
        assert body["usage_remaining"] == 10
        assert body["subscription_status"] == "TRIALING"
        assert body["balance"] == 50

    def test_denial_returned_as_data(self, client, account):
        response = client.get("/api/entitlements/BULK_OPERATIONS", headers=_headers(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is False
        assert body["reason"] == "FEATURE_NOT_IN_TIER"
        assert body["upgrade_hint"] == "PREMIUM"

    def test_unknown_feature_denied(self, client, account):
        response = client.get("/api/entitlements/TIME_TRAVEL", headers=_headers(account.id))

        assert response.status_code == 200
        assert response.json()["allowed"] is False

    def test_list_all_features(self, client, account, config):
        response = client.get("/api/entitlements", headers=_headers(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["policy_version"] == config.version
        decisions = {d["feature"]: d for d in body["decisions"]}
        assert decisions["AI_GRADING"]["allowed"] is True
        assert decisions["ADVANCED_ANALYTICS"]["allowed"] is False

    def test_decisions_carry_feature_descriptions(self, client, account, config):
        listing = client.get("/api/entitlements", headers=_headers(account.id)).json()
        single = client.get("/api/entitlements/AI_GRADING", headers=_headers(account.id)).json()

        decisions = {d["feature"]: d for d in listing["decisions"]}
        expected = config.feature_descriptions["AI_GRADING"]
        assert decisions["AI_GRADING"]["description"] == expected
        assert single["description"] == expected
        assert decisions["CREDIT_SYSTEM"]["description"] is None

    def test_repeated_listings_raise_no_denial_alert(self, client, account):
        manager = MagicMock()

        with patch("entitlement_engine.monitoring.alerts.get_alert_manager", return_value=manager):
            for _ in range(15):
                response = client.get("/api/entitlements", headers=_headers(account.id))
                assert response.status_code == 200

        manager.send_alert.assert_not_called()

    def test_evaluate_never_writes(self, client, account, db_session):
        for _ in range(3):
            client.get("/api/entitlements/AI_GRADING", headers=_headers(account.id))

        assert db_session.query(UsageRecord).count() == 0
        assert db_session.query(CreditTransaction).filter_by(account_id=account.id).count() == 1
        credit_account = db_session.query(CreditAccount).filter_by(account_id=account.id).one()
        assert credit_account.balance == 50


# =============================================================================
# Commit
# =============================================================================

class TestCommitRoutes:

    def test_idempotency_key_required(self, client, account):
        response = client.post("/api/entitlements/AI_GRADING/commit", headers=_headers(account.id))
        assert response.status_code == 400

    def test_commit_and_replay(self, client, account):
        headers = _headers(account.id, **{"Idempotency-Key": "grade-1"})

        first = client.post("/api/entitlements/AI_GRADING/commit", headers=headers)
        second = client.post("/api/entitlements/AI_GRADING/commit", headers=headers)

        assert first.status_code == 200
        assert first.json()["ok"] is True
        assert first.json()["balance_after"] == 49
        assert first.json()["usage_count"] == 1
        assert first.json()["replayed"] is False
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["balance_after"] == 49

    def test_key_reuse_for_other_feature_conflicts(self, client, account):
        headers = _headers(account.id, **{"Idempotency-Key": "k-1"})
        client.post("/api/entitlements/AI_GRADING/commit", headers=headers)

        response = client.post("/api/entitlements/DISCUSSION_CREATION/commit", headers=headers)

        assert response.status_code == 409
        assert response.json()["detail"]["machine_readable"]["code"] == "INVALID_IDEMPOTENCY_REPLAY"

    def test_feature_not_in_tier(self, client, account):
        response = client.post(
            "/api/entitlements/BULK_OPERATIONS/commit",
            headers=_headers(account.id, **{"Idempotency-Key": "b-1"}),
        )

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["machine_readable"]["code"] == "FEATURE_NOT_IN_TIER"
        assert detail["machine_readable"]["retryable"] is False

    def test_role_restricted(self, client, account_service):
        student = account_service.create_account("USER", "student-1", role="STUDENT", now=utcnow())

        response = client.post(
            "/api/entitlements/COURSE_CREATION/commit",
            headers=_headers(student.id, **{"Idempotency-Key": "c-1"}),
        )

        assert response.status_code == 403
        assert response.json()["detail"]["machine_readable"]["code"] == "ROLE_RESTRICTED"

    def test_usage_limit(self, client, account):
        for i in range(2):
            response = client.post(
                "/api/entitlements/COURSE_CREATION/commit",
                headers=_headers(account.id, **{"Idempotency-Key": f"course-{i}"}),
            )
            assert response.status_code == 200

        response = client.post(
            "/api/entitlements/COURSE_CREATION/commit",
            headers=_headers(account.id, **{"Idempotency-Key": "course-2"}),
        )

        assert response.status_code == 429
        assert response.json()["detail"]["machine_readable"]["code"] == "USAGE_LIMIT_REACHED"

    def test_halted_account_locked(self, client, account, db_session):
        db_session.query(CreditAccount).filter_by(account_id=account.id).update(
            {"writes_halted": True, "halted_reason": "manual"}
        )
        db_session.commit()

        response = client.post(
            "/api/entitlements/AI_GRADING/commit",
            headers=_headers(account.id, **{"Idempotency-Key": "g-1"}),
        )

        assert response.status_code == 423
        assert response.json()["detail"]["error"] == "LEDGER_INCONSISTENT"


# =============================================================================
# Credits and admin tooling
# =============================================================================

class TestCreditRoutes:

    def test_get_credits(self, client, account):
        client.post(
            "/api/entitlements/AI_GRADING/commit",
            headers=_headers(account.id, **{"Idempotency-Key": "g-1"}),
        )

        response = client.get("/api/credits", headers=_headers(account.id))

        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 49
        assert body["projected_balance"] == 49
        assert body["monthly_allotment"] == 50
        assert body["writes_halted"] is False
        assert [t["reason"] for t in body["transactions"]] == ["AI_GRADING", "MONTHLY_RESET"]

    def test_get_credits_reports_period_usage(self, client, account):
        client.post(
            "/api/entitlements/AI_GRADING/commit",
            headers=_headers(account.id, **{"Idempotency-Key": "u-1"}),
        )

        body = client.get("/api/credits", headers=_headers(account.id)).json()

        usage = {u["feature"]: u for u in body["usage"]}
        assert set(usage) == {
            "AI_GRADING",
            "ASSIGNMENT_CREATION",
            "COURSE_CREATION",
            "CUSTOM_RUBRICS",
            "DISCUSSION_CREATION",
        }
        assert usage["AI_GRADING"]["count"] == 1
        assert usage["AI_GRADING"]["usage_limit"] == 10
        assert usage["AI_GRADING"]["remaining"] == 9
        assert usage["COURSE_CREATION"]["remaining"] == 2
        assert usage["AI_GRADING"]["period_key"] == body["period_key"]
        assert body["period_key"] == body["last_reset_period_key"]
        assert body["subscription_status"] == "TRIALING"
        assert body["grace_period_ends_at"] is None

    def test_get_credits_paid_account(self, client, account_service):
        expires_at = datetime(2099, 1, 1, tzinfo=timezone.utc)
        paid = account_service.create_account(
            "USER", "prof-paid", tier="PREMIUM", subscription_expires_at=expires_at, now=utcnow()
        )

        body = client.get("/api/credits", headers=_headers(paid.id)).json()

        assert body["subscription_status"] == "ACTIVE"
        grace_ends = datetime.fromisoformat(body["grace_period_ends_at"].replace("Z", "+00:00"))
        assert grace_ends == datetime(2099, 1, 4, tzinfo=timezone.utc)
        assert len(body["usage"]) == 12
        assert all(u["usage_limit"] is None and u["remaining"] is None for u in body["usage"])

    def test_admin_adjust(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/credits",
            json={"delta": 25, "idempotency_key": "adj-1"},
            headers={"X-Admin-Token": ADMIN_TOKEN, "X-Actor-Id": "ops@example.com"},
        )

        assert response.status_code == 200
        assert response.json()["new_balance"] == 75
        credits = client.get("/api/credits", headers=_headers(account.id)).json()
        assert credits["transactions"][0]["actor"] == "ops@example.com"

    def test_admin_deduction_respects_floor(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/credits",
            json={"delta": -500, "idempotency_key": "adj-1"},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

        assert response.status_code == 402
        assert response.json()["detail"]["machine_readable"]["code"] == "INSUFFICIENT_CREDITS"

    def test_admin_zero_delta_rejected(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/credits",
            json={"delta": 0, "idempotency_key": "adj-1"},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

        assert response.status_code == 400

    def test_admin_wrong_token(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/credits",
            json={"delta": 5, "idempotency_key": "adj-1"},
            headers={"X-Admin-Token": "nope"},
        )

        assert response.status_code == 403

    def test_admin_not_configured(self, client, account, monkeypatch):
        monkeypatch.delenv("ENTITLEMENT_ADMIN_TOKEN", raising=False)

        response = client.post(
            f"/api/admin/accounts/{account.id}/credits",
            json={"delta": 5, "idempotency_key": "adj-1"},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

        assert response.status_code == 503

    def test_admin_tier_override(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/tier",
            json={"tier": "PREMIUM"},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

        assert response.status_code == 200
        assert response.json()["tier"] == "PREMIUM"
        decision = client.get("/api/entitlements/BULK_OPERATIONS", headers=_headers(account.id)).json()
        assert decision["allowed"] is True

    def test_admin_tier_override_invalid(self, client, account, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_ADMIN_TOKEN", ADMIN_TOKEN)

        response = client.post(
            f"/api/admin/accounts/{account.id}/tier",
            json={"tier": "GOLD"},
            headers={"X-Admin-Token": ADMIN_TOKEN},
        )

        assert response.status_code == 400


# =============================================================================
# Billing webhook
# =============================================================================

class TestBillingWebhook:

    @pytest.fixture(autouse=True)
    def _secret(self, monkeypatch):
        monkeypatch.setenv("BILLING_WEBHOOK_SECRET", WEBHOOK_SECRET)

    def _post(self, client, payload, signature=None):
        body = json.dumps(payload).encode("utf-8")
        return client.post(
            "/api/webhooks/billing",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Billing-Signature": signature if signature is not None else _sign(body),
            },
        )

    def test_applies_update(self, client, account, account_service):
        response = self._post(client, {
            "event_id": "evt-1",
            "account_id": account.id,
            "tier": "BASIC",
            "subscription_expires_at": "2099-01-01T00:00:00Z",
        })

        assert response.status_code == 200
        assert response.json()["processed"] is True
        refreshed = account_service.get_account(account.id)
        assert refreshed.tier == "BASIC"
        assert refreshed.subscription_expires_at.year == 2099

    def test_duplicate_event(self, client, account):
        payload = {"event_id": "evt-1", "account_id": account.id, "status": "CANCELED"}

        self._post(client, payload)
        response = self._post(client, payload)

        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_canceled_account_denied(self, client, account):
        self._post(client, {"event_id": "evt-1", "account_id": account.id, "status": "CANCELED"})

        response = client.get("/api/entitlements/AI_GRADING", headers=_headers(account.id))

        assert response.json()["allowed"] is False
        assert response.json()["reason"] == "SUBSCRIPTION_INACTIVE"

    def test_bad_signature(self, client, account):
        response = self._post(
            client,
            {"event_id": "evt-1", "account_id": account.id, "tier": "PREMIUM"},
            signature=_sign(b"something else"),
        )
        assert response.status_code == 401

    def test_missing_signature(self, client, account):
        response = client.post(
            "/api/webhooks/billing",
            json={"event_id": "evt-1", "account_id": account.id},
        )
        assert response.status_code == 401

    def test_secret_not_configured(self, client, account, monkeypatch):
        monkeypatch.delenv("BILLING_WEBHOOK_SECRET")

        response = self._post(client, {"event_id": "evt-1", "account_id": account.id})

        assert response.status_code == 503

    def test_unknown_account(self, client):
        response = self._post(client, {"event_id": "evt-1", "account_id": "missing", "tier": "BASIC"})
        assert response.status_code == 404

    def test_invalid_tier(self, client, account):
        response = self._post(client, {"event_id": "evt-1", "account_id": account.id, "tier": "GOLD"})
        assert response.status_code == 400

    def test_malformed_body(self, client):
        body = b"not json"
        response = client.post(
            "/api/webhooks/billing",
            content=body,
            headers={"X-Billing-Signature": _sign(body)},
        )
        assert response.status_code == 400


# =============================================================================
# Health
# =============================================================================

class TestHealth:

    def test_healthy(self, client, account):
        response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["database"] == "ok"
        assert body["halted_accounts"] == 0

    def test_degraded_when_ledger_halted(self, client, account, db_session):
        db_session.query(CreditAccount).filter_by(account_id=account.id).update(
            {"writes_halted": True}
        )
        db_session.commit()

        body = client.get("/health").json()

        assert body["status"] == "degraded"
        assert body["halted_accounts"] == 1
