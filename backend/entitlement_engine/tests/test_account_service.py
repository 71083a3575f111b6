"""
Tests for AccountService.

Tests cover:
- Account creation with the opening allotment
- Billing updates: dedup, tier changes, expiry, CANCELED/ACTIVE
- Admin tier overrides and manual credit adjustments
- Cascade delete
"""

from datetime import timedelta

import pytest

from entitlement_engine.entitlements.errors import AccountNotFoundError
from entitlement_engine.entitlements.lifecycle import SubscriptionLifecycle
from entitlement_engine.entitlements.models import SubscriptionStatus
from entitlement_engine.entitlements.usage import period_key
from entitlement_engine.models.billing_event import BillingUpdateEvent
from entitlement_engine.models.credit import CreditAccount, CreditReason, CreditTransaction
from entitlement_engine.services.account_service import (
    AccountAlreadyExistsError,
    InvalidAccountUpdateError,
    payload_hash,
)
from entitlement_engine.tests.conftest import NOW

LATER = NOW + timedelta(days=5)


class TestCreateAccount:

    def test_creates_credit_account(self, account_service, ledger):
        account = account_service.create_account("ORGANIZATION", "org-1", tier="PREMIUM", now=NOW)

        assert account.owner_type == "ORGANIZATION"
        assert account.role == "PROFESSOR"
        assert account.period_anchor == NOW
        assert ledger.balance(account.id) == 500

    def test_lowercase_values_accepted(self, account_service):
        account = account_service.create_account("user", "u-1", role="student", tier="basic", now=NOW)

        assert account.role == "STUDENT"
        assert account.tier == "BASIC"

    def test_duplicate_owner_rejected(self, account_service):
        account_service.create_account("USER", "u-1", now=NOW)

        with pytest.raises(AccountAlreadyExistsError):
            account_service.create_account("USER", "u-1", now=NOW)

    def test_same_owner_id_different_type_allowed(self, account_service):
        account_service.create_account("USER", "x-1", now=NOW)
        account_service.create_account("ORGANIZATION", "x-1", now=NOW)

        assert account_service.find_by_owner("ORGANIZATION", "x-1") is not None

    @pytest.mark.parametrize("kwargs", [
        {"tier": "GOLD"},
        {"role": "TUTOR"},
        {"owner_type": "TEAM"},
    ])
    def test_invalid_values_rejected(self, account_service, kwargs):
        params = {"owner_type": "USER", "owner_id": "u-1", "now": NOW}
        params.update(kwargs)

        with pytest.raises(InvalidAccountUpdateError):
            account_service.create_account(**params)

    def test_unknown_account(self, account_service):
        with pytest.raises(AccountNotFoundError):
            account_service.get_account("missing")


class TestBillingUpdates:

    def test_upgrade_restarts_period_and_grants_allotment(self, account_service, make_account, ledger, config):
        account = make_account()

        result = account_service.apply_billing_update(
            "evt-1", account.id, tier="PREMIUM",
            subscription_expires_at=NOW + timedelta(days=30), now=LATER,
        )

        assert result.processed is True
        assert result.tier_changed is True
        account = account_service.get_account(account.id)
        assert account.tier == "PREMIUM"
        assert account.period_anchor == LATER
        assert account.subscription_expires_at == NOW + timedelta(days=30)
        credit_account = ledger.get_credit_account(account.id)
        assert credit_account.monthly_allotment == 500
        assert credit_account.balance == 550  # min(50, 100) + 500
        assert credit_account.last_reset_period_key == period_key(LATER, LATER, config.usage)
        assert ledger.verify(account.id) == 550

    def test_downgrade_changes_allotment_at_next_reset(self, account_service, make_account, ledger):
        account = make_account(tier="PREMIUM")

        account_service.apply_billing_update("evt-1", account.id, tier="BASIC", now=LATER)

        account = account_service.get_account(account.id)
        assert account.period_anchor == NOW
        assert ledger.balance(account.id) == 500
        assert ledger.get_credit_account(account.id).monthly_allotment == 200
        # Next period: rollover capped at 100, plus the BASIC allotment
        result = ledger.apply_monthly_reset(account, NOW + timedelta(days=31))
        assert result.new_balance == 300

    def test_duplicate_event_skipped(self, account_service, make_account, ledger, db_session):
        account = make_account()
        account_service.apply_billing_update("evt-1", account.id, tier="BASIC", now=LATER)

        result = account_service.apply_billing_update("evt-1", account.id, tier="PREMIUM", now=LATER)

        assert result.processed is False
        assert result.skipped_reason == "duplicate"
        assert account_service.get_account(account.id).tier == "BASIC"
        assert db_session.query(BillingUpdateEvent).count() == 1

    def test_cancel_and_reactivate(self, account_service, make_account):
        account = make_account(tier="BASIC")
        lifecycle = SubscriptionLifecycle()

        account_service.apply_billing_update("evt-1", account.id, status="CANCELED", now=LATER)
        account = account_service.get_account(account.id)
        assert account.canceled_at == LATER
        assert lifecycle.status(account, LATER) == SubscriptionStatus.CANCELED

        account_service.apply_billing_update("evt-2", account.id, status="ACTIVE", now=LATER)
        account = account_service.get_account(account.id)
        assert account.canceled_at is None
        assert lifecycle.status(account, LATER) == SubscriptionStatus.ACTIVE

    def test_expiry_only_written_when_present(self, account_service, make_account):
        expires = NOW + timedelta(days=30)
        account = make_account(tier="BASIC", subscription_expires_at=expires)

        account_service.apply_billing_update("evt-1", account.id, status="ACTIVE", now=LATER)
        assert account_service.get_account(account.id).subscription_expires_at == expires

        account_service.apply_billing_update(
            "evt-2", account.id, subscription_expires_at=None, now=LATER
        )
        assert account_service.get_account(account.id).subscription_expires_at is None

    def test_same_tier_is_not_a_change(self, account_service, make_account, ledger):
        account = make_account(tier="BASIC")

        result = account_service.apply_billing_update("evt-1", account.id, tier="BASIC", now=LATER)

        assert result.processed is True
        assert result.tier_changed is False
        assert ledger.balance(account.id) == 200

    def test_invalid_tier_rejected(self, account_service, make_account, db_session):
        account = make_account()

        with pytest.raises(InvalidAccountUpdateError):
            account_service.apply_billing_update("evt-1", account.id, tier="GOLD", now=LATER)
        with pytest.raises(InvalidAccountUpdateError):
            account_service.apply_billing_update("evt-2", account.id, status="PAUSED", now=LATER)

        assert db_session.query(BillingUpdateEvent).count() == 0

    def test_unknown_account(self, account_service, db_session):
        with pytest.raises(AccountNotFoundError):
            account_service.apply_billing_update("evt-1", "missing", tier="BASIC", now=LATER)

        assert db_session.query(BillingUpdateEvent).count() == 0

    def test_payload_hash_recorded(self, account_service, make_account, db_session):
        account = make_account()
        payload = {"event_id": "evt-1", "account_id": account.id, "status": "ACTIVE"}

        account_service.apply_billing_update(
            "evt-1", account.id, status="ACTIVE", payload=payload, now=LATER
        )

        event = db_session.query(BillingUpdateEvent).one()
        assert event.payload_hash == payload_hash(payload)
        assert event.status == "ACTIVE"
        assert payload_hash(None) is None


class TestAdminTooling:

    def test_override_tier(self, account_service, make_account, ledger):
        account = make_account()

        updated = account_service.override_tier(account.id, "BASIC", actor="ops", now=LATER)

        assert updated.tier == "BASIC"
        assert ledger.balance(account.id) == 250  # min(50, 100) + 200

    def test_adjust_credits_goes_through_ledger(self, account_service, make_account, ledger):
        account = make_account()

        result = account_service.adjust_credits(account.id, 15, actor="ops", idempotency_key="adj-1")

        assert result.new_balance == 65
        [latest] = account_service.recent_transactions(account.id, limit=1)
        assert latest.reason == CreditReason.MANUAL_ADJUSTMENT
        assert latest.actor == "ops"
        assert ledger.verify(account.id) == 65

    def test_adjust_unknown_account(self, account_service):
        with pytest.raises(AccountNotFoundError):
            account_service.adjust_credits("missing", 5, actor="ops", idempotency_key="adj-1")

    def test_delete_cascades(self, account_service, make_account, evaluator, db_session):
        account = make_account()
        evaluator.commit(account.id, "AI_GRADING", "k1", NOW)
        other = make_account()

        account_service.delete_account(account.id)

        assert db_session.query(CreditAccount).filter_by(account_id=account.id).count() == 0
        assert db_session.query(CreditTransaction).filter_by(account_id=account.id).count() == 0
        assert db_session.query(CreditAccount).filter_by(account_id=other.id).count() == 1
