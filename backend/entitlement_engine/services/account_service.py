"""
Account service: the only writer of account facts.

Orchestrates:
- Account creation (with credit account and opening allotment)
- Billing-provider updates (tier, expiry, CANCELED/ACTIVE), deduplicated
  by the provider's event id
- Admin tier overrides
- Manual credit adjustments through the ledger

The engine never infers tier or expiry; they only change here.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from entitlement_engine.entitlements.errors import AccountNotFoundError
from entitlement_engine.entitlements.ledger import CreditLedger, LedgerResult
from entitlement_engine.entitlements.loader import EntitlementConfig, get_entitlement_config
from entitlement_engine.entitlements.models import OwnerType, Role, Tier
from entitlement_engine.models.account import Account
from entitlement_engine.models.base import ensure_utc, utcnow
from entitlement_engine.models.billing_event import BillingUpdateEvent, BillingUpdateStatus
from entitlement_engine.models.credit import CreditTransaction

logger = logging.getLogger(__name__)

# Marks "field not present in the update" (None means "clear it").
UNCHANGED: Any = object()


@dataclass
class BillingUpdateResult:
    """Result of applying a billing-provider update."""
    processed: bool
    message: str
    account_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    tier_changed: bool = False


class AccountServiceError(Exception):
    """Base exception for account service errors."""
    pass


class AccountAlreadyExistsError(AccountServiceError):
    """The billing subject already owns an account."""
    pass


class InvalidAccountUpdateError(AccountServiceError):
    """An update carries an unknown tier, role or status."""
    pass


def _validate(value: str, enum_cls, label: str) -> str:
    raw = value.value if hasattr(value, "value") else str(value).upper()
    try:
        return enum_cls(raw).value
    except ValueError:
        raise InvalidAccountUpdateError(f"Unknown {label}: {value}")


def payload_hash(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_str.encode()).hexdigest()


class AccountService:
    """Account lifecycle writes. One instance per request / job."""

    def __init__(self, db_session: Session, config: Optional[EntitlementConfig] = None):
        self.db = db_session
        self.config = config or get_entitlement_config()
        self.ledger = CreditLedger(
            db_session,
            credit_config=self.config.credits,
            usage_config=self.config.usage,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_account(self, account_id: str) -> Account:
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    def find_by_owner(self, owner_type: str, owner_id: str) -> Optional[Account]:
        return self.db.query(Account).filter(
            Account.owner_type == _validate(owner_type, OwnerType, "owner_type"),
            Account.owner_id == owner_id,
        ).first()

    def recent_transactions(self, account_id: str, limit: int = 20) -> List[CreditTransaction]:
        return self.ledger.recent_transactions(account_id, limit=limit)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_account(
        self,
        owner_type: str,
        owner_id: str,
        role: str = Role.PROFESSOR.value,
        tier: str = Tier.FREE.value,
        subscription_expires_at: Optional[datetime] = None,
        trial_expires_at: Optional[datetime] = None,
        period_anchor: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        """
        Create an account, its credit account and the opening allotment.

        Raises:
            AccountAlreadyExistsError: the owner already has an account
            InvalidAccountUpdateError: unknown owner_type, role or tier
        """
        now = now or utcnow()
        owner_type = _validate(owner_type, OwnerType, "owner_type")
        role = _validate(role, Role, "role")
        tier = _validate(tier, Tier, "tier")

        if self.find_by_owner(owner_type, owner_id) is not None:
            raise AccountAlreadyExistsError(f"{owner_type} {owner_id} already has an account")

        account = Account(
            owner_type=owner_type,
            owner_id=owner_id,
            role=role,
            tier=tier,
            subscription_expires_at=ensure_utc(subscription_expires_at),
            trial_expires_at=ensure_utc(trial_expires_at),
            period_anchor=ensure_utc(period_anchor) or now,
        )
        try:
            self.db.add(account)
            self.db.flush()
            self.ledger.open_account(account, now, autocommit=False)
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise AccountAlreadyExistsError(f"{owner_type} {owner_id} already has an account")
        except Exception:
            self.db.rollback()
            raise

        logger.info("Account created", extra={
            "account_id": account.id,
            "owner_type": owner_type,
            "owner_id": owner_id,
            "role": role,
            "tier": tier,
        })
        return account

    def apply_billing_update(
        self,
        event_id: str,
        account_id: str,
        tier: Optional[str] = None,
        status: Optional[str] = None,
        subscription_expires_at: Any = UNCHANGED,
        payload: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> BillingUpdateResult:
        """
        Apply a billing-provider update exactly once.

        - status CANCELED sets canceled_at; ACTIVE clears it
        - tier changes update the credit allotment; an upgrade restarts the
          usage/credit period so the new allotment is granted at once
        - subscription_expires_at is written only when present in the update

        Raises:
            AccountNotFoundError: unknown account
            InvalidAccountUpdateError: unknown tier or status
        """
        now = now or utcnow()

        existing = self.db.query(BillingUpdateEvent).filter(
            BillingUpdateEvent.provider_event_id == event_id
        ).first()
        if existing is not None:
            logger.info("Duplicate billing update skipped", extra={
                "provider_event_id": event_id,
                "account_id": account_id,
            })
            return BillingUpdateResult(
                processed=False,
                message="Duplicate billing update - already processed",
                account_id=account_id,
                skipped_reason="duplicate",
            )

        new_tier = _validate(tier, Tier, "tier") if tier is not None else None
        new_status = (
            _validate(status, BillingUpdateStatus, "status") if status is not None else None
        )

        try:
            account = self.get_account(account_id)

            tier_changed = False
            if new_tier is not None:
                tier_changed = self._change_tier(account, new_tier, now)

            if subscription_expires_at is not UNCHANGED:
                account.subscription_expires_at = ensure_utc(subscription_expires_at)

            if new_status == BillingUpdateStatus.CANCELED:
                account.canceled_at = account.canceled_at or now
            elif new_status == BillingUpdateStatus.ACTIVE:
                account.canceled_at = None

            self.db.add(BillingUpdateEvent(
                provider_event_id=event_id,
                account_id=account_id,
                tier=new_tier,
                status=new_status,
                payload_hash=payload_hash(payload),
                outcome="applied",
                processed_at=now,
            ))
            self.db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event id won the insert.
            self.db.rollback()
            return BillingUpdateResult(
                processed=False,
                message="Duplicate billing update - already processed",
                account_id=account_id,
                skipped_reason="duplicate",
            )
        except Exception:
            self.db.rollback()
            raise

        logger.info("Billing update applied", extra={
            "provider_event_id": event_id,
            "account_id": account_id,
            "tier": account.tier,
            "status": new_status,
            "tier_changed": tier_changed,
        })
        return BillingUpdateResult(
            processed=True,
            message="Billing update applied",
            account_id=account_id,
            tier_changed=tier_changed,
        )

    def override_tier(self, account_id: str, tier: str, actor: str, now: Optional[datetime] = None) -> Account:
        """Admin tier override. Same allotment rules as a billing update."""
        now = now or utcnow()
        new_tier = _validate(tier, Tier, "tier")
        try:
            account = self.get_account(account_id)
            changed = self._change_tier(account, new_tier, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info("Tier override applied", extra={
            "account_id": account_id,
            "tier": new_tier,
            "actor": actor,
            "changed": changed,
        })
        return account

    def _change_tier(self, account: Account, new_tier: str, now: datetime) -> bool:
        old_tier = account.tier
        if old_tier == new_tier:
            return False

        order = self.config.tier_order
        upgrade = (
            old_tier in order and new_tier in order
            and order.index(new_tier) > order.index(old_tier)
        )

        account.tier = new_tier
        if upgrade:
            account.period_anchor = now
        self.db.flush()

        self.ledger.set_monthly_allotment(account.id, self.config.credits.allotment_for(new_tier))
        if upgrade:
            self.ledger.apply_monthly_reset(account, now, autocommit=False)

        logger.info("Account tier changed", extra={
            "account_id": account.id,
            "from_tier": old_tier,
            "to_tier": new_tier,
            "period_restarted": upgrade,
        })
        return True

    def adjust_credits(
        self,
        account_id: str,
        delta: int,
        actor: str,
        idempotency_key: str,
    ) -> LedgerResult:
        """
        Manual grant or deduction (MANUAL_ADJUSTMENT).

        Raw balance overwrites are not offered; every change is a ledger entry.
        """
        self.get_account(account_id)
        return self.ledger.adjust(account_id, delta, actor=actor, idempotency_key=idempotency_key)

    def delete_account(self, account_id: str) -> None:
        """Delete the account; usage, credits and commits go with it."""
        account = self.get_account(account_id)
        try:
            self.db.delete(account)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info("Account deleted", extra={"account_id": account_id})

