"""
Entitlement evaluator: the single entry point for gating feature use.

Provides:
- evaluate(account_id, feature, now) -> Decision   (read-only)
- commit(account_id, feature, idempotency_key, now) -> CommitResult

Decision order (first failing gate wins):
    1. ADMIN                              -> allowed, cost 0 (audited)
    2. STUDENT + non-student feature      -> ROLE_RESTRICTED
    3. status not ACTIVE/TRIALING/PAST_DUE -> SUBSCRIPTION_INACTIVE
    4. policy disabled                    -> FEATURE_NOT_IN_TIER
    5. usage capped                       -> USAGE_LIMIT_REACHED
    6. balance < credit_cost              -> INSUFFICIENT_CREDITS
    7. allowed (PAST_DUE carries a warning)

evaluate() is advisory: commit() re-runs the whole decision inside the
account's serialization domain before incrementing usage and debiting
credits in one storage transaction. Storage failures deny with
STORAGE_UNAVAILABLE; they never allow.
"""

import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from entitlement_engine.database.session import is_storage_error
from entitlement_engine.entitlements.audit import (
    DECISION_ADMIN_BYPASS,
    DECISION_COMMITTED,
    DECISION_DENIED,
    EntitlementAuditEvent,
    EntitlementAuditLogger,
    get_audit_logger,
)
from entitlement_engine.entitlements.errors import (
    AccountNotFoundError,
    EntitlementDeniedError,
    InvalidIdempotencyReplayError,
    LedgerInconsistencyError,
    UsageLimitReachedError,
    denial_error,
)
from entitlement_engine.entitlements.ledger import CreditLedger
from entitlement_engine.entitlements.lifecycle import SubscriptionLifecycle
from entitlement_engine.entitlements.loader import EntitlementConfig, get_entitlement_config
from entitlement_engine.entitlements.models import (
    CommitResult,
    Decision,
    DenialReason,
    FeatureLike,
    Role,
    SubscriptionStatus,
    feature_key,
)
from entitlement_engine.entitlements.policy import (
    FeaturePolicy,
    PolicyRegistry,
    get_policy_registry,
)
from entitlement_engine.entitlements.usage import UsageTracker
from entitlement_engine.models.account import Account
from entitlement_engine.models.base import utcnow
from entitlement_engine.models.entitlement_commit import EntitlementCommit

logger = logging.getLogger(__name__)

PAST_DUE_WARNING = "Subscription is past due. Renew to keep access to this feature."

COMMIT_DEBIT_KEY_PREFIX = "commit:"


class EntitlementEvaluator:
    """
    Facade over PolicyRegistry, SubscriptionLifecycle, UsageTracker and
    CreditLedger.

    One instance per request / job, bound to the caller's session.

    Usage:
        evaluator = EntitlementEvaluator(db_session)
        decision = evaluator.evaluate(account_id, Feature.AI_GRADING)
        if decision.allowed:
            ...  # do the gated work
            result = evaluator.commit(account_id, Feature.AI_GRADING, request_key)
    """

    def __init__(
        self,
        db_session: Session,
        registry: Optional[PolicyRegistry] = None,
        config: Optional[EntitlementConfig] = None,
        lifecycle: Optional[SubscriptionLifecycle] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        alert_manager=None,
    ):
        self.db = db_session
        self.config = config or get_entitlement_config()
        self.registry = registry or get_policy_registry()
        self.lifecycle = lifecycle or SubscriptionLifecycle.from_config(self.config.lifecycle)
        self.usage = UsageTracker(db_session, self.registry, self.config.usage)
        self.ledger = CreditLedger(
            db_session,
            credit_config=self.config.credits,
            usage_config=self.config.usage,
            alert_manager=alert_manager,
        )
        self._audit = audit_logger or get_audit_logger()

    def _get_account(self, account_id: str) -> Account:
        account = self.db.query(Account).populate_existing().filter(
            Account.id == account_id
        ).first()
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def evaluate(
        self,
        account_id: str,
        feature: FeatureLike,
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide whether the account may use the feature right now.

        Read-only: never writes usage, credits or resets. A pending monthly
        reset is reflected through the projected balance.

        Raises:
            AccountNotFoundError: unknown account
        """
        key = feature_key(feature)
        now = now or utcnow()

        try:
            account = self._get_account(account_id)
            decision, _ = self._decide(account, key, now)
        except SQLAlchemyError as exc:
            if not is_storage_error(exc):
                raise
            self.db.rollback()
            logger.warning("Storage unavailable during evaluate", extra={
                "account_id": account_id,
                "feature": key,
                "error": str(exc),
            })
            decision = Decision.deny(key, DenialReason.STORAGE_UNAVAILABLE)
            self._audit_decision(account_id, decision, operation="evaluate")
            return decision

        self._audit_decision(account_id, decision, operation="evaluate", account=account)
        return decision

    def _decide(
        self,
        account: Account,
        key: str,
        now: datetime,
    ) -> Tuple[Decision, Optional[FeaturePolicy]]:
        status = self.lifecycle.status(account, now)
        tier = account.tier

        if account.role == Role.ADMIN.value:
            return Decision(
                allowed=True,
                feature=key,
                credit_cost=0,
                subscription_status=status,
                tier=tier,
                admin_bypass=True,
            ), None

        if account.role == Role.STUDENT.value and key not in self.config.student_features:
            return Decision.deny(
                key,
                DenialReason.ROLE_RESTRICTED,
                subscription_status=status,
                tier=tier,
            ), None

        if not status.may_transact():
            return Decision.deny(
                key,
                DenialReason.SUBSCRIPTION_INACTIVE,
                subscription_status=status,
                tier=tier,
            ), None

        policy = self.registry.lookup(tier, key)
        if not policy.enabled:
            return Decision.deny(
                key,
                DenialReason.FEATURE_NOT_IN_TIER,
                subscription_status=status,
                tier=tier,
                upgrade_hint=policy.upgrade_hint,
            ), policy

        usage = self.usage.peek(account, key, now, usage_limit=policy.usage_limit)
        if usage.capped:
            return Decision.deny(
                key,
                DenialReason.USAGE_LIMIT_REACHED,
                subscription_status=status,
                tier=tier,
                usage_remaining=0,
                upgrade_hint=policy.upgrade_hint,
            ), policy

        balance = None
        if policy.credit_cost > 0:
            balance = self.ledger.projected_balance(account.id, usage.period_key)
            if balance < policy.credit_cost:
                return Decision.deny(
                    key,
                    DenialReason.INSUFFICIENT_CREDITS,
                    subscription_status=status,
                    tier=tier,
                    credit_cost=policy.credit_cost,
                    usage_remaining=usage.remaining,
                    balance=balance,
                    upgrade_hint=policy.upgrade_hint,
                ), policy

        warnings = (PAST_DUE_WARNING,) if status == SubscriptionStatus.PAST_DUE else ()
        return Decision(
            allowed=True,
            feature=key,
            credit_cost=policy.credit_cost,
            usage_remaining=usage.remaining,
            subscription_status=status,
            tier=tier,
            upgrade_hint=policy.upgrade_hint,
            balance=balance,
            warnings=warnings,
        ), policy

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def commit(
        self,
        account_id: str,
        feature: FeatureLike,
        idempotency_key: str,
        now: Optional[datetime] = None,
    ) -> CommitResult:
        """
        Record one use of the feature: usage increment + credit debit.

        The only mutating entry point. Both writes land in one storage
        transaction or neither does. Retrying with the same key returns the
        recorded result and never charges twice.

        Raises:
            AccountNotFoundError: unknown account
            LedgerInconsistencyError: account writes are halted
        """
        if not idempotency_key:
            raise ValueError("idempotency_key is required")
        key = feature_key(feature)
        now = now or utcnow()

        try:
            result = self._commit(account_id, key, idempotency_key, now)
            if result.replayed:
                self.db.rollback()
            else:
                self.db.commit()
        except EntitlementDeniedError as exc:
            self.db.rollback()
            result = CommitResult.denied(key, idempotency_key, exc.reason, detail=exc.detail)
        except LedgerInconsistencyError as exc:
            self.db.rollback()
            self.ledger.handle_inconsistency(exc)
            raise
        except IntegrityError:
            self.db.rollback()
            # Lost a race on the commit's unique idempotency key.
            recorded = self._find_commit(account_id, idempotency_key)
            if recorded is None:
                raise
            try:
                result = self._replay(recorded, key)
            except InvalidIdempotencyReplayError as exc:
                result = CommitResult.denied(key, idempotency_key, exc.reason, detail=exc.detail)
        except SQLAlchemyError as exc:
            self.db.rollback()
            if not is_storage_error(exc):
                raise
            logger.warning("Storage unavailable during commit", extra={
                "account_id": account_id,
                "feature": key,
                "idempotency_key": idempotency_key,
                "error": str(exc),
            })
            result = CommitResult.denied(
                key,
                idempotency_key,
                DenialReason.STORAGE_UNAVAILABLE,
                detail="storage unavailable, retry with the same idempotency key",
            )
        except Exception:
            self.db.rollback()
            raise

        self._audit_commit(account_id, result)
        return result

    def _commit(
        self,
        account_id: str,
        key: str,
        idempotency_key: str,
        now: datetime,
    ) -> CommitResult:
        recorded = self._find_commit(account_id, idempotency_key)
        if recorded is not None:
            return self._replay(recorded, key)

        account = self._get_account(account_id)
        self.ledger.lock(account_id)

        recorded = self._find_commit(account_id, idempotency_key)
        if recorded is not None:
            return self._replay(recorded, key)

        if account.role == Role.ADMIN.value:
            row = self._record_commit(
                account_id,
                idempotency_key,
                key,
                credit_cost=0,
                usage_count=None,
                balance_after=None,
                period_key=self.usage.period_key_for(account, now),
                admin_bypass=True,
            )
            return CommitResult(
                ok=True,
                feature=key,
                idempotency_key=idempotency_key,
                credit_cost=0,
                commit_id=row.id,
                admin_bypass=True,
            )

        self.ledger.apply_monthly_reset(account, now, autocommit=False)

        decision, policy = self._decide(account, key, now)
        if not decision.allowed:
            raise denial_error(
                decision.reason,
                key,
                account_id=account_id,
                upgrade_hint=decision.upgrade_hint,
            )

        pkey = self.usage.period_key_for(account, now)
        new_count = self.usage.increment(account, key, now, usage_limit=policy.usage_limit)
        if new_count is None:
            raise UsageLimitReachedError(key, account_id=account_id)

        transaction_id = None
        if policy.credit_cost > 0:
            debit = self.ledger.try_debit(
                account_id,
                policy.credit_cost,
                reason=key,
                idempotency_key=f"{COMMIT_DEBIT_KEY_PREFIX}{idempotency_key}",
                autocommit=False,
            )
            balance_after = debit.new_balance
            transaction_id = debit.transaction_id
        else:
            balance_after = self.ledger.balance(account_id)

        row = self._record_commit(
            account_id,
            idempotency_key,
            key,
            credit_cost=policy.credit_cost,
            usage_count=new_count,
            balance_after=balance_after,
            period_key=pkey,
            transaction_id=transaction_id,
        )

        logger.info("Entitlement committed", extra={
            "account_id": account_id,
            "feature": key,
            "idempotency_key": idempotency_key,
            "credit_cost": policy.credit_cost,
            "usage_count": new_count,
            "balance_after": balance_after,
        })

        return CommitResult(
            ok=True,
            feature=key,
            idempotency_key=idempotency_key,
            credit_cost=policy.credit_cost,
            usage_count=new_count,
            balance_after=balance_after,
            commit_id=row.id,
        )

    def _find_commit(self, account_id: str, idempotency_key: str) -> Optional[EntitlementCommit]:
        return self.db.query(EntitlementCommit).filter(
            EntitlementCommit.account_id == account_id,
            EntitlementCommit.idempotency_key == idempotency_key,
        ).first()

    def _record_commit(
        self,
        account_id: str,
        idempotency_key: str,
        key: str,
        credit_cost: int,
        usage_count: Optional[int],
        balance_after: Optional[int],
        period_key: Optional[str],
        transaction_id: Optional[str] = None,
        admin_bypass: bool = False,
    ) -> EntitlementCommit:
        row = EntitlementCommit(
            account_id=account_id,
            idempotency_key=idempotency_key,
            feature=key,
            credit_cost=credit_cost,
            usage_count=usage_count,
            balance_after=balance_after,
            period_key=period_key,
            transaction_id=transaction_id,
            admin_bypass=admin_bypass,
            created_at=utcnow(),
        )
        self.db.add(row)
        self.db.flush()
        return row

    def _replay(self, recorded: EntitlementCommit, key: str) -> CommitResult:
        if recorded.feature != key:
            raise InvalidIdempotencyReplayError(
                key,
                detail=f"key '{recorded.idempotency_key}' was committed for {recorded.feature}",
                account_id=recorded.account_id,
            )
        logger.info("Idempotent commit replay", extra={
            "account_id": recorded.account_id,
            "feature": key,
            "idempotency_key": recorded.idempotency_key,
        })
        return CommitResult(
            ok=True,
            feature=recorded.feature,
            idempotency_key=recorded.idempotency_key,
            credit_cost=recorded.credit_cost,
            usage_count=recorded.usage_count,
            balance_after=recorded.balance_after,
            commit_id=recorded.id,
            replayed=True,
            admin_bypass=recorded.admin_bypass,
        )

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def _audit_decision(
        self,
        account_id: str,
        decision: Decision,
        operation: str,
        account: Optional[Account] = None,
    ) -> None:
        if decision.allowed and not decision.admin_bypass:
            return
        self._audit.log(EntitlementAuditEvent(
            account_id=account_id,
            feature=decision.feature,
            decision=DECISION_ADMIN_BYPASS if decision.admin_bypass else DECISION_DENIED,
            reason=decision.reason.value if decision.reason else None,
            subscription_status=(
                decision.subscription_status.value if decision.subscription_status else None
            ),
            tier=decision.tier,
            role=account.role if account is not None else None,
            operation=operation,
            credit_cost=decision.credit_cost,
            policy_version=self.registry.version,
        ))

    def _audit_commit(self, account_id: str, result: CommitResult) -> None:
        if result.admin_bypass:
            decision = DECISION_ADMIN_BYPASS
        elif result.ok:
            decision = DECISION_COMMITTED
        else:
            decision = DECISION_DENIED
        self._audit.log(EntitlementAuditEvent(
            account_id=account_id,
            feature=result.feature,
            decision=decision,
            reason=result.reason.value if result.reason else None,
            operation="commit",
            idempotency_key=result.idempotency_key,
            credit_cost=result.credit_cost,
            policy_version=self.registry.version,
            extra_metadata={"replayed": result.replayed},
        ))
