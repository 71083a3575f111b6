"""
Credit ledger: append-only transactions plus a materialized balance.

Provides:
- balance / projected_balance / replay_balance: reads
- try_debit / credit / adjust: idempotent, per-account atomic writes
- apply_monthly_reset: rollover-capped allotment, one MONTHLY_RESET entry
- verify / halt: detect cache drift, halt writes, alert operators

Architecture:
- The transaction log is the source of truth; credit_accounts.balance is a
  cache that always equals the sum of the account's deltas.
- Per-account serialization: every write first bumps CreditAccount.version
  with a conditional UPDATE. On PostgreSQL that holds the row lock until the
  transaction ends; unrelated accounts never contend. No process-wide lock.
- Debits are compare-and-swap updates with a floor of zero
  (WHERE balance >= amount), so concurrent debits can never double-spend.
- Idempotency keys are unique per account. A replayed key returns the
  recorded result; a reused key for a different operation is rejected.
- Drift between cache and log is fatal for the account: writes halt and a
  critical alert is raised. The balance is never silently corrected.

Every write method takes autocommit. Standalone callers leave it True; the
EntitlementEvaluator passes False to compose usage and credit changes into
one storage transaction.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from entitlement_engine.database.session import is_storage_error
from entitlement_engine.entitlements.errors import (
    CreditAccountNotFoundError,
    InsufficientCreditsError,
    InvalidIdempotencyReplayError,
    LedgerInconsistencyError,
    StorageUnavailableError,
)
from entitlement_engine.entitlements.loader import (
    CreditConfig,
    UsageConfig,
    get_entitlement_config,
)
from entitlement_engine.entitlements.usage import period_key
from entitlement_engine.models.base import utcnow
from entitlement_engine.models.credit import CreditAccount, CreditReason, CreditTransaction

logger = logging.getLogger(__name__)

MONTHLY_RESET_KEY_PREFIX = "monthly_reset:"

T = TypeVar("T")


@dataclass(frozen=True)
class LedgerResult:
    """Outcome of an applied (or replayed) ledger write."""
    ok: bool
    account_id: str
    delta: int
    new_balance: int
    reason: str
    idempotency_key: str
    transaction_id: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_transaction(cls, txn: CreditTransaction, replayed: bool) -> "LedgerResult":
        return cls(
            ok=True,
            account_id=txn.account_id,
            delta=txn.delta,
            new_balance=txn.balance_after,
            reason=txn.reason,
            idempotency_key=txn.idempotency_key,
            transaction_id=txn.id,
            replayed=replayed,
        )


def monthly_reset_key(pkey: str) -> str:
    return f"{MONTHLY_RESET_KEY_PREFIX}{pkey}"


def reset_balance(balance: int, allotment: int, rollover_cap: int) -> int:
    """Balance after a period reset: unused credits roll over up to the cap."""
    return min(max(balance, 0), rollover_cap) + allotment


class CreditLedger:
    """
    Credit ledger bound to one session.

    One instance per request / job.
    """

    def __init__(
        self,
        db_session: Session,
        credit_config: Optional[CreditConfig] = None,
        usage_config: Optional[UsageConfig] = None,
        alert_manager=None,
    ):
        self.db = db_session
        if credit_config is None or usage_config is None:
            config = get_entitlement_config()
            credit_config = credit_config or config.credits
            usage_config = usage_config or config.usage
        self._credit_config = credit_config
        self._usage_config = usage_config
        self._alerts = alert_manager

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_credit_account(self, account_id: str) -> CreditAccount:
        credit_account = self.db.query(CreditAccount).filter(
            CreditAccount.account_id == account_id
        ).first()
        if credit_account is None:
            raise CreditAccountNotFoundError(account_id)
        return credit_account

    def balance(self, account_id: str) -> int:
        """Committed materialized balance."""
        value = self.db.query(CreditAccount.balance).filter(
            CreditAccount.account_id == account_id
        ).scalar()
        if value is None:
            raise CreditAccountNotFoundError(account_id)
        return value

    def projected_balance(self, account_id: str, pkey: str) -> int:
        """
        Balance as it will be once the reset for pkey is applied.

        Read-only: lets evaluate() show the post-rollover balance before the
        reset has been written.
        """
        row = self.db.query(
            CreditAccount.balance,
            CreditAccount.monthly_allotment,
            CreditAccount.last_reset_period_key,
        ).filter(CreditAccount.account_id == account_id).first()
        if row is None:
            raise CreditAccountNotFoundError(account_id)
        balance, allotment, last_key = row
        if last_key == pkey:
            return balance
        return reset_balance(balance, allotment, self._credit_config.rollover_cap)

    def replay_balance(self, account_id: str) -> int:
        """Sum of every delta ever recorded for the account."""
        total = self.db.query(
            func.coalesce(func.sum(CreditTransaction.delta), 0)
        ).filter(CreditTransaction.account_id == account_id).scalar()
        return int(total or 0)

    def find_transaction(self, account_id: str, idempotency_key: str) -> Optional[CreditTransaction]:
        return self.db.query(CreditTransaction).filter(
            CreditTransaction.account_id == account_id,
            CreditTransaction.idempotency_key == idempotency_key,
        ).first()

    def recent_transactions(self, account_id: str, limit: int = 20) -> List[CreditTransaction]:
        return self.db.query(CreditTransaction).filter(
            CreditTransaction.account_id == account_id
        ).order_by(CreditTransaction.sequence.desc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Serialization point
    # ------------------------------------------------------------------

    def lock(self, account_id: str) -> int:
        """
        Enter the account's serialization domain.

        Bumps version with a conditional UPDATE (not halted), then checks
        that the cached balance still matches the newest ledger entry.
        MUST be called inside the caller's transaction; never commits.

        Returns:
            The account's version after the bump.

        Raises:
            CreditAccountNotFoundError: no credit account
            LedgerInconsistencyError: account halted or cache drift detected
        """
        result = self.db.execute(
            update(CreditAccount)
            .where(
                CreditAccount.account_id == account_id,
                CreditAccount.writes_halted.is_(False),
            )
            .values(version=CreditAccount.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            self._raise_missing_or_halted(account_id)

        balance, version = self.db.query(
            CreditAccount.balance, CreditAccount.version
        ).filter(CreditAccount.account_id == account_id).one()

        head = self.db.query(CreditTransaction.balance_after).filter(
            CreditTransaction.account_id == account_id
        ).order_by(CreditTransaction.sequence.desc()).limit(1).scalar()
        expected = head if head is not None else 0
        if balance != expected:
            raise LedgerInconsistencyError(
                account_id,
                cached_balance=balance,
                ledger_balance=expected,
                detail=f"cached balance {balance} != last ledger entry {expected}",
            )
        return version

    def _raise_missing_or_halted(self, account_id: str) -> None:
        row = self.db.query(
            CreditAccount.writes_halted, CreditAccount.halted_reason
        ).filter(CreditAccount.account_id == account_id).first()
        if row is None:
            raise CreditAccountNotFoundError(account_id)
        error = LedgerInconsistencyError(
            account_id,
            detail=f"writes halted: {row.halted_reason or 'ledger inconsistency'}",
        )
        error.already_halted = True
        raise error

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def open_account(self, account, now: Optional[datetime] = None, autocommit: bool = True) -> CreditAccount:
        """
        Create the credit account for a new Account.

        The opening allotment is recorded as the first period's
        MONTHLY_RESET entry so the balance is replayable from zero.
        """
        now = now or utcnow()

        def _open() -> CreditAccount:
            credit_account = CreditAccount(
                account_id=account.id,
                balance=0,
                monthly_allotment=self._credit_config.allotment_for(account.tier),
                writes_halted=False,
                version=0,
            )
            self.db.add(credit_account)
            self.db.flush()
            self.apply_monthly_reset(account, now, autocommit=False)
            return credit_account

        return self._run(_open, account.id, autocommit)

    def try_debit(
        self,
        account_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
        autocommit: bool = True,
    ) -> LedgerResult:
        """
        Debit credits if the balance covers them.

        Raises:
            InsufficientCreditsError: balance < amount (nothing written)
            InvalidIdempotencyReplayError: key reused for another operation
        """
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        return self._write(account_id, -amount, reason, idempotency_key, autocommit)

    def credit(
        self,
        account_id: str,
        amount: int,
        reason: str,
        idempotency_key: str,
        autocommit: bool = True,
        actor: Optional[str] = None,
    ) -> LedgerResult:
        """Grant or refund credits. Same idempotency discipline as try_debit."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        return self._write(account_id, amount, reason, idempotency_key, autocommit, actor=actor)

    def adjust(
        self,
        account_id: str,
        delta: int,
        actor: str,
        idempotency_key: str,
        autocommit: bool = True,
    ) -> LedgerResult:
        """
        Manual grant (delta > 0) or deduction (delta < 0) by admin tooling.

        Deductions respect the zero floor like any debit.
        """
        if delta == 0:
            raise ValueError("Adjustment delta must be non-zero")
        return self._write(
            account_id,
            delta,
            CreditReason.MANUAL_ADJUSTMENT,
            idempotency_key,
            autocommit,
            actor=actor,
        )

    def set_monthly_allotment(self, account_id: str, allotment: int) -> None:
        """
        Change the allotment granted at future resets (e.g. tier change).

        Does not touch the balance, so no ledger entry is needed. Never
        commits.
        """
        if allotment < 0:
            raise ValueError("monthly_allotment must be >= 0")
        self.lock(account_id)
        self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.account_id == account_id)
            .values(monthly_allotment=allotment)
            .execution_options(synchronize_session=False)
        )

    def apply_monthly_reset(
        self,
        account,
        now: Optional[datetime] = None,
        autocommit: bool = True,
    ) -> LedgerResult:
        """
        Apply the period reset for the period containing now.

        new balance = min(balance, rollover_cap) + monthly_allotment, written
        as ONE MONTHLY_RESET entry whose delta is the difference. Idempotent
        per (account, period_key): replaying the same period is a no-op that
        returns the recorded entry.
        """
        now = now or utcnow()
        pkey = period_key(account.period_anchor, now, self._usage_config)
        key = monthly_reset_key(pkey)

        def _reset() -> LedgerResult:
            existing = self.find_transaction(account.id, key)
            if existing is not None:
                return LedgerResult.from_transaction(existing, replayed=True)

            self.lock(account.id)

            existing = self.find_transaction(account.id, key)
            if existing is not None:
                return LedgerResult.from_transaction(existing, replayed=True)

            balance, allotment = self.db.query(
                CreditAccount.balance, CreditAccount.monthly_allotment
            ).filter(CreditAccount.account_id == account.id).one()

            new_balance = reset_balance(balance, allotment, self._credit_config.rollover_cap)
            delta = new_balance - balance

            self.db.execute(
                update(CreditAccount)
                .where(CreditAccount.account_id == account.id)
                .values(
                    balance=new_balance,
                    last_reset_at=now,
                    last_reset_period_key=pkey,
                    version=CreditAccount.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            txn = self._append(
                account.id,
                delta,
                CreditReason.MONTHLY_RESET,
                key,
                new_balance,
                period_key=pkey,
            )

            logger.info("Monthly credit reset applied", extra={
                "account_id": account.id,
                "period_key": pkey,
                "previous_balance": balance,
                "new_balance": new_balance,
                "allotment": allotment,
            })
            return LedgerResult.from_transaction(txn, replayed=False)

        return self._run(_reset, account.id, autocommit)

    def _write(
        self,
        account_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        autocommit: bool,
        actor: Optional[str] = None,
    ) -> LedgerResult:
        if not idempotency_key:
            raise ValueError("idempotency_key is required")

        def _apply() -> LedgerResult:
            existing = self.find_transaction(account_id, idempotency_key)
            if existing is not None:
                return self._replay(existing, delta, reason)

            self.lock(account_id)

            existing = self.find_transaction(account_id, idempotency_key)
            if existing is not None:
                return self._replay(existing, delta, reason)

            stmt = (
                update(CreditAccount)
                .where(CreditAccount.account_id == account_id)
                .values(
                    balance=CreditAccount.balance + delta,
                    version=CreditAccount.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if delta < 0:
                stmt = stmt.where(CreditAccount.balance >= -delta)

            result = self.db.execute(stmt)
            if result.rowcount == 0:
                raise InsufficientCreditsError(
                    reason,
                    balance=self.balance(account_id),
                    required=-delta,
                    account_id=account_id,
                )

            new_balance = self.balance(account_id)
            txn = self._append(account_id, delta, reason, idempotency_key, new_balance, actor=actor)
            return LedgerResult.from_transaction(txn, replayed=False)

        return self._run(
            _apply,
            account_id,
            autocommit,
            on_duplicate=lambda existing: self._replay(existing, delta, reason),
            idempotency_key=idempotency_key,
        )

    def _append(
        self,
        account_id: str,
        delta: int,
        reason: str,
        idempotency_key: str,
        balance_after: int,
        period_key: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> CreditTransaction:
        sequence = self.db.query(CreditAccount.version).filter(
            CreditAccount.account_id == account_id
        ).scalar()
        txn = CreditTransaction(
            account_id=account_id,
            delta=delta,
            reason=reason,
            idempotency_key=idempotency_key,
            balance_after=balance_after,
            sequence=sequence,
            period_key=period_key,
            actor=actor,
            created_at=utcnow(),
        )
        self.db.add(txn)
        self.db.flush()
        return txn

    def _replay(self, existing: CreditTransaction, delta: int, reason: str) -> LedgerResult:
        if existing.delta != delta or existing.reason != reason:
            logger.warning("Idempotency key reused for a different ledger write", extra={
                "account_id": existing.account_id,
                "idempotency_key": existing.idempotency_key,
                "recorded_delta": existing.delta,
                "requested_delta": delta,
                "recorded_reason": existing.reason,
                "requested_reason": reason,
            })
            raise InvalidIdempotencyReplayError(
                reason,
                detail=(
                    f"key '{existing.idempotency_key}' was recorded for "
                    f"{existing.reason} ({existing.delta:+d})"
                ),
                account_id=existing.account_id,
            )
        logger.info("Idempotent ledger replay", extra={
            "account_id": existing.account_id,
            "idempotency_key": existing.idempotency_key,
        })
        return LedgerResult.from_transaction(existing, replayed=True)

    def _run(
        self,
        operation: Callable[[], T],
        account_id: str,
        autocommit: bool,
        on_duplicate: Optional[Callable[[CreditTransaction], T]] = None,
        idempotency_key: Optional[str] = None,
    ) -> T:
        """
        Execute a write, committing and mapping failures when autocommit.

        Without autocommit the caller owns the transaction and its rollback.
        """
        if not autocommit:
            return operation()

        try:
            result = operation()
            self.db.commit()
            return result
        except IntegrityError:
            self.db.rollback()
            if on_duplicate is None or idempotency_key is None:
                raise
            # Lost a race on the unique idempotency key: the winner's entry
            # is the recorded result.
            existing = self.find_transaction(account_id, idempotency_key)
            if existing is None:
                raise
            return on_duplicate(existing)
        except LedgerInconsistencyError as exc:
            self.db.rollback()
            self.handle_inconsistency(exc)
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            if is_storage_error(exc):
                logger.warning("Ledger storage unavailable", extra={
                    "account_id": account_id,
                    "error": str(exc),
                })
                raise StorageUnavailableError(
                    "credits", detail="credit storage unavailable", account_id=account_id
                ) from exc
            raise
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def verify(self, account_id: str) -> int:
        """
        Compare the cached balance with the replayed ledger.

        Both values come from ONE statement (a correlated SUM), so a commit
        landing mid-check can never look like drift. Read-only unless drift
        is found; the caller ends its own transaction.

        Returns:
            The verified balance.

        Raises:
            CreditAccountNotFoundError: no credit account
            LedgerInconsistencyError: after halting writes and alerting.
        """
        ledger_sum = (
            select(func.coalesce(func.sum(CreditTransaction.delta), 0))
            .where(CreditTransaction.account_id == CreditAccount.account_id)
            .correlate(CreditAccount)
            .scalar_subquery()
        )
        row = self.db.query(CreditAccount.balance, ledger_sum).filter(
            CreditAccount.account_id == account_id
        ).first()
        if row is None:
            raise CreditAccountNotFoundError(account_id)
        cached, replayed = row[0], int(row[1] or 0)
        if cached != replayed:
            error = LedgerInconsistencyError(
                account_id,
                cached_balance=cached,
                ledger_balance=replayed,
            )
            self.handle_inconsistency(error)
            raise error
        return cached

    def handle_inconsistency(self, error: LedgerInconsistencyError) -> None:
        """
        Halt writes for the account and raise an operator alert.

        Runs in its own transaction: the caller has already rolled back.
        """
        if getattr(error, "already_halted", False):
            return
        self.halt(error.account_id, error.detail)
        alerts = self._alerts
        if alerts is None:
            from entitlement_engine.monitoring.alerts import get_alert_manager
            alerts = get_alert_manager()
        from entitlement_engine.monitoring.alerts import alert_ledger_inconsistency
        alert_ledger_inconsistency(
            alerts,
            account_id=error.account_id,
            cached_balance=error.cached_balance,
            ledger_balance=error.ledger_balance,
            detail=error.detail,
        )

    def halt(self, account_id: str, detail: str) -> None:
        """Stop all writes for the account until an operator intervenes."""
        self.db.execute(
            update(CreditAccount)
            .where(CreditAccount.account_id == account_id)
            .values(writes_halted=True, halted_reason=detail[:1000])
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        logger.critical("Credit writes halted for account", extra={
            "account_id": account_id,
            "detail": detail,
        })
