"""
Credit Reset Worker.

Background job that keeps credit accounts current by:
1. Applying pending monthly resets (rollover-capped allotment)
2. Verifying every ledger (cached balance == sum of deltas)

Commits already apply a pending reset on demand; this worker makes balances
shown by read-only endpoints current for idle accounts too. Both phases are
idempotent and safe to run concurrently with commits.

Run as: python -m entitlement_engine.workers.credit_reset_job

Configuration:
- CREDIT_RESET_INTERVAL: Seconds between cycles (default: 3600)
- CREDIT_RESET_BATCH_SIZE: Accounts per batch (default: 200)
"""

import os
import signal
import logging
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Optional

from entitlement_engine.database.session import get_db_session_sync

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

POLL_INTERVAL = int(os.getenv("CREDIT_RESET_INTERVAL", "3600"))
BATCH_SIZE = int(os.getenv("CREDIT_RESET_BATCH_SIZE", "200"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


@dataclass
class CreditResetStats:
    """Track credit reset run statistics."""

    accounts_scanned: int = 0
    resets_applied: int = 0
    ledgers_verified: int = 0
    inconsistencies: int = 0
    halted_skipped: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "accounts_scanned": self.accounts_scanned,
            "resets_applied": self.resets_applied,
            "ledgers_verified": self.ledgers_verified,
            "inconsistencies": self.inconsistencies,
            "halted_skipped": self.halted_skipped,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


def _iter_batches(db, batch_size: int):
    """
    Yield pages of plain (id, period_anchor, writes_halted,
    last_reset_period_key) rows in id order.

    The read transaction is ended before each page is handed out, so the
    scan never holds locks while per-account work runs.
    """
    from entitlement_engine.models.account import Account
    from entitlement_engine.models.credit import CreditAccount

    last_id = None
    while not _shutdown:
        query = (
            db.query(
                Account.id,
                Account.period_anchor,
                CreditAccount.writes_halted,
                CreditAccount.last_reset_period_key,
            )
            .join(CreditAccount, CreditAccount.account_id == Account.id)
            .order_by(Account.id)
        )
        if last_id is not None:
            query = query.filter(Account.id > last_id)
        rows = query.limit(batch_size).all()
        db.rollback()
        if not rows:
            return
        yield rows
        last_id = rows[-1].id


def _apply_pending_resets(db, stats: CreditResetStats, now: datetime, batch_size: int) -> None:
    """
    Phase 1: Apply the reset for every account whose last reset belongs to
    an earlier period. Each reset is its own transaction.
    """
    from entitlement_engine.entitlements.errors import LedgerInconsistencyError
    from entitlement_engine.entitlements.ledger import CreditLedger
    from entitlement_engine.entitlements.loader import get_entitlement_config
    from entitlement_engine.entitlements.usage import period_key
    from entitlement_engine.models.account import Account

    ledger = CreditLedger(db)
    usage_config = get_entitlement_config().usage

    for rows in _iter_batches(db, batch_size):
        for row in rows:
            stats.accounts_scanned += 1
            if row.writes_halted:
                stats.halted_skipped += 1
                continue

            pkey = period_key(row.period_anchor, now, usage_config)
            if row.last_reset_period_key == pkey:
                continue

            try:
                account = db.get(Account, row.id)
                if account is None:
                    # Deleted since the page was read
                    db.rollback()
                    continue
                result = ledger.apply_monthly_reset(account, now)
                if not result.replayed:
                    stats.resets_applied += 1
            except LedgerInconsistencyError:
                # Already halted and alerted by the ledger.
                stats.inconsistencies += 1
            except Exception:
                logger.error("Failed to apply monthly reset", exc_info=True, extra={
                    "account_id": row.id,
                    "period_key": pkey,
                })
                db.rollback()
                stats.errors += 1


def _verify_ledgers(db, stats: CreditResetStats, batch_size: int) -> None:
    """
    Phase 2: Replay every ledger and compare with the cached balance.

    Divergent accounts are halted and alerted by CreditLedger.verify.
    """
    from entitlement_engine.entitlements.errors import LedgerInconsistencyError
    from entitlement_engine.entitlements.ledger import CreditLedger

    ledger = CreditLedger(db)

    for rows in _iter_batches(db, batch_size):
        for row in rows:
            if row.writes_halted:
                continue
            try:
                ledger.verify(row.id)
                stats.ledgers_verified += 1
            except LedgerInconsistencyError:
                stats.inconsistencies += 1
            except Exception:
                logger.error("Failed to verify ledger", exc_info=True, extra={
                    "account_id": row.id,
                })
                stats.errors += 1
            finally:
                # Read-only check: release the transaction before the next account
                db.rollback()


def run_once(db=None, now: Optional[datetime] = None, batch_size: int = BATCH_SIZE) -> CreditResetStats:
    """
    Run one full cycle.

    Args:
        db: Session to use (a new one is opened and closed when omitted)
        now: Reference time for period math (defaults to current UTC time)
        batch_size: Accounts loaded per page
    """
    from entitlement_engine.monitoring.alerts import alert_credit_reset_failed

    stats = CreditResetStats()
    now = now or datetime.now(timezone.utc)

    db_gen = None
    if db is None:
        db_gen = get_db_session_sync()
        db = next(db_gen)

    try:
        # Phase 1: Pending resets
        _apply_pending_resets(db, stats, now, batch_size)

        # Phase 2: Ledger verification
        _verify_ledgers(db, stats, batch_size)

        result = stats.to_dict()
        logger.info("Credit reset cycle complete", extra=result)
        if stats.errors:
            alert_credit_reset_failed(f"{stats.errors} accounts failed", result)
        return stats

    except Exception as e:
        logger.error("Credit reset cycle failed", exc_info=True)
        db.rollback()
        stats.errors += 1
        alert_credit_reset_failed(str(e), stats.to_dict())
        return stats
    finally:
        if db_gen is not None:
            db.close()


def main():
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Credit reset worker started",
        extra={"poll_interval": POLL_INTERVAL, "batch_size": BATCH_SIZE},
    )

    while not _shutdown:
        run_once()
        # Sleep in 1-second increments for responsive shutdown
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Credit reset worker stopped")


if __name__ == "__main__":
    main()
