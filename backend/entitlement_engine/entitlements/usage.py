"""
Usage tracker: per-account, per-feature, per-period counters.

Provides:
- period_index / period_key: pure period derivation from an anchor
- UsageTracker.peek: read-only count and cap state (safe for UI display)
- UsageTracker.increment: conditional increment, commit transaction only

period_key = floor((now - period_anchor) / period_length), rendered together
with the anchor. A changed anchor (e.g. mid-cycle upgrade) therefore never
reuses an older counter: the new key starts a fresh row at zero.
"""

import calendar
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from entitlement_engine.entitlements.loader import (
    PERIOD_UNIT_MONTH,
    UsageConfig,
    get_entitlement_config,
)
from entitlement_engine.entitlements.models import (
    UNLIMITED,
    FeatureLike,
    UsageSnapshot,
    feature_key,
)
from entitlement_engine.entitlements.policy import PolicyRegistry, get_policy_registry
from entitlement_engine.models.base import ensure_utc, generate_uuid, utcnow
from entitlement_engine.models.usage import UsageRecord

logger = logging.getLogger(__name__)


def _add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_index(anchor: datetime, now: datetime, config: UsageConfig) -> int:
    """
    Number of whole periods elapsed between anchor and now.

    Monthly periods roll over on the anchor's day-of-month (clamped to the
    month's length) at the anchor's time of day.
    """
    anchor = ensure_utc(anchor)
    now = ensure_utc(now)

    if config.period_unit == PERIOD_UNIT_MONTH:
        months = (now.year - anchor.year) * 12 + (now.month - anchor.month)
        if now < _add_months(anchor, months):
            months -= 1
        return months

    length = timedelta(days=config.period_length_days)
    return (now - anchor) // length


def period_start(anchor: datetime, index: int, config: UsageConfig) -> datetime:
    anchor = ensure_utc(anchor)
    if config.period_unit == PERIOD_UNIT_MONTH:
        return _add_months(anchor, index)
    return anchor + index * timedelta(days=config.period_length_days)


def period_key(anchor: datetime, now: datetime, config: UsageConfig) -> str:
    """Stable key for the period containing now, e.g. '20250301120000-0002'."""
    anchor = ensure_utc(anchor)
    return f"{anchor:%Y%m%d%H%M%S}-{period_index(anchor, now, config):04d}"


def _insert_ignore_usage_row(db: Session, account_id: str, feature: str, key: str) -> None:
    """
    Create the period's counter row if it does not exist yet.

    Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first uses never
    fail on the unique constraint and no savepoint is needed.
    """
    dialect = db.get_bind().dialect.name
    values = {
        "id": generate_uuid(),
        "account_id": account_id,
        "feature": feature,
        "period_key": key,
        "count": 0,
        "created_at": utcnow(),
        "updated_at": utcnow(),
    }

    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        exists = db.query(UsageRecord.id).filter(
            UsageRecord.account_id == account_id,
            UsageRecord.feature == feature,
            UsageRecord.period_key == key,
        ).first()
        if exists is None:
            db.add(UsageRecord(**values))
            db.flush()
        return

    stmt = insert(UsageRecord).values(**values).on_conflict_do_nothing(
        index_elements=["account_id", "feature", "period_key"]
    )
    db.execute(stmt)


class UsageTracker:
    """
    Reads and increments usage counters.

    One instance per request / job, bound to the caller's session so that
    increment() joins the caller's transaction.
    """

    def __init__(
        self,
        db_session: Session,
        registry: Optional[PolicyRegistry] = None,
        usage_config: Optional[UsageConfig] = None,
    ):
        self.db = db_session
        self._registry = registry or get_policy_registry()
        self._config = usage_config or get_entitlement_config().usage

    def period_key_for(self, account, now: Optional[datetime] = None) -> str:
        return period_key(account.period_anchor, now or utcnow(), self._config)

    def period_started_at(self, account, now: Optional[datetime] = None) -> datetime:
        index = period_index(account.period_anchor, now or utcnow(), self._config)
        return period_start(account.period_anchor, index, self._config)

    def get_count(self, account_id: str, feature: FeatureLike, key: str) -> int:
        count = self.db.query(UsageRecord.count).filter(
            UsageRecord.account_id == account_id,
            UsageRecord.feature == feature_key(feature),
            UsageRecord.period_key == key,
        ).scalar()
        return count or 0

    def peek(
        self,
        account,
        feature: FeatureLike,
        now: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> UsageSnapshot:
        """
        Current count and cap state. Read-only; safe to call repeatedly.

        Args:
            account: Account (needs id, tier, period_anchor)
            feature: Feature to inspect
            now: Evaluation time (defaults to current UTC time)
            usage_limit: Override the tier policy's limit

        Returns:
            UsageSnapshot with count, limit and remaining uses
        """
        key = feature_key(feature)
        if usage_limit is None:
            usage_limit = self._registry.lookup(account.tier, key).usage_limit
        pkey = self.period_key_for(account, now)
        return UsageSnapshot(
            feature=key,
            period_key=pkey,
            count=self.get_count(account.id, key, pkey),
            usage_limit=usage_limit,
        )

    def increment(
        self,
        account,
        feature: FeatureLike,
        now: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> Optional[int]:
        """
        Add one use to the current period's counter.

        MUST only be called inside a commit transaction; this method never
        commits. The increment is a conditional UPDATE (count < usage_limit)
        so a cap can never be overshot, even by a concurrent writer.

        Returns:
            The new count, or None if the cap was already reached.
        """
        key = feature_key(feature)
        pkey = self.period_key_for(account, now)

        _insert_ignore_usage_row(self.db, account.id, key, pkey)

        stmt = (
            update(UsageRecord)
            .where(
                UsageRecord.account_id == account.id,
                UsageRecord.feature == key,
                UsageRecord.period_key == pkey,
            )
            .values(count=UsageRecord.count + 1)
            .execution_options(synchronize_session=False)
        )
        if usage_limit is not None and usage_limit != UNLIMITED:
            stmt = stmt.where(UsageRecord.count < usage_limit)

        result = self.db.execute(stmt)
        if result.rowcount == 0:
            logger.info("Usage cap reached during increment", extra={
                "account_id": account.id,
                "feature": key,
                "period_key": pkey,
                "usage_limit": usage_limit,
            })
            return None

        return self.get_count(account.id, key, pkey)

    def history(self, account_id: str, feature: Optional[FeatureLike] = None) -> List[UsageRecord]:
        """All retained counters for an account, newest period first."""
        query = self.db.query(UsageRecord).filter(UsageRecord.account_id == account_id)
        if feature is not None:
            query = query.filter(UsageRecord.feature == feature_key(feature))
        return query.order_by(UsageRecord.period_key.desc()).all()
