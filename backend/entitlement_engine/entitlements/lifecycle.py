"""
Subscription lifecycle: derive a point-in-time status from stored facts.

Rules, evaluated in order:
    0. canceled_at set                          -> CANCELED (explicit signal)
    1. FREE, trial open-ended or not elapsed    -> TRIALING
    2. FREE, trial elapsed                      -> EXPIRED
    3. paid, no subscription_expires_at         -> ACTIVE (manually managed term)
    4. paid, expiry in the future               -> ACTIVE
    5. paid, within the grace window            -> PAST_DUE (usable, flagged)
    6. otherwise                                -> EXPIRED

Status is never stored; it is recomputed for every decision.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from entitlement_engine.entitlements.loader import LifecycleConfig
from entitlement_engine.entitlements.models import SubscriptionStatus, Tier
from entitlement_engine.models.base import ensure_utc, utcnow

logger = logging.getLogger(__name__)


class SubscriptionLifecycle:
    """
    Pure status derivation.

    Accepts any object exposing tier, trial_expires_at,
    subscription_expires_at and canceled_at (an Account row or a test double).
    """

    def __init__(self, grace_period: timedelta = timedelta(days=3)):
        if grace_period < timedelta(0):
            raise ValueError("grace_period must not be negative")
        self.grace_period = grace_period

    @classmethod
    def from_config(cls, config: LifecycleConfig) -> "SubscriptionLifecycle":
        return cls(grace_period=timedelta(days=config.grace_period_days))

    def status(self, account, now: Optional[datetime] = None) -> SubscriptionStatus:
        now = ensure_utc(now) or utcnow()

        if getattr(account, "canceled_at", None) is not None:
            return SubscriptionStatus.CANCELED

        tier = account.tier.value if isinstance(account.tier, Tier) else account.tier

        if tier == Tier.FREE.value:
            trial_expires_at = ensure_utc(account.trial_expires_at)
            if trial_expires_at is None or trial_expires_at > now:
                return SubscriptionStatus.TRIALING
            return SubscriptionStatus.EXPIRED

        expires_at = ensure_utc(account.subscription_expires_at)
        if expires_at is None:
            return SubscriptionStatus.ACTIVE
        if expires_at > now:
            return SubscriptionStatus.ACTIVE
        if self.grace_period and now < expires_at + self.grace_period:
            return SubscriptionStatus.PAST_DUE
        return SubscriptionStatus.EXPIRED

    def grace_period_ends_at(self, account) -> Optional[datetime]:
        """End of the PAST_DUE window for paid tiers, if there is one."""
        expires_at = ensure_utc(getattr(account, "subscription_expires_at", None))
        if expires_at is None or not self.grace_period:
            return None
        return expires_at + self.grace_period

    def may_transact(self, account, now: Optional[datetime] = None) -> bool:
        return self.status(account, now).may_transact()
