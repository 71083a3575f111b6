"""
Structured error classes for entitlement enforcement and the credit ledger.

Every denial carries a machine-readable DenialReason and an HTTP status for
the API layer. LedgerInconsistencyError is fatal: it halts writes for the
account and is never retried.
"""

from typing import Optional

from fastapi import status

from entitlement_engine.entitlements.models import DenialReason


class EntitlementError(Exception):
    """Base exception for entitlement errors."""
    pass


class EntitlementDeniedError(EntitlementError):
    """
    Raised when a feature use is denied.

    Includes machine-readable reason codes for programmatic handling.
    """

    reason: DenialReason = DenialReason.FEATURE_NOT_IN_TIER
    http_status: int = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(
        self,
        feature: str,
        detail: Optional[str] = None,
        account_id: Optional[str] = None,
        upgrade_hint: Optional[str] = None,
    ):
        """
        Initialize entitlement denied error.

        Args:
            feature: Feature key that was denied
            detail: Human-readable explanation
            account_id: Account the decision was made for
            upgrade_hint: Cheapest tier that would enable the feature
        """
        self.feature = feature
        self.detail = detail or self.reason.value.replace("_", " ").lower()
        self.account_id = account_id
        self.upgrade_hint = upgrade_hint
        super().__init__(f"Feature '{feature}' denied: {self.detail}")

    @property
    def retryable(self) -> bool:
        return self.reason.is_transient

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": "entitlement_denied",
            "feature": self.feature,
            "reason": self.detail,
            "upgrade_hint": self.upgrade_hint,
            "machine_readable": {
                "code": self.reason.value,
                "feature": self.feature,
                "retryable": self.retryable,
            },
        }


class RoleRestrictedError(EntitlementDeniedError):
    reason = DenialReason.ROLE_RESTRICTED
    http_status = status.HTTP_403_FORBIDDEN


class SubscriptionInactiveError(EntitlementDeniedError):
    reason = DenialReason.SUBSCRIPTION_INACTIVE


class FeatureNotInTierError(EntitlementDeniedError):
    reason = DenialReason.FEATURE_NOT_IN_TIER


class UsageLimitReachedError(EntitlementDeniedError):
    reason = DenialReason.USAGE_LIMIT_REACHED
    http_status = status.HTTP_429_TOO_MANY_REQUESTS


class InsufficientCreditsError(EntitlementDeniedError):
    """Raised by CreditLedger.try_debit when the balance floor would be crossed."""

    reason = DenialReason.INSUFFICIENT_CREDITS

    def __init__(
        self,
        feature: str,
        balance: Optional[int] = None,
        required: Optional[int] = None,
        account_id: Optional[str] = None,
    ):
        self.balance = balance
        self.required = required
        detail = None
        if balance is not None and required is not None:
            detail = f"{required} credits required, {balance} available"
        super().__init__(feature, detail=detail, account_id=account_id)


class StorageUnavailableError(EntitlementDeniedError):
    """Transient: the caller may retry with the same idempotency key."""

    reason = DenialReason.STORAGE_UNAVAILABLE
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidIdempotencyReplayError(EntitlementDeniedError):
    """Client bug: the same key was reused for a different operation."""

    reason = DenialReason.INVALID_IDEMPOTENCY_REPLAY
    http_status = status.HTTP_409_CONFLICT


class CreditAccountNotFoundError(EntitlementError):
    """No credit account exists for the account id."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No credit account for {account_id}")


class AccountNotFoundError(EntitlementError):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class LedgerInconsistencyError(EntitlementError):
    """
    Fatal: the cached balance diverges from the summed transaction log.

    Writes for the account stay halted until an operator reconciles it.
    """

    def __init__(
        self,
        account_id: str,
        cached_balance: Optional[int] = None,
        ledger_balance: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        self.account_id = account_id
        self.cached_balance = cached_balance
        self.ledger_balance = ledger_balance
        self.detail = detail or (
            f"cached balance {cached_balance} != ledger sum {ledger_balance}"
        )
        self.error_code = "LEDGER_INCONSISTENT"
        super().__init__(f"Ledger inconsistency for {account_id}: {self.detail}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.detail,
            "account_id": self.account_id,
        }


_DENIAL_ERRORS = {
    cls.reason: cls
    for cls in (
        RoleRestrictedError,
        SubscriptionInactiveError,
        FeatureNotInTierError,
        UsageLimitReachedError,
        InsufficientCreditsError,
        StorageUnavailableError,
        InvalidIdempotencyReplayError,
    )
}


def denial_error(
    reason: DenialReason,
    feature: str,
    detail: Optional[str] = None,
    account_id: Optional[str] = None,
    upgrade_hint: Optional[str] = None,
) -> EntitlementDeniedError:
    """Build the exception matching a DenialReason."""
    error_cls = _DENIAL_ERRORS[reason]
    if error_cls is InsufficientCreditsError:
        error = InsufficientCreditsError(feature, account_id=account_id)
        if detail:
            error.detail = detail
        return error
    return error_cls(
        feature,
        detail=detail,
        account_id=account_id,
        upgrade_hint=upgrade_hint,
    )
