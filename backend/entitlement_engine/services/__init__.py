"""
Account and billing services.
"""

from entitlement_engine.services.account_service import (
    AccountService,
    AccountServiceError,
    AccountAlreadyExistsError,
    InvalidAccountUpdateError,
    BillingUpdateResult,
)

__all__ = [
    "AccountService",
    "AccountServiceError",
    "AccountAlreadyExistsError",
    "InvalidAccountUpdateError",
    "BillingUpdateResult",
]
