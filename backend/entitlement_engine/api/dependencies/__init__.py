"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from entitlement_engine.api.dependencies.account_context import (
    AccountContext,
    get_account_context,
    require_admin,
)

__all__ = [
    "AccountContext",
    "get_account_context",
    "require_admin",
]
