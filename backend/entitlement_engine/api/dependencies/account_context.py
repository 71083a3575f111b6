"""
Account context for API routes.

The engine sits behind an authenticating gateway. The gateway resolves the
caller to an entitlement account and forwards it in X-Account-Id (or an
upstream middleware sets request.state.account_context). account_id is
NEVER taken from the request body or query.

Admin routes additionally require X-Admin-Token to match
ENTITLEMENT_ADMIN_TOKEN.
"""

import hmac
import logging
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Request, status

logger = logging.getLogger(__name__)

ACCOUNT_HEADER = "X-Account-Id"
ACTOR_HEADER = "X-Actor-Id"
ADMIN_TOKEN_HEADER = "X-Admin-Token"


@dataclass(frozen=True)
class AccountContext:
    """Who is calling."""
    account_id: str
    actor: Optional[str] = None


def get_account_context(request: Request) -> AccountContext:
    """
    Extract the account context from request state or gateway headers.

    Raises 403 if the context is missing.
    """
    context = getattr(request.state, "account_context", None)
    if context is not None:
        return context

    account_id = request.headers.get(ACCOUNT_HEADER)
    if not account_id:
        logger.warning("Route accessed without account context", extra={
            "path": request.url.path
        })
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account context not available"
        )

    context = AccountContext(
        account_id=account_id,
        actor=request.headers.get(ACTOR_HEADER),
    )
    request.state.account_context = context
    return context


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(None, alias=ADMIN_TOKEN_HEADER),
) -> str:
    """
    Dependency guarding admin tooling routes.

    Returns:
        The acting operator (X-Actor-Id, or "admin").
    """
    expected = os.getenv("ENTITLEMENT_ADMIN_TOKEN")
    if not expected:
        logger.error("ENTITLEMENT_ADMIN_TOKEN not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access not configured"
        )

    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        logger.warning("Invalid admin token", extra={"path": request.url.path})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access denied"
        )

    return request.headers.get(ACTOR_HEADER) or "admin"
