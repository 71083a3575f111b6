"""
Credit API routes.

- GET  /api/credits                                  balance, period usage and recent ledger
- POST /api/admin/accounts/{account_id}/credits      manual adjustment
- POST /api/admin/accounts/{account_id}/tier         tier override

Admin routes require the admin token (see require_admin). There is no raw
balance overwrite: every change is a ledger entry.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from entitlement_engine.api.dependencies.account_context import (
    AccountContext,
    get_account_context,
    require_admin,
)
from entitlement_engine.database.session import get_db_session
from entitlement_engine.entitlements.errors import (
    AccountNotFoundError,
    CreditAccountNotFoundError,
    EntitlementDeniedError,
    LedgerInconsistencyError,
)
from entitlement_engine.entitlements.ledger import CreditLedger
from entitlement_engine.entitlements.lifecycle import SubscriptionLifecycle
from entitlement_engine.entitlements.policy import get_policy_registry
from entitlement_engine.entitlements.usage import UsageTracker
from entitlement_engine.models.base import utcnow
from entitlement_engine.services.account_service import (
    AccountService,
    InvalidAccountUpdateError,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["credits"])


class TransactionResponse(BaseModel):
    id: str
    delta: int
    reason: str
    balance_after: int
    idempotency_key: str
    period_key: Optional[str] = None
    actor: Optional[str] = None
    created_at: datetime


class FeatureUsageResponse(BaseModel):
    feature: str
    period_key: str
    count: int
    usage_limit: Optional[int] = Field(None, description="None when unlimited")
    remaining: Optional[int] = None


class CreditsResponse(BaseModel):
    """Balance, allotment, current-period usage and recent ledger entries."""
    account_id: str
    balance: int
    projected_balance: int = Field(..., description="Balance after any pending period reset")
    monthly_allotment: int
    last_reset_period_key: Optional[str] = None
    writes_halted: bool
    subscription_status: str
    grace_period_ends_at: Optional[datetime] = None
    period_key: str
    period_started_at: datetime
    usage: List[FeatureUsageResponse]
    transactions: List[TransactionResponse]


class CreditAdjustmentRequest(BaseModel):
    """Manual grant (positive) or deduction (negative)."""
    delta: int = Field(..., description="Signed credit change, non-zero")
    idempotency_key: str = Field(..., min_length=1, max_length=255)


class CreditAdjustmentResponse(BaseModel):
    account_id: str
    delta: int
    new_balance: int
    transaction_id: Optional[str]
    replayed: bool


class TierOverrideRequest(BaseModel):
    tier: str = Field(..., description="FREE, BASIC, PREMIUM or ENTERPRISE")


class TierOverrideResponse(BaseModel):
    account_id: str
    tier: str


@router.get("/api/credits", response_model=CreditsResponse)
def get_credits(
    limit: int = Query(20, ge=1, le=200),
    ctx: AccountContext = Depends(get_account_context),
    db: Session = Depends(get_db_session),
):
    """Current credit state for the calling account."""
    service = AccountService(db)
    ledger = CreditLedger(db)
    try:
        account = service.get_account(ctx.account_id)
        credit_account = ledger.get_credit_account(ctx.account_id)
    except (AccountNotFoundError, CreditAccountNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account {ctx.account_id} not found"
        )

    now = utcnow()
    registry = get_policy_registry()
    tracker = UsageTracker(db, registry, service.config.usage)
    lifecycle = SubscriptionLifecycle.from_config(service.config.lifecycle)
    pkey = tracker.period_key_for(account, now)
    transactions = ledger.recent_transactions(ctx.account_id, limit=limit)

    usage = []
    for feature in registry.snapshot().features():
        policy = registry.lookup(account.tier, feature)
        if not policy.enabled:
            continue
        snapshot = tracker.peek(account, feature, now, usage_limit=policy.usage_limit)
        usage.append(FeatureUsageResponse(
            feature=snapshot.feature,
            period_key=snapshot.period_key,
            count=snapshot.count,
            usage_limit=None if snapshot.unlimited else snapshot.usage_limit,
            remaining=snapshot.remaining,
        ))

    return CreditsResponse(
        account_id=ctx.account_id,
        balance=credit_account.balance,
        projected_balance=ledger.projected_balance(ctx.account_id, pkey),
        monthly_allotment=credit_account.monthly_allotment,
        last_reset_period_key=credit_account.last_reset_period_key,
        writes_halted=credit_account.writes_halted,
        subscription_status=lifecycle.status(account, now).value,
        grace_period_ends_at=lifecycle.grace_period_ends_at(account),
        period_key=pkey,
        period_started_at=tracker.period_started_at(account, now),
        usage=usage,
        transactions=[
            TransactionResponse(
                id=txn.id,
                delta=txn.delta,
                reason=txn.reason,
                balance_after=txn.balance_after,
                idempotency_key=txn.idempotency_key,
                period_key=txn.period_key,
                actor=txn.actor,
                created_at=txn.created_at,
            )
            for txn in transactions
        ],
    )


@router.post(
    "/api/admin/accounts/{account_id}/credits",
    response_model=CreditAdjustmentResponse,
)
def adjust_credits(
    account_id: str,
    request: CreditAdjustmentRequest,
    actor: str = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Manual credit adjustment (MANUAL_ADJUSTMENT ledger entry)."""
    if request.delta == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="delta must be non-zero"
        )

    try:
        result = AccountService(db).adjust_credits(
            account_id,
            request.delta,
            actor=actor,
            idempotency_key=request.idempotency_key,
        )
    except (AccountNotFoundError, CreditAccountNotFoundError):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account {account_id} not found"
        )
    except EntitlementDeniedError as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_dict())
    except LedgerInconsistencyError as e:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=e.to_dict())

    logger.info("Manual credit adjustment", extra={
        "account_id": account_id,
        "delta": request.delta,
        "actor": actor,
        "replayed": result.replayed,
    })

    return CreditAdjustmentResponse(
        account_id=account_id,
        delta=result.delta,
        new_balance=result.new_balance,
        transaction_id=result.transaction_id,
        replayed=result.replayed,
    )


@router.post(
    "/api/admin/accounts/{account_id}/tier",
    response_model=TierOverrideResponse,
)
def override_tier(
    account_id: str,
    request: TierOverrideRequest,
    actor: str = Depends(require_admin),
    db: Session = Depends(get_db_session),
):
    """Admin tier override."""
    try:
        account = AccountService(db).override_tier(account_id, request.tier, actor=actor)
    except AccountNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account {account_id} not found"
        )
    except InvalidAccountUpdateError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except LedgerInconsistencyError as e:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=e.to_dict())

    return TierOverrideResponse(account_id=account.id, tier=account.tier)
