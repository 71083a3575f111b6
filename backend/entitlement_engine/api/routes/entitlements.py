"""
Entitlement API routes.

- GET  /api/entitlements                   decisions for every known feature
- GET  /api/entitlements/{feature}         evaluate (read-only)
- POST /api/entitlements/{feature}/commit  commit (Idempotency-Key header)

The account comes from the gateway context, never from the request.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from entitlement_engine.api.dependencies.account_context import (
    AccountContext,
    get_account_context,
)
from entitlement_engine.database.session import get_db_session
from entitlement_engine.entitlements.errors import (
    AccountNotFoundError,
    LedgerInconsistencyError,
    denial_error,
)
from entitlement_engine.entitlements.evaluator import EntitlementEvaluator
from entitlement_engine.entitlements.models import CommitResult, Decision

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


class DecisionResponse(BaseModel):
    """Result of a read-only evaluation."""
    feature: str
    allowed: bool
    reason: Optional[str] = None
    credit_cost: int = 0
    usage_remaining: Optional[int] = Field(None, description="None means unlimited")
    subscription_status: Optional[str] = None
    tier: Optional[str] = None
    upgrade_hint: Optional[str] = None
    balance: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)
    admin_bypass: bool = False
    description: Optional[str] = None

    @classmethod
    def from_decision(cls, decision: Decision, description: Optional[str] = None) -> "DecisionResponse":
        return cls(**decision.to_dict(), description=description)


class DecisionListResponse(BaseModel):
    policy_version: str
    decisions: List[DecisionResponse]


class CommitResponse(BaseModel):
    """Recorded result of a commit."""
    ok: bool
    feature: str
    idempotency_key: str
    credit_cost: int
    usage_count: Optional[int] = None
    balance_after: Optional[int] = None
    commit_id: Optional[str] = None
    replayed: bool = False

    @classmethod
    def from_result(cls, result: CommitResult) -> "CommitResponse":
        return cls(
            ok=result.ok,
            feature=result.feature,
            idempotency_key=result.idempotency_key,
            credit_cost=result.credit_cost,
            usage_count=result.usage_count,
            balance_after=result.balance_after,
            commit_id=result.commit_id,
            replayed=result.replayed,
        )


def _account_not_found(account_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Account {account_id} not found"
    )


@router.get("", response_model=DecisionListResponse)
def list_entitlements(
    ctx: AccountContext = Depends(get_account_context),
    db: Session = Depends(get_db_session),
):
    """Evaluate every feature in the active policy table."""
    evaluator = EntitlementEvaluator(db)
    table = evaluator.registry.snapshot()
    descriptions = evaluator.config.feature_descriptions
    try:
        decisions = [
            DecisionResponse.from_decision(
                evaluator.evaluate(ctx.account_id, feature),
                description=descriptions.get(feature),
            )
            for feature in table.features()
        ]
    except AccountNotFoundError:
        raise _account_not_found(ctx.account_id)

    return DecisionListResponse(policy_version=table.version, decisions=decisions)


@router.get("/{feature}", response_model=DecisionResponse)
def evaluate_feature(
    feature: str,
    ctx: AccountContext = Depends(get_account_context),
    db: Session = Depends(get_db_session),
):
    """
    Advisory decision for UI and pre-checks.

    Never writes. A denial is returned as data (allowed=false), not an error.
    """
    evaluator = EntitlementEvaluator(db)
    try:
        decision = evaluator.evaluate(ctx.account_id, feature)
    except AccountNotFoundError:
        raise _account_not_found(ctx.account_id)
    return DecisionResponse.from_decision(
        decision, description=evaluator.config.feature_descriptions.get(decision.feature)
    )


@router.post("/{feature}/commit", response_model=CommitResponse)
def commit_feature(
    feature: str,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    ctx: AccountContext = Depends(get_account_context),
    db: Session = Depends(get_db_session),
):
    """
    Record one use of the feature.

    Denials map to 402 (plan/credits), 403 (role), 429 (usage cap),
    409 (idempotency key reuse) and 503 (storage, retry with the same key).
    """
    if not idempotency_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Idempotency-Key header is required"
        )

    try:
        result = EntitlementEvaluator(db).commit(ctx.account_id, feature, idempotency_key)
    except AccountNotFoundError:
        raise _account_not_found(ctx.account_id)
    except LedgerInconsistencyError as e:
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail=e.to_dict()
        )

    if not result.ok:
        error = denial_error(
            result.reason,
            result.feature,
            detail=result.detail,
            account_id=ctx.account_id,
        )
        logger.info("Commit denied", extra={
            "account_id": ctx.account_id,
            "feature": result.feature,
            "reason": result.reason.value,
        })
        raise HTTPException(status_code=error.http_status, detail=error.to_dict())

    return CommitResponse.from_result(result)
