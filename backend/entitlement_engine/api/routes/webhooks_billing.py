"""
Billing-provider webhook.

SECURITY: Every delivery MUST carry a valid HMAC signature before it is
processed. The provider signs the raw body with BILLING_WEBHOOK_SECRET
(HMAC-SHA256, base64) and sends it in X-Billing-Signature.

Payload:
    {
        "event_id": "evt_123",
        "account_id": "...",
        "tier": "PREMIUM",                       (optional)
        "subscription_expires_at": "...",        (optional, null clears)
        "status": "ACTIVE" | "CANCELED"          (optional)
    }
"""

import os
import hmac
import hashlib
import base64
import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from entitlement_engine.database.session import get_db_session
from entitlement_engine.entitlements.errors import AccountNotFoundError, LedgerInconsistencyError
from entitlement_engine.services.account_service import (
    UNCHANGED,
    AccountService,
    InvalidAccountUpdateError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Billing-Signature"


class BillingUpdatePayload(BaseModel):
    """Billing-provider update."""
    event_id: str
    account_id: str
    tier: Optional[str] = None
    subscription_expires_at: Optional[datetime] = None
    status: Optional[str] = None


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    processed: bool
    message: str


def verify_billing_webhook(data: bytes, signature: str, secret: str) -> bool:
    """
    Verify the HMAC-SHA256 signature of a webhook body.

    Args:
        data: Raw request body bytes
        signature: X-Billing-Signature header value (base64)
        secret: Shared webhook secret

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    computed = hmac.new(secret.encode("utf-8"), data, hashlib.sha256)
    computed_digest = base64.b64encode(computed.digest()).decode("utf-8")

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(computed_digest, signature)


async def get_verified_billing_payload(request: Request) -> BillingUpdatePayload:
    """
    Read, verify and parse the webhook body.

    Raises:
        HTTPException: 401 on a bad signature, 400 on a malformed body,
            503 if the secret is not configured
    """
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Missing signature header in billing webhook")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature"
        )

    secret = os.getenv("BILLING_WEBHOOK_SECRET")
    if not secret:
        logger.error("BILLING_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )

    body = await request.body()

    if not verify_billing_webhook(body, signature, secret):
        logger.warning("Invalid billing webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        raw = json.loads(body)
        payload = BillingUpdatePayload.model_validate(raw)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error("Invalid billing webhook body", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook body"
        )

    request.state.raw_billing_payload = raw
    return payload


@router.post("/billing", response_model=WebhookResponse)
def billing_webhook(
    request: Request,
    payload: BillingUpdatePayload = Depends(get_verified_billing_payload),
    db: Session = Depends(get_db_session),
):
    """Apply a verified billing update (deduplicated by event_id)."""
    expires_at = (
        payload.subscription_expires_at
        if "subscription_expires_at" in payload.model_fields_set
        else UNCHANGED
    )

    try:
        result = AccountService(db).apply_billing_update(
            event_id=payload.event_id,
            account_id=payload.account_id,
            tier=payload.tier,
            status=payload.status,
            subscription_expires_at=expires_at,
            payload=getattr(request.state, "raw_billing_payload", None),
        )
    except AccountNotFoundError:
        logger.warning("Billing update for unknown account", extra={
            "event_id": payload.event_id,
            "account_id": payload.account_id,
        })
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Account {payload.account_id} not found"
        )
    except InvalidAccountUpdateError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except LedgerInconsistencyError as e:
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=e.to_dict())

    return WebhookResponse(processed=result.processed, message=result.message)
