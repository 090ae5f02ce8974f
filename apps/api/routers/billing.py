"""Billing and credits router."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import credits_for_price, get_credit_summary, grant_credits

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditGrantRequest(BaseModel):
    participant_id: str = Field(min_length=1)
    credits: Optional[int] = Field(default=None, ge=1, le=100000)
    price_id: Optional[str] = None
    billing_reference: Optional[str] = Field(default=None, max_length=255)
    provider: str = Field(default="manual", max_length=64)

    @model_validator(mode="after")
    def _require_amount(self) -> "CreditGrantRequest":
        if self.credits is None and not self.price_id:
            raise ValueError("Provide credits or price_id")
        return self


def _require_grant_secret(x_credit_grant_secret: Optional[str] = Header(default=None)) -> None:
    """Only the trusted payment confirmation flow may grant credits."""
    expected = (settings.CREDIT_GRANT_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Credit grants are disabled. Configure CREDIT_GRANT_SECRET.")
    supplied = (x_credit_grant_secret or "").strip()
    if not supplied or not hmac.compare_digest(supplied, expected):
        raise HTTPException(status_code=401, detail="Invalid credit grant secret.")


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(auth.participant_id, db)


@router.post("/grant")
async def grant(
    request: CreditGrantRequest,
    _secret: None = Depends(_require_grant_secret),
    _rate_limit: None = Depends(rate_limit("billing_grant", limit=600)),
    db: AsyncSession = Depends(get_db),
):
    """Apply a confirmed purchase. Replays of one billing_reference are no-ops."""
    amount = request.credits if request.credits is not None else credits_for_price(request.price_id or "")
    result = await grant_credits(
        request.participant_id,
        db,
        amount=amount,
        billing_reference=request.billing_reference,
        provider=request.provider,
    )
    if not result["replayed"]:
        logger.info("Granted %s credits to %s via %s", amount, request.participant_id, request.provider)
    return result
