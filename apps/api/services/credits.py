"""Credit grants from trusted payment confirmations."""

from __future__ import annotations

from typing import Any, Dict, Optional
import logging
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_grant import CreditGrant
from models.participant import Participant
from services.ledger import (
    LedgerError,
    ParticipantNotFoundError,
    dialect_insert,
    ledger_transaction,
    require_snapshot,
)


logger = logging.getLogger(__name__)


class InvalidGrantError(LedgerError):
    """Grant request with a non-positive amount or unknown price."""


def credits_for_price(price_id: str) -> int:
    credits = settings.CREDIT_PRICE_BUNDLES.get(str(price_id or "").strip())
    if not credits:
        raise InvalidGrantError(f"Unknown price id: {price_id}")
    return int(credits)


async def grant_credits(
    participant_id: str,
    db: AsyncSession,
    *,
    amount: int,
    billing_reference: Optional[str] = None,
    provider: str = "manual",
) -> Dict[str, Any]:
    """Atomically add credits to a participant's balance.

    The grant row and the balance increment commit together. A repeated
    ``billing_reference`` (for example a redelivered payment webhook) does not
    add credits twice; it reports the participant's current balance with
    ``credits_added`` of 0.
    """
    grant = int(amount)
    if grant <= 0:
        raise InvalidGrantError("credits must be greater than 0")
    reference = (billing_reference or "").strip() or f"{provider}:{uuid.uuid4()}"

    async with ledger_transaction(db):
        grant_id = str(uuid.uuid4())
        claim = (
            dialect_insert(db, CreditGrant)
            .values(
                id=grant_id,
                participant_id=participant_id,
                amount=grant,
                provider=provider,
                billing_reference=reference,
            )
            .on_conflict_do_nothing(index_elements=["billing_reference"])
            .returning(CreditGrant.id)
        )
        await require_snapshot(db, participant_id)
        claimed = (await db.execute(claim)).first()
        if claimed is None:
            existing = (
                await db.execute(
                    select(CreditGrant).where(CreditGrant.billing_reference == reference)
                )
            ).scalar_one()
            if existing.participant_id != participant_id:
                raise InvalidGrantError("billing_reference already used for another participant")
            snapshot = await require_snapshot(db, participant_id)
            logger.info("credit_grant_replayed participant=%s reference=%s", participant_id, reference)
            return {
                "participant_id": participant_id,
                "credits_added": 0,
                "balance_after": snapshot.credit_balance,
                "replayed": True,
            }

        result = await db.execute(
            update(Participant)
            .where(Participant.id == participant_id)
            .values(credit_balance=Participant.credit_balance + grant)
            .returning(Participant.credit_balance)
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            raise ParticipantNotFoundError(participant_id)
        balance_after = int(row[0])
        await db.execute(
            update(CreditGrant)
            .where(CreditGrant.id == grant_id)
            .values(balance_after=balance_after)
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "credit_grant participant=%s amount=%s balance_after=%s provider=%s",
            participant_id,
            grant,
            balance_after,
            provider,
        )
        return {
            "participant_id": participant_id,
            "credits_added": grant,
            "balance_after": balance_after,
            "replayed": False,
        }


async def get_credit_summary(participant_id: str, db: AsyncSession) -> Dict[str, Any]:
    async with ledger_transaction(db):
        snapshot = await require_snapshot(db, participant_id)
        result = await db.execute(
            select(CreditGrant)
            .where(CreditGrant.participant_id == participant_id)
            .order_by(CreditGrant.created_at.desc())
            .limit(30)
        )
        grants = result.scalars().all()
        return {
            "balance": snapshot.credit_balance,
            "revealed": snapshot.revealed,
            "bundles": dict(settings.CREDIT_PRICE_BUNDLES),
            "recent_grants": [
                {
                    "id": grant.id,
                    "amount": grant.amount,
                    "balance_after": grant.balance_after,
                    "provider": grant.provider,
                    "created_at": grant.created_at.isoformat() if grant.created_at else None,
                }
                for grant in grants
            ],
        }
