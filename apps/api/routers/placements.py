"""
Placement gateway: single and batched placements plus canvas listings.

Every response relays the engine's ledger snapshot unchanged.
"""

from typing import Any, Dict, List, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.ledger import LedgerSnapshot, get_participant_snapshot
from services.placement import (
    OUTCOME_INSUFFICIENT_CREDITS,
    OUTCOME_NO_FREE_CAPACITY,
    OUTCOME_REPLAYED,
    PlacementRecord,
    ProposedPlacement,
    consume_batch,
    consume_placement,
    list_all_placements,
    list_own_placements,
)

router = APIRouter()


class PlacementRequest(BaseModel):
    x: float
    y: float
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    # Client's belief about which phase it is in; "free" never spends a credit.
    phase: Optional[str] = None

    def to_proposal(self) -> ProposedPlacement:
        return ProposedPlacement(
            x=self.x,
            y=self.y,
            idempotency_key=self.idempotency_key,
            phase=self.phase,
        )


class BatchPlacementRequest(BaseModel):
    placements: List[PlacementRequest] = Field(min_length=1)


_REJECTIONS = {
    OUTCOME_NO_FREE_CAPACITY: (409, "NO_FREE_CAPACITY", "No free placements left."),
    OUTCOME_INSUFFICIENT_CREDITS: (402, "INSUFFICIENT_CREDITS", "Insufficient credits. Top up credits to continue."),
}


def _raise_rejection(
    status: str,
    snapshot: LedgerSnapshot,
    accepted: Optional[List[PlacementRecord]] = None,
) -> NoReturn:
    status_code, code, message = _REJECTIONS[status]
    detail: Dict[str, Any] = {
        "error": code,
        "message": message,
        "snapshot": snapshot.as_dict(),
    }
    if accepted is not None:
        detail["accepted"] = [record.as_accepted_dict() for record in accepted]
    raise HTTPException(status_code=status_code, detail=detail)


@router.post("")
async def place_one(
    request: PlacementRequest,
    _rate_limit: None = Depends(rate_limit("placements")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Place one mark against free quota (blind) or a credit (revealed)."""
    outcome = await consume_placement(auth.participant_id, request.to_proposal(), db)
    if not outcome.succeeded:
        _raise_rejection(outcome.status, outcome.snapshot)
    return {
        "snapshot": outcome.snapshot.as_dict(),
        "placement": outcome.placement.as_accepted_dict() if outcome.placement else None,
        "replayed": outcome.status == OUTCOME_REPLAYED,
    }


@router.post("/batch")
async def place_batch(
    request: BatchPlacementRequest,
    _rate_limit: None = Depends(rate_limit("placements")),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Place marks in order, stopping at the first quota or credit rejection."""
    max_items = max(int(settings.PLACEMENT_BATCH_MAX_ITEMS), 1)
    if len(request.placements) > max_items:
        raise HTTPException(status_code=422, detail=f"A batch may hold at most {max_items} placements.")

    outcome = await consume_batch(
        auth.participant_id,
        [item.to_proposal() for item in request.placements],
        db,
    )
    if outcome.status in _REJECTIONS:
        _raise_rejection(outcome.status, outcome.snapshot, outcome.accepted)
    return {
        "snapshot": outcome.snapshot.as_dict(),
        "accepted": [record.as_accepted_dict() for record in outcome.accepted],
    }


@router.get("/all")
async def list_all(
    limit: Optional[int] = Query(default=None, ge=1, le=100000),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Every participant's marks; only for a revealed requester."""
    snapshot = await get_participant_snapshot(auth.participant_id, db)
    if not snapshot.revealed:
        raise HTTPException(
            status_code=403,
            detail={"error": "NOT_REVEALED", "message": "Reveal the canvas before viewing all marks."},
        )
    records = await list_all_placements(db, limit=limit)
    return [record.as_public_dict() for record in records]


@router.get("/mine")
async def list_mine(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    records = await list_own_placements(auth.participant_id, db)
    return [record.as_public_dict() for record in records]
