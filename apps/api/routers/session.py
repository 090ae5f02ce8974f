"""
Participant session router: identity creation, snapshot lookup and reveal.
"""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.color_pool import allowed_colors, create_participant
from services.ledger import (
    LedgerSnapshot,
    RevealNotAllowedError,
    get_participant_snapshot,
    reveal_participant,
)
from services.session_token import create_session_token

router = APIRouter()


class InitSessionRequest(BaseModel):
    color_label: str = Field(min_length=1, max_length=32)


class ParticipantSnapshot(BaseModel):
    id: str
    color_label: str
    color_value: str
    free_quota_consumed: int
    revealed: bool
    credit_balance: int

    @classmethod
    def from_snapshot(cls, snapshot: LedgerSnapshot) -> "ParticipantSnapshot":
        return cls(**snapshot.as_dict())


class InitSessionResponse(ParticipantSnapshot):
    session_token: str
    session_expires_at: int


@router.get("/colors")
async def list_colors():
    """Color labels a new participant may choose from."""
    return {"colors": allowed_colors()}


@router.post("/init", response_model=InitSessionResponse)
async def init_session(
    request: InitSessionRequest,
    _rate_limit: None = Depends(rate_limit("session_init", limit=30)),
    db: AsyncSession = Depends(get_db),
):
    """Claim a unique color value and start a blind participant session."""
    snapshot = await create_participant(request.color_label, db)
    token = create_session_token(snapshot.id)
    return InitSessionResponse(
        **snapshot.as_dict(),
        session_token=token["token"],
        session_expires_at=token["expires_at"],
    )


@router.get("/me", response_model=ParticipantSnapshot)
async def get_session(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    snapshot = await get_participant_snapshot(auth.participant_id, db)
    return ParticipantSnapshot.from_snapshot(snapshot)


@router.post("/reveal", response_model=ParticipantSnapshot)
async def reveal_session(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Explicitly reveal the canvas once the free quota is used up. Idempotent."""
    try:
        snapshot = await reveal_participant(auth.participant_id, db)
    except RevealNotAllowedError as exc:
        raise HTTPException(
            status_code=409,
            detail={
                "error": "QUOTA_NOT_MET",
                "message": str(exc),
                "snapshot": exc.snapshot.as_dict(),
            },
        ) from exc
    return ParticipantSnapshot.from_snapshot(snapshot)
