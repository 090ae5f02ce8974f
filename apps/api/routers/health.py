"""
Liveness, readiness and dependency status for the canvas ledger.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from config import settings
from database import get_db
from models.participant import Participant

router = APIRouter()


async def _ledger_status(db: AsyncSession) -> Dict[str, Any]:
    try:
        participants = (await db.execute(select(func.count()).select_from(Participant))).scalar()
    except Exception as e:
        return {"ledger": f"down: {str(e)}"}
    return {"ledger": "up", "participants": int(participants or 0)}


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Ledger and rate-limit store status.
    A Redis outage only degrades rate limiting to per-process counters.
    """
    status = {"status": "healthy", "api": "up", "rate_limit_store": "unknown"}
    status.update(await _ledger_status(db))
    if status["ledger"] != "up":
        status["status"] = "unhealthy"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        status["rate_limit_store"] = "redis"
    except Exception as e:
        status["rate_limit_store"] = f"local fallback ({str(e)})"
        if status["status"] == "healthy":
            status["status"] = "degraded"

    return status


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """Ready once the participant ledger answers queries."""
    ledger = await _ledger_status(db)
    if ledger["ledger"] != "up":
        return JSONResponse(status_code=503, content={"ready": False, **ledger})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
