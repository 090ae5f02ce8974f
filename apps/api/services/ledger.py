"""Participant ledger: snapshots, domain errors and the reveal transition."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
import logging
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import true, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import free_quota_limit
from models.participant import Participant


logger = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = (
    Participant.id,
    Participant.color_label,
    Participant.color_value,
    Participant.free_quota_consumed,
    Participant.revealed,
    Participant.credit_balance,
)


class LedgerError(Exception):
    """Base class for ledger failures that are not business outcomes."""


class ParticipantNotFoundError(LedgerError):
    def __init__(self, participant_id: str):
        super().__init__(f"Participant {participant_id} not found")
        self.participant_id = participant_id


class PlacementValidationError(LedgerError):
    """Rejected before any ledger access; no side effects."""


class LedgerUnavailableError(LedgerError):
    """Retryable storage fault. Never a quota decision."""


class RevealNotAllowedError(LedgerError):
    """Explicit reveal requested before the free quota was used up."""

    def __init__(self, snapshot: "LedgerSnapshot"):
        super().__init__("Free quota must be used up before revealing")
        self.snapshot = snapshot


@dataclass(frozen=True)
class LedgerSnapshot:
    """Authoritative participant state returned by every mutating call."""

    id: str
    color_label: str
    color_value: str
    free_quota_consumed: int
    revealed: bool
    credit_balance: int

    @classmethod
    def from_row(cls, row: Any) -> "LedgerSnapshot":
        mapping = row._mapping if hasattr(row, "_mapping") else row
        return cls(
            id=str(mapping["id"]),
            color_label=str(mapping["color_label"]),
            color_value=str(mapping["color_value"]),
            free_quota_consumed=int(mapping["free_quota_consumed"]),
            revealed=bool(mapping["revealed"]),
            credit_balance=int(mapping["credit_balance"]),
        )

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def dialect_insert(db: AsyncSession, model: Any):
    """Return an INSERT construct supporting ON CONFLICT for the bound dialect."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise LedgerUnavailableError(f"Unsupported database dialect: {dialect}")


async def _rollback_quietly(db: AsyncSession) -> None:
    try:
        await db.rollback()
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Rollback after ledger failure also failed: %s", exc)


@asynccontextmanager
async def ledger_transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run the enclosed statements as one unit and translate storage faults.

    Commits on normal exit. Any exception rolls back; storage-level failures
    are re-raised as ``LedgerUnavailableError`` so callers can retry.
    """
    try:
        yield db
        await db.commit()
    except LedgerError:
        await _rollback_quietly(db)
        raise
    except (SQLAlchemyError, OSError, asyncio.TimeoutError) as exc:
        await _rollback_quietly(db)
        logger.warning("Ledger storage failure: %s", exc)
        raise LedgerUnavailableError("Ledger storage is temporarily unavailable. Retry the request.") from exc
    except BaseException:
        await _rollback_quietly(db)
        raise


async def fetch_snapshot(db: AsyncSession, participant_id: str) -> Optional[LedgerSnapshot]:
    result = await db.execute(select(*SNAPSHOT_COLUMNS).where(Participant.id == participant_id))
    row = result.first()
    return LedgerSnapshot.from_row(row) if row is not None else None


async def require_snapshot(db: AsyncSession, participant_id: str) -> LedgerSnapshot:
    snapshot = await fetch_snapshot(db, participant_id)
    if snapshot is None:
        raise ParticipantNotFoundError(participant_id)
    return snapshot


async def get_participant_snapshot(participant_id: str, db: AsyncSession) -> LedgerSnapshot:
    """Read-only snapshot lookup, with storage faults translated."""
    async with ledger_transaction(db):
        return await require_snapshot(db, participant_id)


async def apply_reveal(db: AsyncSession, participant_id: str) -> Optional[LedgerSnapshot]:
    """Flip ``revealed`` once the free quota is used up. None when nothing changed."""
    stmt = (
        update(Participant)
        .where(
            Participant.id == participant_id,
            Participant.revealed.is_(False),
            Participant.free_quota_consumed >= free_quota_limit(),
        )
        .values(revealed=true())
        .returning(*SNAPSHOT_COLUMNS)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).first()
    return LedgerSnapshot.from_row(row) if row is not None else None


async def reveal_participant(participant_id: str, db: AsyncSession) -> LedgerSnapshot:
    """Explicit blind-to-revealed transition.

    Shares the conditional-update guard used by the implicit path inside the
    consumption engine, so concurrent triggers record a single state change.
    Already revealed participants get their current snapshot back.
    """
    async with ledger_transaction(db):
        snapshot = await apply_reveal(db, participant_id)
        if snapshot is not None:
            logger.info("participant_revealed participant=%s path=explicit", participant_id)
            return snapshot

        snapshot = await require_snapshot(db, participant_id)
        if snapshot.revealed:
            return snapshot
        raise RevealNotAllowedError(snapshot)
