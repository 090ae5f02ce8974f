"""Quota consumption engine and placement queries.

Every accepted placement is the product of one transaction that both debits
the participant ledger (free quota or credit balance) and inserts the mark.
The debit is a conditional UPDATE scoped to the participant row, so two
concurrent attempts can never both consume the last unit of capacity. The
insert is ``ON CONFLICT DO NOTHING`` on ``(participant_id, idempotency_key)``;
losing that race rolls the debit back and replays the winner's result.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
import math
from typing import Any, Dict, List, Optional, Sequence
import uuid

from sqlalchemy import case, true, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import free_quota_limit
from models.participant import Participant
from models.placement import PHASE_FREE, PHASE_PAID, Placement
from services.ledger import (
    SNAPSHOT_COLUMNS,
    LedgerError,
    LedgerSnapshot,
    LedgerUnavailableError,
    PlacementValidationError,
    apply_reveal,
    dialect_insert,
    ledger_transaction,
    require_snapshot,
)


logger = logging.getLogger(__name__)

OUTCOME_ACCEPTED = "accepted"
OUTCOME_REPLAYED = "replayed"
OUTCOME_NO_FREE_CAPACITY = "no_free_capacity"
OUTCOME_INSUFFICIENT_CREDITS = "insufficient_credits"

SUCCESS_OUTCOMES = (OUTCOME_ACCEPTED, OUTCOME_REPLAYED)

MAX_IDEMPOTENCY_KEY_LENGTH = 128


class _IdempotencyConflict(LedgerError):
    """Another request stored this key first; the debit must be rolled back."""


@dataclass(frozen=True)
class ProposedPlacement:
    """A candidate mark.

    ``phase`` is the caller's hint about which balance it expects to spend.
    A ``free`` hint never spends a credit, even if the participant was
    revealed in the meantime; without a hint the ledger state decides.
    """

    x: float
    y: float
    idempotency_key: Optional[str] = None
    phase: Optional[str] = None


@dataclass(frozen=True)
class PlacementRecord:
    id: str
    participant_id: str
    x: float
    y: float
    color_value: str
    phase: str
    idempotency_key: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: Any) -> "PlacementRecord":
        mapping = row._mapping if hasattr(row, "_mapping") else row
        return cls(
            id=str(mapping["id"]),
            participant_id=str(mapping["participant_id"]),
            x=float(mapping["x"]),
            y=float(mapping["y"]),
            color_value=str(mapping["color_value"]),
            phase=str(mapping["phase"]),
            idempotency_key=mapping["idempotency_key"],
            created_at=mapping["created_at"],
        )

    def as_public_dict(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "color_value": self.color_value,
            "phase": self.phase,
            "created_at": _iso(self.created_at),
        }

    def as_accepted_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "phase": self.phase,
            "idempotency_key": self.idempotency_key,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class PlacementOutcome:
    """Result of one engine call. Rejections carry the current snapshot."""

    status: str
    snapshot: LedgerSnapshot
    placement: Optional[PlacementRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_OUTCOMES


@dataclass
class BatchOutcome:
    status: str
    snapshot: LedgerSnapshot
    accepted: List[PlacementRecord] = field(default_factory=list)


PLACEMENT_COLUMNS = (
    Placement.id,
    Placement.participant_id,
    Placement.x,
    Placement.y,
    Placement.color_value,
    Placement.phase,
    Placement.idempotency_key,
    Placement.created_at,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def validate_coordinate(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PlacementValidationError(f"{name} must be a number")
    number = float(value)
    if not math.isfinite(number):
        raise PlacementValidationError(f"{name} must be finite")
    if number < 0.0 or number > 1.0:
        raise PlacementValidationError(f"{name} must be in range [0,1]")
    return number


def validate_proposal(proposal: ProposedPlacement) -> ProposedPlacement:
    """Return a normalized proposal or raise ``PlacementValidationError``."""
    x = validate_coordinate("x", proposal.x)
    y = validate_coordinate("y", proposal.y)
    key = proposal.idempotency_key
    if key is not None:
        key = str(key).strip()
        if not key:
            key = None
        elif len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise PlacementValidationError(
                f"idempotency_key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )
    phase = proposal.phase
    if phase is not None and phase not in (PHASE_FREE, PHASE_PAID):
        raise PlacementValidationError("phase must be 'free' or 'paid'")
    return ProposedPlacement(x=x, y=y, idempotency_key=key, phase=phase)


async def _find_by_key(db: AsyncSession, participant_id: str, key: Optional[str]) -> Optional[PlacementRecord]:
    if not key:
        return None
    result = await db.execute(
        select(*PLACEMENT_COLUMNS).where(
            Placement.participant_id == participant_id,
            Placement.idempotency_key == key,
        )
    )
    row = result.first()
    return PlacementRecord.from_row(row) if row is not None else None


async def _debit_free_quota(db: AsyncSession, participant_id: str) -> Optional[LedgerSnapshot]:
    limit = free_quota_limit()
    stmt = (
        update(Participant)
        .where(
            Participant.id == participant_id,
            Participant.revealed.is_(False),
            Participant.free_quota_consumed < limit,
        )
        .values(
            free_quota_consumed=Participant.free_quota_consumed + 1,
            revealed=case(
                (Participant.free_quota_consumed + 1 >= limit, true()),
                else_=Participant.revealed,
            ),
        )
        .returning(*SNAPSHOT_COLUMNS)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).first()
    return LedgerSnapshot.from_row(row) if row is not None else None


async def _debit_credit(db: AsyncSession, participant_id: str) -> Optional[LedgerSnapshot]:
    stmt = (
        update(Participant)
        .where(
            Participant.id == participant_id,
            Participant.revealed.is_(True),
            Participant.credit_balance > 0,
        )
        .values(credit_balance=Participant.credit_balance - 1)
        .returning(*SNAPSHOT_COLUMNS)
        .execution_options(synchronize_session=False)
    )
    row = (await db.execute(stmt)).first()
    return LedgerSnapshot.from_row(row) if row is not None else None


async def _insert_placement(
    db: AsyncSession,
    snapshot: LedgerSnapshot,
    proposal: ProposedPlacement,
    phase: str,
) -> Optional[PlacementRecord]:
    stmt = (
        dialect_insert(db, Placement)
        .values(
            id=str(uuid.uuid4()),
            participant_id=snapshot.id,
            x=proposal.x,
            y=proposal.y,
            color_value=snapshot.color_value,
            phase=phase,
            idempotency_key=proposal.idempotency_key,
            created_at=datetime.now(timezone.utc),
        )
        .on_conflict_do_nothing(index_elements=["participant_id", "idempotency_key"])
        .returning(*PLACEMENT_COLUMNS)
    )
    row = (await db.execute(stmt)).first()
    return PlacementRecord.from_row(row) if row is not None else None


async def _replay(db: AsyncSession, participant_id: str, existing: PlacementRecord) -> PlacementOutcome:
    snapshot = await require_snapshot(db, participant_id)
    logger.info(
        "placement_replayed participant=%s key=%s placement=%s",
        participant_id,
        existing.idempotency_key,
        existing.id,
    )
    return PlacementOutcome(status=OUTCOME_REPLAYED, snapshot=snapshot, placement=existing)


async def _consume_validated(
    participant_id: str,
    proposal: ProposedPlacement,
    db: AsyncSession,
) -> PlacementOutcome:
    try:
        return await _consume_once(participant_id, proposal, db)
    except _IdempotencyConflict:
        return await _replay_after_conflict(participant_id, proposal, db)


async def _reject(
    db: AsyncSession,
    participant_id: str,
    proposal: ProposedPlacement,
    status: str,
) -> PlacementOutcome:
    # A concurrent request carrying the same key may have consumed the
    # capacity this attempt was racing for.
    existing = await _find_by_key(db, participant_id, proposal.idempotency_key)
    if existing is not None:
        return await _replay(db, participant_id, existing)
    snapshot = await require_snapshot(db, participant_id)
    if status == OUTCOME_NO_FREE_CAPACITY and not snapshot.revealed:
        snapshot = await apply_reveal(db, participant_id) or snapshot
    logger.info(
        "placement_rejected participant=%s reason=%s free_used=%s credits=%s",
        participant_id,
        status,
        snapshot.free_quota_consumed,
        snapshot.credit_balance,
    )
    return PlacementOutcome(status=status, snapshot=snapshot)


async def _consume_once(
    participant_id: str,
    proposal: ProposedPlacement,
    db: AsyncSession,
) -> PlacementOutcome:
    async with ledger_transaction(db):
        existing = await _find_by_key(db, participant_id, proposal.idempotency_key)
        if existing is not None:
            return await _replay(db, participant_id, existing)

        current = await require_snapshot(db, participant_id)
        if current.revealed and proposal.phase == PHASE_FREE:
            return await _reject(db, participant_id, proposal, OUTCOME_NO_FREE_CAPACITY)
        if current.revealed:
            phase = PHASE_PAID
            debited = await _debit_credit(db, participant_id)
            rejection = OUTCOME_INSUFFICIENT_CREDITS
        else:
            phase = PHASE_FREE
            debited = await _debit_free_quota(db, participant_id)
            rejection = OUTCOME_NO_FREE_CAPACITY

        if debited is None:
            return await _reject(db, participant_id, proposal, rejection)

        inserted = await _insert_placement(db, debited, proposal, phase)
        if inserted is None:
            raise _IdempotencyConflict(proposal.idempotency_key)

        if phase == PHASE_FREE and debited.revealed:
            logger.info("participant_revealed participant=%s path=quota", participant_id)
        logger.info(
            "placement_accepted participant=%s phase=%s placement=%s free_used=%s credits=%s",
            participant_id,
            phase,
            inserted.id,
            debited.free_quota_consumed,
            debited.credit_balance,
        )
        return PlacementOutcome(status=OUTCOME_ACCEPTED, snapshot=debited, placement=inserted)


async def _replay_after_conflict(
    participant_id: str,
    proposal: ProposedPlacement,
    db: AsyncSession,
) -> PlacementOutcome:
    async with ledger_transaction(db):
        existing = await _find_by_key(db, participant_id, proposal.idempotency_key)
        if existing is None:
            logger.warning(
                "idempotency_conflict_without_row participant=%s key=%s", participant_id, proposal.idempotency_key
            )
            raise LedgerUnavailableError("Placement conflict could not be resolved. Retry the request.")
        return await _replay(db, participant_id, existing)


async def consume_placement(
    participant_id: str,
    proposal: ProposedPlacement,
    db: AsyncSession,
) -> PlacementOutcome:
    """Decide and apply one proposed placement for a participant."""
    return await _consume_validated(participant_id, validate_proposal(proposal), db)


async def consume_batch(
    participant_id: str,
    proposals: Sequence[ProposedPlacement],
    db: AsyncSession,
) -> BatchOutcome:
    """Apply proposals in submission order, stopping at the first rejection.

    Each item is its own engine call. All items are validated before the
    first one touches the ledger. Items without a phase hint inherit the
    phase of the batch's first accepted item, so a batch that starts on the
    free quota stops at its end instead of spilling onto credits.
    """
    validated = [validate_proposal(proposal) for proposal in proposals]

    accepted: List[PlacementRecord] = []
    batch_phase: Optional[str] = None
    last: Optional[PlacementOutcome] = None
    for proposal in validated:
        if proposal.phase is None and batch_phase is not None:
            proposal = replace(proposal, phase=batch_phase)
        last = await _consume_validated(participant_id, proposal, db)
        if not last.succeeded:
            return BatchOutcome(status=last.status, snapshot=last.snapshot, accepted=accepted)
        if last.placement is not None:
            accepted.append(last.placement)
            batch_phase = batch_phase or last.placement.phase

    if last is None:
        raise PlacementValidationError("At least one placement is required")
    return BatchOutcome(status=OUTCOME_ACCEPTED, snapshot=last.snapshot, accepted=accepted)


async def list_all_placements(db: AsyncSession, limit: Optional[int] = None) -> List[PlacementRecord]:
    async with ledger_transaction(db):
        query = select(*PLACEMENT_COLUMNS).order_by(Placement.created_at.asc(), Placement.id.asc())
        if limit:
            query = query.limit(limit)
        result = await db.execute(query)
        return [PlacementRecord.from_row(row) for row in result.all()]


async def list_own_placements(participant_id: str, db: AsyncSession) -> List[PlacementRecord]:
    async with ledger_transaction(db):
        await require_snapshot(db, participant_id)
        result = await db.execute(
            select(*PLACEMENT_COLUMNS)
            .where(Placement.participant_id == participant_id)
            .order_by(Placement.created_at.asc(), Placement.id.asc())
        )
        return [PlacementRecord.from_row(row) for row in result.all()]
