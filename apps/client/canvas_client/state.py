"""
Per-session canvas state: phase machine, provisional marks and ledger adoption.

The server snapshot is the only source of truth for quota, credits and the
revealed flag. Everything the client shows beyond it (remaining quota, credits
after in-flight marks) is derived from the last adopted snapshot plus the
provisional marks still waiting on a decision.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
import logging
from typing import Any, Dict, Iterable, List, Optional
import uuid


logger = logging.getLogger(__name__)

FREE_QUOTA_LIMIT = 10

PHASE_FREE = "free"
PHASE_PAID = "paid"


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    SELECTING_IDENTITY = "selecting_identity"
    BLIND_ACTIVE = "blind_active"
    REVEALED_ACTIVE = "revealed_active"


class PlacementNotAllowedError(Exception):
    """Local estimate says no capacity is left, or no identity is active."""


@dataclass(frozen=True)
class LedgerSnapshot:
    id: str
    color_label: str
    color_value: str
    free_quota_consumed: int
    revealed: bool
    credit_balance: int

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "LedgerSnapshot":
        return cls(
            id=str(payload["id"]),
            color_label=str(payload.get("color_label") or ""),
            color_value=str(payload.get("color_value") or ""),
            free_quota_consumed=int(payload.get("free_quota_consumed") or 0),
            revealed=bool(payload.get("revealed")),
            credit_balance=int(payload.get("credit_balance") or 0),
        )


@dataclass(frozen=True)
class Mark:
    x: float
    y: float
    color_value: str
    phase: str
    idempotency_key: Optional[str] = None
    created_at: Optional[str] = None
    placement_id: Optional[str] = None

    @property
    def provisional(self) -> bool:
        return self.created_at is None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], color_value: str = "") -> "Mark":
        return cls(
            x=float(payload["x"]),
            y=float(payload["y"]),
            color_value=str(payload.get("color_value") or color_value),
            phase=str(payload.get("phase") or PHASE_FREE),
            idempotency_key=payload.get("idempotency_key"),
            created_at=payload.get("created_at"),
            placement_id=payload.get("id"),
        )

    def identity(self) -> tuple:
        return (self.color_value, self.phase, round(self.x, 6), round(self.y, 6), self.created_at)


class CanvasState:
    """State machine for one participant session.

    ``uninitialized -> selecting_identity -> blind_active -> revealed_active``.
    The move to ``revealed_active`` only happens when an adopted snapshot says
    so; local counting never triggers it.
    """

    def __init__(self, free_quota_limit: int = FREE_QUOTA_LIMIT):
        self.free_quota_limit = free_quota_limit
        self.reset()

    def reset(self) -> None:
        self.phase = SessionPhase.UNINITIALIZED
        self.snapshot: Optional[LedgerSnapshot] = None
        self._provisional: "OrderedDict[str, Mark]" = OrderedDict()
        self._confirmed: List[Mark] = []
        self._revealed_marks: List[Mark] = []
        self.revealed_marks_loaded = False
        self._revealed_fetch_claimed = False

    # Identity lifecycle

    def begin_identity_selection(self) -> None:
        if self.phase != SessionPhase.UNINITIALIZED:
            raise RuntimeError(f"Cannot select identity from {self.phase.value}")
        self.phase = SessionPhase.SELECTING_IDENTITY

    def identity_created(self, snapshot: LedgerSnapshot) -> None:
        """Enter the session for a new or restored participant."""
        if self.phase not in (SessionPhase.UNINITIALIZED, SessionPhase.SELECTING_IDENTITY):
            raise RuntimeError(f"Identity already active ({self.phase.value})")
        self.phase = SessionPhase.BLIND_ACTIVE
        self.snapshot = None
        self.adopt(snapshot)

    def drop_identity(self) -> None:
        """Server no longer knows this participant; start over at color selection."""
        logger.info("Dropping participant identity %s", self.snapshot.id if self.snapshot else None)
        self.reset()
        self.phase = SessionPhase.SELECTING_IDENTITY

    # Snapshot adoption

    def adopt(self, snapshot: LedgerSnapshot) -> bool:
        """Adopt a server snapshot wholesale unless it is stale.

        Returns False when the snapshot was ignored because a later one (by
        ``free_quota_consumed``) is already held.
        """
        if self.phase not in (SessionPhase.BLIND_ACTIVE, SessionPhase.REVEALED_ACTIVE):
            return False
        current = self.snapshot
        if current is not None and current.id == snapshot.id:
            if snapshot.free_quota_consumed < current.free_quota_consumed:
                logger.debug(
                    "Ignoring stale snapshot (%s < %s)",
                    snapshot.free_quota_consumed,
                    current.free_quota_consumed,
                )
                return False
            if current.revealed and not snapshot.revealed:
                return False

        self.snapshot = snapshot
        if snapshot.revealed and self.phase == SessionPhase.BLIND_ACTIVE:
            self._enter_revealed()
        return True

    def _enter_revealed(self) -> None:
        self.phase = SessionPhase.REVEALED_ACTIVE
        discarded = [key for key, mark in self._provisional.items() if mark.phase == PHASE_FREE]
        for key in discarded:
            del self._provisional[key]
        self._confirmed = [mark for mark in self._confirmed if mark.phase != PHASE_FREE]
        logger.info("Canvas revealed; discarded %s provisional blind marks", len(discarded))

    # Provisional marks

    @property
    def pending(self) -> List[Mark]:
        return list(self._provisional.values())

    def _pending_count(self, phase: str) -> int:
        return sum(1 for mark in self._provisional.values() if mark.phase == phase)

    @property
    def estimated_remaining_quota(self) -> int:
        if self.snapshot is None:
            return 0
        remaining = self.free_quota_limit - self.snapshot.free_quota_consumed - self._pending_count(PHASE_FREE)
        return max(remaining, 0)

    @property
    def estimated_credits(self) -> int:
        if self.snapshot is None:
            return 0
        return max(self.snapshot.credit_balance - self._pending_count(PHASE_PAID), 0)

    def can_place(self) -> bool:
        if self.phase == SessionPhase.BLIND_ACTIVE:
            return self.estimated_remaining_quota > 0
        if self.phase == SessionPhase.REVEALED_ACTIVE:
            return self.estimated_credits > 0
        return False

    def add_provisional(self, x: float, y: float) -> Mark:
        """Render a speculative mark immediately, tagged with a fresh key."""
        if not self.can_place() or self.snapshot is None:
            raise PlacementNotAllowedError(f"No placement capacity in {self.phase.value}")
        mark = Mark(
            x=x,
            y=y,
            color_value=self.snapshot.color_value,
            phase=PHASE_FREE if self.phase == SessionPhase.BLIND_ACTIVE else PHASE_PAID,
            idempotency_key=str(uuid.uuid4()),
        )
        self._provisional[mark.idempotency_key] = mark
        return mark

    def confirm(self, idempotency_key: str, accepted: Dict[str, Any]) -> Optional[Mark]:
        """Keep a provisional mark, now carrying its server creation time."""
        mark = self._provisional.pop(idempotency_key, None)
        if mark is None:
            return None
        confirmed = replace(
            mark,
            phase=str(accepted.get("phase") or mark.phase),
            created_at=accepted.get("created_at"),
            placement_id=accepted.get("id"),
        )
        if self.phase == SessionPhase.REVEALED_ACTIVE and confirmed.phase == PHASE_FREE:
            # Already part of the revealed collection.
            return confirmed
        self._confirmed.append(confirmed)
        return confirmed

    def rollback(self, idempotency_key: str) -> Optional[Mark]:
        return self._provisional.pop(idempotency_key, None)

    def load_own_marks(self, marks: Iterable[Mark]) -> None:
        self._confirmed = list(marks)

    # Reveal handoff

    def claim_revealed_fetch(self) -> bool:
        """True exactly once per reveal: the caller must fetch all marks."""
        if self.phase != SessionPhase.REVEALED_ACTIVE or self._revealed_fetch_claimed:
            return False
        self._revealed_fetch_claimed = True
        return True

    def release_revealed_fetch(self) -> None:
        if not self.revealed_marks_loaded:
            self._revealed_fetch_claimed = False

    def load_revealed_marks(self, marks: Iterable[Mark]) -> None:
        self._revealed_marks = list(marks)
        self.revealed_marks_loaded = True
        self._revealed_fetch_claimed = True

    def render_set(self) -> List[Mark]:
        """Marks to draw now: server-known marks first, then provisional ones."""
        if self.phase == SessionPhase.REVEALED_ACTIVE:
            seen = {mark.identity() for mark in self._revealed_marks}
            extra = [mark for mark in self._confirmed if mark.identity() not in seen]
            return self._revealed_marks + extra + self.pending
        if self.phase == SessionPhase.BLIND_ACTIVE:
            return list(self._confirmed) + self.pending
        return []
