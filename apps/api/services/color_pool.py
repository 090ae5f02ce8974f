"""Finite color pools and participant creation."""

from __future__ import annotations

import logging
import re
from typing import Dict, List, Tuple
import uuid

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.participant import Participant
from services.ledger import SNAPSHOT_COLUMNS, LedgerError, LedgerSnapshot, dialect_insert, ledger_transaction


logger = logging.getLogger(__name__)

_HEX_PATTERN = re.compile(r"^#?([0-9a-fA-F]{6}|[0-9a-fA-F]{3})$")

_RAW_POOLS: Dict[str, Tuple[str, ...]] = {
    "blue": (
        "#0000ff", "#0000cd", "#00008b", "#191970", "#1e90ff", "#4169e1", "#4682b4",
        "#1e3a8a", "#1e40af", "#2563eb", "#3b82f6", "#60a5fa", "#1d4ed8", "#0ea5e9",
        "#0284c7", "#0369a1", "#075985", "#0c4a6e",
    ),
    "red": (
        "#ff0000", "#dc143c", "#b22222", "#8b0000", "#a52a2a", "#cd5c5c", "#ff1744",
        "#d32f2f", "#c62828", "#b71c1c", "#ff5252", "#d50000", "#dc2626", "#ef4444",
        "#f87171", "#991b1b", "#7f1d1d", "#b91c1c",
    ),
    "green": (
        "#008000", "#00ff00", "#228b22", "#32cd32", "#6b8e23", "#3cb371", "#2e8b57",
        "#16a34a", "#22c55e", "#4ade80", "#166534", "#15803d", "#14532d", "#059669",
        "#047857", "#065f46",
    ),
    "yellow": (
        "#ffff00", "#ffd700", "#ffeb3b", "#ffc107", "#eab308", "#facc15", "#fde047",
        "#ca8a04", "#a16207", "#854d0e", "#f0e68c", "#bdb76b",
    ),
    "purple": (
        "#800080", "#4b0082", "#9370db", "#8b008b", "#663399", "#7f00ff", "#9400d3",
        "#9932cc", "#ba55d3", "#9c27b0", "#7b1fa2", "#6a1b9a", "#4a148c", "#a855f7",
        "#9333ea", "#7e22ce", "#6b21a8", "#581c87",
    ),
    "orange": (
        "#ff8c00", "#ff7f50", "#ff6347", "#ff4500", "#ffa500", "#ff9800", "#ff6b00",
        "#ff7f00", "#ff6600", "#fb923c", "#f97316", "#ea580c", "#c2410c", "#9a3412",
        "#7c2d12",
    ),
    "pink": (
        "#ff69b4", "#ff1493", "#c71585", "#db7093", "#ffb6c1", "#ff80ab", "#f50057",
        "#ec4899", "#db2777", "#be185d", "#9d174d", "#f472b6",
    ),
    "teal": (
        "#008080", "#20b2aa", "#40e0d0", "#48d1cc", "#00ced1", "#14b8a6", "#0d9488",
        "#0f766e", "#115e59", "#134e4a", "#2dd4bf",
    ),
}


class InvalidColorError(LedgerError):
    def __init__(self, color_label: str):
        super().__init__(f"Unknown color: {color_label!r}. Choose one of {', '.join(allowed_colors())}.")
        self.color_label = color_label


class ColorPoolExhaustedError(LedgerError):
    def __init__(self, color_label: str):
        super().__init__("That color is full, pick another.")
        self.color_label = color_label


def normalize_label(value: str) -> str:
    return str(value or "").strip().lower()


def normalize_hex(value: str) -> str:
    """Return ``#rrggbb`` in lower case, or an empty string when invalid."""
    match = _HEX_PATTERN.match(str(value or "").strip())
    if not match:
        return ""
    digits = match.group(1).lower()
    if len(digits) == 3:
        digits = "".join(ch * 2 for ch in digits)
    return f"#{digits}"


def _build_pools() -> Dict[str, Tuple[str, ...]]:
    pools: Dict[str, Tuple[str, ...]] = {}
    claimed = set()
    for label, raw_values in _RAW_POOLS.items():
        values: List[str] = []
        for raw in raw_values:
            hex_value = normalize_hex(raw)
            # A value belongs to the first pool that lists it; uniqueness is global.
            if hex_value and hex_value not in claimed:
                claimed.add(hex_value)
                values.append(hex_value)
        pools[label] = tuple(values)
    return pools


COLOR_POOLS: Dict[str, Tuple[str, ...]] = _build_pools()


def allowed_colors() -> List[str]:
    return list(COLOR_POOLS.keys())


def pool_for(color_label: str) -> Tuple[str, ...]:
    label = normalize_label(color_label)
    pool = COLOR_POOLS.get(label)
    if not pool:
        raise InvalidColorError(color_label)
    return pool


async def create_participant(color_label: str, db: AsyncSession) -> LedgerSnapshot:
    """Create a participant holding the first unclaimed value of the label's pool.

    Values taken by a concurrent request are skipped via ``ON CONFLICT DO
    NOTHING`` on the unique ``color_value`` column.
    """
    label = normalize_label(color_label)
    pool = pool_for(label)
    participant_id = str(uuid.uuid4())

    async with ledger_transaction(db):
        taken_result = await db.execute(
            select(Participant.color_value).where(Participant.color_value.in_(pool))
        )
        taken = {row[0] for row in taken_result.all()}
        for candidate in pool:
            if candidate in taken:
                continue
            stmt = (
                dialect_insert(db, Participant)
                .values(
                    id=participant_id,
                    color_label=label,
                    color_value=candidate,
                    free_quota_consumed=0,
                    revealed=False,
                    credit_balance=0,
                )
                .on_conflict_do_nothing(index_elements=["color_value"])
                .returning(*SNAPSHOT_COLUMNS)
            )
            row = (await db.execute(stmt)).first()
            if row is not None:
                snapshot = LedgerSnapshot.from_row(row)
                logger.info(
                    "participant_created participant=%s color=%s value=%s",
                    snapshot.id,
                    label,
                    snapshot.color_value,
                )
                return snapshot

    logger.warning("Color pool exhausted for %s (%s values)", label, len(pool))
    raise ColorPoolExhaustedError(label)
