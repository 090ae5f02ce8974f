"""Placement model: one accepted mark on the shared canvas."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Float, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


PHASE_FREE = "free"
PHASE_PAID = "paid"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Placement(Base):
    """Append-only mark. Never updated once inserted."""

    __tablename__ = "placements"
    __table_args__ = (
        UniqueConstraint("participant_id", "idempotency_key", name="uq_placements_participant_idempotency_key"),
        CheckConstraint("x >= 0 AND x <= 1 AND y >= 0 AND y <= 1", name="ck_placements_unit_coordinates"),
        CheckConstraint("phase IN ('free', 'paid')", name="ck_placements_phase"),
        Index("ix_placements_participant_phase", "participant_id", "phase"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    participant_id = Column(
        String,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    x = Column(Float, nullable=False)
    y = Column(Float, nullable=False)
    color_value = Column(String, nullable=False)
    phase = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)

    participant = relationship("Participant", back_populates="placements")
