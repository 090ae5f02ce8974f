"""CreditGrant model: append-only record of purchased credits."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class CreditGrant(Base):
    """Immutable credit grant, deduplicated by billing reference."""

    __tablename__ = "credit_grants"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_credit_grants_amount_positive"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    participant_id = Column(
        String,
        ForeignKey("participants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=True)
    provider = Column(String, nullable=False, default="manual")
    billing_reference = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    participant = relationship("Participant", back_populates="credit_grants")
