"""Participant model: one anonymous canvas session and its ledger."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import false, func

from database import Base


class Participant(Base):
    """Ledger row owning free quota, reveal state and credit balance."""

    __tablename__ = "participants"
    __table_args__ = (
        CheckConstraint("free_quota_consumed >= 0", name="ck_participants_free_quota_non_negative"),
        CheckConstraint("credit_balance >= 0", name="ck_participants_credit_balance_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    color_label = Column(String, nullable=False, index=True)
    color_value = Column(String, nullable=False, unique=True)
    free_quota_consumed = Column(Integer, nullable=False, default=0, server_default="0")
    revealed = Column(Boolean, nullable=False, default=False, server_default=false())
    credit_balance = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    placements = relationship("Placement", back_populates="participant", cascade="all, delete-orphan")
    credit_grants = relationship("CreditGrant", back_populates="participant", cascade="all, delete-orphan")
