"""participants, placements and credit grants

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261018_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "participants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("color_label", sa.String(), nullable=False),
        sa.Column("color_value", sa.String(), nullable=False),
        sa.Column("free_quota_consumed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("revealed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("credit_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("free_quota_consumed >= 0", name="ck_participants_free_quota_non_negative"),
        sa.CheckConstraint("credit_balance >= 0", name="ck_participants_credit_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("color_value"),
    )
    op.create_index("ix_participants_color_label", "participants", ["color_label"], unique=False)

    op.create_table(
        "placements",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("participant_id", sa.String(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.Column("color_value", sa.String(), nullable=False),
        sa.Column("phase", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("x >= 0 AND x <= 1 AND y >= 0 AND y <= 1", name="ck_placements_unit_coordinates"),
        sa.CheckConstraint("phase IN ('free', 'paid')", name="ck_placements_phase"),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "participant_id",
            "idempotency_key",
            name="uq_placements_participant_idempotency_key",
        ),
    )
    op.create_index("ix_placements_participant_id", "placements", ["participant_id"], unique=False)
    op.create_index("ix_placements_created_at", "placements", ["created_at"], unique=False)
    op.create_index("ix_placements_participant_phase", "placements", ["participant_id", "phase"], unique=False)

    op.create_table(
        "credit_grants",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("participant_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=True),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("billing_reference", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
        sa.CheckConstraint("amount > 0", name="ck_credit_grants_amount_positive"),
        sa.ForeignKeyConstraint(["participant_id"], ["participants.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("billing_reference"),
    )
    op.create_index("ix_credit_grants_participant_id", "credit_grants", ["participant_id"], unique=False)
    op.create_index("ix_credit_grants_created_at", "credit_grants", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_credit_grants_created_at", table_name="credit_grants")
    op.drop_index("ix_credit_grants_participant_id", table_name="credit_grants")
    op.drop_table("credit_grants")
    op.drop_index("ix_placements_participant_phase", table_name="placements")
    op.drop_index("ix_placements_created_at", table_name="placements")
    op.drop_index("ix_placements_participant_id", table_name="placements")
    op.drop_table("placements")
    op.drop_index("ix_participants_color_label", table_name="participants")
    op.drop_table("participants")
