"""init raffle tables

Revision ID: 0001_init
Revises:
Create Date: 2026-02-03 00:00:00.000000

"""
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    round_status = postgresql.ENUM(
        "active", "completed", name="round_status", create_type=False
    )
    round_status.create(op.get_bind(), checkfirst=True)

    rounds = op.create_table(
        "rounds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("round_number", sa.Integer(), nullable=False, unique=True),
        sa.Column("status", round_status, nullable=False),
        sa.Column("winner_code", sa.Text(), nullable=True),
        sa.Column("winner_address", sa.Text(), nullable=True),
        sa.Column("prize_amount_sats", sa.BigInteger(), nullable=True),
        sa.Column("total_entries", sa.Integer(), nullable=True),
        sa.Column("drawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "uq_rounds_active",
        "rounds",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(length=64), nullable=False),
        sa.Column("wallet_address", sa.Text(), nullable=False),
        sa.Column("amount_sats", sa.BigInteger(), nullable=False),
        sa.Column("btc_price_usd", sa.Numeric(20, 8), nullable=False),
        sa.Column(
            "round", sa.Integer(), sa.ForeignKey("rounds.round_number"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_winner", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.UniqueConstraint("code", name="uq_entries_code"),
    )
    op.create_index("ix_entries_round", "entries", ["round"], unique=False)
    op.create_index("ix_entries_wallet_address", "entries", ["wallet_address"], unique=False)

    op.bulk_insert(
        rounds,
        [
            {
                "round_number": 1,
                "status": "active",
                "created_at": datetime.now(timezone.utc),
            }
        ],
    )


def downgrade() -> None:
    op.drop_index("ix_entries_wallet_address", table_name="entries")
    op.drop_index("ix_entries_round", table_name="entries")
    op.drop_table("entries")
    op.drop_index("uq_rounds_active", table_name="rounds")
    op.drop_table("rounds")

    op.execute("DROP TYPE IF EXISTS round_status")
