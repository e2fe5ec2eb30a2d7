from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db.base import Base


class Entry(Base):
    __tablename__ = "entries"
    __table_args__ = (UniqueConstraint("code", name="uq_entries_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)
    wallet_address: Mapped[str] = mapped_column(Text, nullable=False)
    amount_sats: Mapped[int] = mapped_column(BigInteger, nullable=False)
    btc_price_usd: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    round: Mapped[int] = mapped_column(
        Integer, ForeignKey("rounds.round_number"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


Index("ix_entries_round", Entry.round)
Index("ix_entries_wallet_address", Entry.wallet_address)
