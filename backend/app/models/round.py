from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.db.base import Base
from backend.app.models.enums import RoundStatus


class Round(Base):
    __tablename__ = "rounds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    round_number: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    status: Mapped[RoundStatus] = mapped_column(
        Enum(RoundStatus, name="round_status"), nullable=False
    )
    winner_code: Mapped[str | None] = mapped_column(Text)
    winner_address: Mapped[str | None] = mapped_column(Text)
    prize_amount_sats: Mapped[int | None] = mapped_column(BigInteger)
    total_entries: Mapped[int | None] = mapped_column(Integer)
    drawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index(
    "uq_rounds_active",
    Round.status,
    unique=True,
    postgresql_where=text("status = 'active'"),
    sqlite_where=text("status = 'active'"),
)
