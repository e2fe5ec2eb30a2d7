import logging
import secrets
import time
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.time import utcnow
from backend.app.models.entry import Entry
from backend.app.services.errors import DuplicateCodeError
from backend.app.services.round_service import lock_active_round

logger = logging.getLogger(__name__)

CODE_PREFIX = "BTC"
BASE36_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("Only non-negative integers can be encoded")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_entry_code() -> str:
    timestamp = to_base36(time.time_ns() // 1_000_000)
    random_part = secrets.token_hex(4).upper()
    return f"{CODE_PREFIX}-{timestamp}-{random_part}"


async def record_entry(
    session: AsyncSession,
    *,
    wallet_address: str,
    amount_sats: int,
    price_used: Decimal,
    code: str | None = None,
) -> Entry:
    current = await lock_active_round(session)
    entry = Entry(
        code=code or generate_entry_code(),
        wallet_address=wallet_address,
        amount_sats=amount_sats,
        btc_price_usd=price_used,
        round=current.round_number,
        created_at=utcnow(),
        is_winner=False,
    )
    session.add(entry)
    try:
        await session.flush()
    except IntegrityError as exc:
        raise DuplicateCodeError(f"Entry code {entry.code} already exists") from exc
    logger.info(
        "Raffle entry: %s by %s for %s sats (round %s)",
        entry.code,
        wallet_address,
        amount_sats,
        entry.round,
    )
    return entry


async def list_entries(
    session: AsyncSession, *, round_number: int, wallet_address: str | None = None
) -> list[Entry]:
    query = (
        select(Entry)
        .where(Entry.round == round_number)
        .order_by(Entry.created_at.desc(), Entry.id.desc())
    )
    if wallet_address is not None:
        query = query.where(Entry.wallet_address == wallet_address)
    result = await session.execute(query)
    return list(result.scalars().all())


async def round_totals(session: AsyncSession, *, round_number: int) -> tuple[int, int]:
    result = await session.execute(
        select(func.count(Entry.id), func.coalesce(func.sum(Entry.amount_sats), 0)).where(
            Entry.round == round_number
        )
    )
    count, total_sats = result.one()
    return int(count), int(total_sats)
