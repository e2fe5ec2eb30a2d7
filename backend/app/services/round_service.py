import logging
import secrets
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.time import utcnow
from backend.app.models.entry import Entry
from backend.app.models.enums import RoundStatus
from backend.app.models.round import Round
from backend.app.services.errors import (
    AlreadyDrawnError,
    NoActiveRoundError,
    NoEntriesError,
)
from backend.app.services.pricing_service import prize_share

logger = logging.getLogger(__name__)

INITIAL_ROUND = 1
ROUND_HISTORY_CAP = 20
ACTIVE_ROUND_ATTEMPTS = 3


@dataclass(frozen=True)
class DrawResult:
    round_number: int
    winner_code: str
    winner_address: str
    total_entries: int
    total_sats: int
    prize_sats: int
    profit_sats: int
    next_round: int


def _active_round_query():
    return (
        select(Round)
        .where(Round.status == RoundStatus.active)
        .order_by(Round.round_number.desc())
        .limit(1)
    )


async def get_active_round(session: AsyncSession) -> Round | None:
    result = await session.execute(_active_round_query())
    return result.scalar_one_or_none()


async def get_current_round(session: AsyncSession) -> int:
    round_ = await get_active_round(session)
    if round_ is None:
        return INITIAL_ROUND
    return round_.round_number


async def ensure_initial_round(session: AsyncSession) -> Round | None:
    """Create round 1 when the rounds table is empty."""
    existing = await session.execute(select(Round.id).limit(1))
    if existing.first() is not None:
        return None
    round_ = Round(
        round_number=INITIAL_ROUND,
        status=RoundStatus.active,
        created_at=utcnow(),
    )
    session.add(round_)
    await session.flush()
    logger.info("Opened initial round %s", INITIAL_ROUND)
    return round_


async def lock_active_round(session: AsyncSession) -> Round:
    """Return the active round with a shared row lock held until the
    transaction ends.

    Draws take an exclusive lock on the same row, so an entry can never land
    in a round that a concurrent draw is closing. An entry that waited on a
    draw finds the closed round gone and retries against the next one.
    """
    query = (
        _active_round_query()
        .with_for_update(read=True)
        .execution_options(populate_existing=True)
    )
    for _ in range(ACTIVE_ROUND_ATTEMPTS):
        round_ = (await session.execute(query)).scalar_one_or_none()
        if round_ is not None:
            return round_

    await bootstrap_initial_round(session)
    round_ = (await session.execute(query)).scalar_one_or_none()
    if round_ is None:
        raise NoActiveRoundError("No active round available")
    return round_


async def bootstrap_initial_round(session: AsyncSession) -> None:
    """Open round 1 inside a savepoint so a concurrent bootstrap does not
    abort the caller's transaction."""
    try:
        async with session.begin_nested():
            await ensure_initial_round(session)
    except IntegrityError:
        logger.info("Initial round was opened concurrently")


async def lock_round_for_draw(session: AsyncSession, *, round_number: int) -> Round:
    """Lock a round by number for drawing.

    The row is looked up by number rather than by status, so a draw that
    waited on the lock sees the round its rival just completed.
    """
    result = await session.execute(
        select(Round)
        .where(Round.round_number == round_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    round_ = result.scalar_one_or_none()
    if round_ is None or round_.status != RoundStatus.active:
        raise AlreadyDrawnError(f"Round {round_number} is not active")
    return round_


def pick_winner_index(count: int, randbelow: Callable[[int], int] = secrets.randbelow) -> int:
    if count < 1:
        raise ValueError("Cannot pick a winner from an empty round")
    index = randbelow(count)
    if not 0 <= index < count:
        raise ValueError(f"Random index {index} outside [0, {count})")
    return index


async def load_round_entries(session: AsyncSession, *, round_number: int) -> list[Entry]:
    result = await session.execute(
        select(Entry).where(Entry.round == round_number).order_by(Entry.id)
    )
    return list(result.scalars().all())


async def close_round(
    session: AsyncSession,
    *,
    round_number: int,
    winner: Entry,
    prize_sats: int,
    total_entries: int,
) -> None:
    result = await session.execute(
        update(Round)
        .where(Round.round_number == round_number, Round.status == RoundStatus.active)
        .values(
            status=RoundStatus.completed,
            winner_code=winner.code,
            winner_address=winner.wallet_address,
            prize_amount_sats=prize_sats,
            total_entries=total_entries,
            drawn_at=utcnow(),
        )
    )
    if result.rowcount != 1:
        raise AlreadyDrawnError(f"Round {round_number} has already been drawn")


async def open_round(session: AsyncSession, *, round_number: int) -> Round:
    round_ = Round(
        round_number=round_number,
        status=RoundStatus.active,
        created_at=utcnow(),
    )
    session.add(round_)
    await session.flush()
    return round_


async def draw_winner(
    session: AsyncSession,
    *,
    prize_share_bps: int,
    expected_round: int | None = None,
    randbelow: Callable[[int], int] = secrets.randbelow,
) -> DrawResult:
    """Pick a winner for the active round and open the next one.

    Runs inside the caller's transaction and leaves the commit to the caller.
    On any error the round stays active and no writes are pending.
    """
    if expected_round is None:
        active = await get_active_round(session)
        if active is None:
            raise NoEntriesError("No entries in current round")
        round_number = active.round_number
    else:
        round_number = expected_round
    await lock_round_for_draw(session, round_number=round_number)

    entries = await load_round_entries(session, round_number=round_number)
    if not entries:
        raise NoEntriesError("No entries in current round")

    winner = entries[pick_winner_index(len(entries), randbelow)]
    total_sats = sum(entry.amount_sats for entry in entries)
    prize_sats = prize_share(total_sats, prize_share_bps)
    profit_sats = total_sats - prize_sats

    await close_round(
        session,
        round_number=round_number,
        winner=winner,
        prize_sats=prize_sats,
        total_entries=len(entries),
    )
    winner.is_winner = True
    await open_round(session, round_number=round_number + 1)

    logger.info(
        "Round %s winner: %s - %s (%s entries, prize %s sats)",
        round_number,
        winner.code,
        winner.wallet_address,
        len(entries),
        prize_sats,
    )
    return DrawResult(
        round_number=round_number,
        winner_code=winner.code,
        winner_address=winner.wallet_address,
        total_entries=len(entries),
        total_sats=total_sats,
        prize_sats=prize_sats,
        profit_sats=profit_sats,
        next_round=round_number + 1,
    )


async def list_rounds(session: AsyncSession, *, limit: int = ROUND_HISTORY_CAP) -> list[Round]:
    limit = max(1, min(limit, ROUND_HISTORY_CAP))
    result = await session.execute(
        select(Round).order_by(Round.round_number.desc()).limit(limit)
    )
    return list(result.scalars().all())
