import asyncio
from collections import Counter
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from backend.app.core.time import utcnow
from backend.app.models.entry import Entry
from backend.app.models.enums import RoundStatus
from backend.app.models.round import Round
from backend.app.services import round_service
from backend.app.services.entry_service import record_entry
from backend.app.services.errors import AlreadyDrawnError, NoEntriesError
from backend.app.services.round_service import (
    close_round,
    draw_winner,
    ensure_initial_round,
    get_current_round,
    list_rounds,
    pick_winner_index,
)


async def add_entries(session, amounts, wallet="SP1ALICE"):
    entries = []
    for amount in amounts:
        entries.append(
            await record_entry(
                session, wallet_address=wallet, amount_sats=amount, price_used=Decimal("100000")
            )
        )
    await session.commit()
    return entries


async def active_rounds(session) -> list[int]:
    result = await session.execute(
        select(Round.round_number).where(Round.status == RoundStatus.active)
    )
    return list(result.scalars().all())


async def winners_in_round(session, round_number: int) -> int:
    result = await session.execute(
        select(func.count(Entry.id)).where(Entry.round == round_number, Entry.is_winner.is_(True))
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_current_round_defaults_to_one(session):
    assert await get_current_round(session) == 1


@pytest.mark.asyncio
async def test_ensure_initial_round_is_idempotent(session):
    created = await ensure_initial_round(session)
    await session.commit()
    assert created.round_number == 1
    assert await ensure_initial_round(session) is None
    assert await active_rounds(session) == [1]


@pytest.mark.asyncio
async def test_draw_three_equal_entries(session):
    await ensure_initial_round(session)
    await add_entries(session, [1000, 1000, 1000])

    result = await draw_winner(session, prize_share_bps=9500)
    await session.commit()

    assert result.round_number == 1
    assert result.total_entries == 3
    assert result.total_sats == 3000
    assert result.prize_sats == 2850
    assert result.profit_sats == 150
    assert result.next_round == 2

    rounds = {round_.round_number: round_ for round_ in await list_rounds(session)}
    assert rounds[1].status == RoundStatus.completed
    assert rounds[1].total_entries == 3
    assert rounds[1].prize_amount_sats == 2850
    assert rounds[1].winner_code == result.winner_code
    assert rounds[1].drawn_at is not None
    assert rounds[2].status == RoundStatus.active
    assert await active_rounds(session) == [2]
    assert await get_current_round(session) == 2
    assert await winners_in_round(session, 1) == 1


@pytest.mark.asyncio
async def test_draw_without_entries_changes_nothing(session_factory):
    async with session_factory() as session:
        await ensure_initial_round(session)
        await session.commit()

    async with session_factory() as session:
        with pytest.raises(NoEntriesError):
            await draw_winner(session, prize_share_bps=9500)

    async with session_factory() as session:
        rounds = await list_rounds(session)
        assert [(r.round_number, r.status) for r in rounds] == [(1, RoundStatus.active)]


@pytest.mark.asyncio
async def test_single_entry_always_wins(session):
    await ensure_initial_round(session)
    [entry] = await add_entries(session, [1234])

    result = await draw_winner(session, prize_share_bps=9500)
    await session.commit()

    assert result.winner_code == entry.code
    assert result.prize_sats == 1172
    assert result.profit_sats == 62


@pytest.mark.asyncio
async def test_draw_uses_random_index(session):
    await ensure_initial_round(session)
    await add_entries(session, [1000], wallet="SP1ALICE")
    await add_entries(session, [1000], wallet="SP1BOB")
    await add_entries(session, [1000], wallet="SP1CAROL")

    result = await draw_winner(session, prize_share_bps=9500, randbelow=lambda n: 1)
    await session.commit()

    assert result.winner_address == "SP1BOB"


@pytest.mark.asyncio
async def test_stale_draw_request_is_rejected(session):
    await ensure_initial_round(session)
    await add_entries(session, [1000, 2000])

    await draw_winner(session, prize_share_bps=9500, expected_round=1)
    await session.commit()

    with pytest.raises(AlreadyDrawnError):
        await draw_winner(session, prize_share_bps=9500, expected_round=1)
    await session.rollback()

    assert await winners_in_round(session, 1) == 1
    assert await active_rounds(session) == [2]


async def draw_twice_at_once(factory, monkeypatch):
    """Run two draws whose sessions both resolve the active round before
    either of them locks it."""
    resolved = []
    both_resolved = asyncio.Event()
    real_get_active_round = round_service.get_active_round

    async def resolve_together(session):
        round_ = await real_get_active_round(session)
        resolved.append(round_.round_number)
        if len(resolved) == 2:
            both_resolved.set()
        await both_resolved.wait()
        return round_

    monkeypatch.setattr(round_service, "get_active_round", resolve_together)

    async def draw():
        async with factory() as session:
            try:
                result = await draw_winner(session, prize_share_bps=9500)
            except AlreadyDrawnError as exc:
                return exc
            await session.commit()
            return result

    outcomes = await asyncio.gather(draw(), draw())
    assert resolved == [1, 1]
    return outcomes


async def assert_single_draw(factory, outcomes):
    results = [outcome for outcome in outcomes if not isinstance(outcome, AlreadyDrawnError)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, AlreadyDrawnError)]
    assert len(results) == 1
    assert len(conflicts) == 1
    assert results[0].round_number == 1
    assert results[0].total_entries == 2

    async with factory() as session:
        assert await winners_in_round(session, 1) == 1
        assert await active_rounds(session) == [2]


@pytest.mark.asyncio
async def test_concurrent_draws_complete_round_once(session_factory, monkeypatch):
    async with session_factory() as session:
        await ensure_initial_round(session)
        await add_entries(session, [1000, 2000])

    outcomes = await draw_twice_at_once(session_factory, monkeypatch)

    await assert_single_draw(session_factory, outcomes)


@pytest.mark.asyncio
async def test_concurrent_draws_on_postgres(postgres_session_factory, monkeypatch):
    async with postgres_session_factory() as session:
        await add_entries(session, [1000, 2000])

    outcomes = await draw_twice_at_once(postgres_session_factory, monkeypatch)

    await assert_single_draw(postgres_session_factory, outcomes)


@pytest.mark.asyncio
async def test_draw_of_unknown_round_is_rejected(session):
    await ensure_initial_round(session)
    await add_entries(session, [1000])

    with pytest.raises(AlreadyDrawnError):
        await draw_winner(session, prize_share_bps=9500, expected_round=7)
    await session.rollback()

    assert await active_rounds(session) == [1]


@pytest.mark.asyncio
async def test_draw_before_any_round_exists(session):
    with pytest.raises(NoEntriesError):
        await draw_winner(session, prize_share_bps=9500)


@pytest.mark.asyncio
async def test_close_round_only_once(session):
    await ensure_initial_round(session)
    [entry] = await add_entries(session, [1000])

    await close_round(session, round_number=1, winner=entry, prize_sats=950, total_entries=1)
    await session.commit()

    with pytest.raises(AlreadyDrawnError):
        await close_round(
            session, round_number=1, winner=entry, prize_sats=950, total_entries=1
        )


@pytest.mark.asyncio
async def test_only_one_active_round_can_exist(session):
    await ensure_initial_round(session)
    await session.commit()

    session.add(Round(round_number=2, status=RoundStatus.active, created_at=utcnow()))
    with pytest.raises(IntegrityError):
        await session.flush()


@pytest.mark.asyncio
async def test_rounds_advance_without_gaps(session):
    await ensure_initial_round(session)
    for expected in range(1, 5):
        await add_entries(session, [1000, 500])
        result = await draw_winner(session, prize_share_bps=9500)
        await session.commit()
        assert result.round_number == expected
        assert result.prize_sats + result.profit_sats == 1500

    numbers = [round_.round_number for round_ in await list_rounds(session)]
    assert numbers == [5, 4, 3, 2, 1]
    assert await active_rounds(session) == [5]


@pytest.mark.asyncio
async def test_round_history_is_capped(session):
    now = utcnow()
    for number in range(1, 25):
        session.add(Round(round_number=number, status=RoundStatus.completed, created_at=now))
    session.add(Round(round_number=25, status=RoundStatus.active, created_at=now))
    await session.commit()

    history = await list_rounds(session, limit=100)

    assert len(history) == 20
    assert history[0].round_number == 25
    assert history[-1].round_number == 6
    assert len(await list_rounds(session, limit=3)) == 3


def test_pick_winner_index_bounds():
    assert pick_winner_index(1) == 0
    with pytest.raises(ValueError):
        pick_winner_index(0)
    with pytest.raises(ValueError):
        pick_winner_index(3, randbelow=lambda n: n)


def test_pick_winner_index_is_uniform():
    count = 6
    draws = 60_000
    frequencies = Counter(pick_winner_index(count) for _ in range(draws))

    assert set(frequencies) == set(range(count))
    for index in range(count):
        assert abs(frequencies[index] / draws - 1 / count) < 0.01
