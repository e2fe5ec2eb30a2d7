import logging

from fastapi import APIRouter, Depends, Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings, settings as default_settings
from backend.app.db.session import get_session
from backend.app.services.entry_service import list_entries
from backend.app.services.errors import Unauthorized
from backend.app.services.round_service import (
    ROUND_HISTORY_CAP,
    draw_winner,
    get_current_round,
    list_rounds,
)
from backend.app.web.auth import get_settings, verify_admin_secret
from backend.app.web.schemas import DrawRequest, entry_detail, round_record

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

admin_rate_limit = default_settings.admin_rate_limit

router = APIRouter(prefix="/admin", tags=["admin"])


def configure_admin_rate_limit(value: str) -> None:
    global admin_rate_limit
    admin_rate_limit = value


def current_admin_rate_limit() -> str:
    return admin_rate_limit


def client_ip(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for", "")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    return get_remote_address(request)


@router.post("/draw")
@limiter.limit(current_admin_rate_limit)
async def admin_draw(
    request: Request,
    payload: DrawRequest | None = None,
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
):
    payload = payload or DrawRequest()
    try:
        verify_admin_secret(settings, payload.secret)
    except Unauthorized:
        logger.warning("Rejected draw request from %s", client_ip(request))
        raise

    result = await draw_winner(
        session,
        prize_share_bps=settings.prize_share_bps,
        expected_round=payload.round,
    )
    await session.commit()

    return {
        "success": True,
        "round": result.round_number,
        "winner": {
            "code": result.winner_code,
            "address": result.winner_address,
        },
        "totalEntries": result.total_entries,
        "totalCollectedSats": result.total_sats,
        "prizeSats": result.prize_sats,
        "profitSats": result.profit_sats,
        "prizePoolWallet": settings.prize_pool_wallet,
        "profitWallet": settings.profit_wallet,
        "instructions": {
            "prize": f"Send {result.prize_sats} sats to winner: {result.winner_address}",
            "profit": (
                f"Transfer {result.profit_sats} sats from prize pool to profit wallet"
            ),
        },
        "nextRound": result.next_round,
    }


@router.get("/rounds")
async def admin_rounds(session: AsyncSession = Depends(get_session)):
    rounds = await list_rounds(session, limit=ROUND_HISTORY_CAP)
    return {"rounds": [round_record(round_) for round_ in rounds]}


@router.get("/entries")
@limiter.limit(current_admin_rate_limit)
async def admin_entries(
    request: Request,
    secret: str = "",
    settings: Settings = Depends(get_settings),
    session: AsyncSession = Depends(get_session),
):
    verify_admin_secret(settings, secret)
    current_round = await get_current_round(session)
    entries = await list_entries(session, round_number=current_round)
    return {
        "round": current_round,
        "entries": [entry_detail(entry) for entry in entries],
        "count": len(entries),
    }
