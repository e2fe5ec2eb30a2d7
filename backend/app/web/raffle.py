import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import Settings
from backend.app.db.session import get_session
from backend.app.services.entry_service import list_entries, record_entry, round_totals
from backend.app.services.errors import MissingWalletAddress, ServiceError
from backend.app.services.payment_service import PaymentGate
from backend.app.services.pricing_service import (
    BPS_DENOMINATOR,
    PricingEngine,
    prize_share,
    sats_to_usd,
)
from backend.app.services.round_service import get_current_round
from backend.app.web.auth import get_settings
from backend.app.web.dependencies import get_payment_gate, get_pricing_engine
from backend.app.web.schemas import entry_summary

logger = logging.getLogger(__name__)

WALLET_HEADER = "X-Stacks-Address"
ENTER_PATH = "/btc-raffle-enter"

router = APIRouter(tags=["raffle"])


def _split_label(share_bps: int) -> str:
    return f"{share_bps / 100:g}%"


@router.get("/")
async def service_info(
    settings: Settings = Depends(get_settings),
    pricing: PricingEngine = Depends(get_pricing_engine),
    session: AsyncSession = Depends(get_session),
):
    quote = await pricing.quote_entry_price(settings.ticket_price_usd)
    current_round = await get_current_round(session)
    total_entries, _ = await round_totals(session, round_number=current_round)
    return {
        "name": settings.project_name,
        "version": settings.version,
        "endpoints": {
            "/": "This info (free)",
            ENTER_PATH: f"Enter raffle for ${settings.ticket_price_usd} sBTC (x402)",
            "/raffle/status": "Current raffle status (free)",
            "/raffle/entries/:address": "Get entries for address (free)",
        },
        "entryPriceUSD": float(settings.ticket_price_usd),
        "entryPriceSats": quote.amount_sats,
        "btcPriceUSD": float(quote.price_used),
        "currentRound": current_round,
        "totalEntries": total_entries,
        "prizePoolSplit": _split_label(settings.prize_share_bps),
        "profitSplit": _split_label(BPS_DENOMINATOR - settings.prize_share_bps),
        "x402": True,
        "prizePoolWallet": settings.prize_pool_wallet,
        "tokenType": settings.payment_token_type,
        "network": settings.payment_network,
    }


@router.get("/raffle/status")
async def raffle_status(
    settings: Settings = Depends(get_settings),
    pricing: PricingEngine = Depends(get_pricing_engine),
    session: AsyncSession = Depends(get_session),
):
    quote = await pricing.quote_entry_price(settings.ticket_price_usd)
    current_round = await get_current_round(session)
    total_entries, total_sats = await round_totals(session, round_number=current_round)
    prize_pool_sats = prize_share(total_sats, settings.prize_share_bps)
    return {
        "currentRound": current_round,
        "totalEntries": total_entries,
        "ticketPriceUSD": float(settings.ticket_price_usd),
        "ticketPriceSats": quote.amount_sats,
        "btcPriceUSD": float(quote.price_used),
        "prizePoolSats": prize_pool_sats,
        "prizePoolUSD": float(sats_to_usd(prize_pool_sats, quote.price_used)),
        "status": "active",
    }


@router.get("/raffle/entries/{address}")
async def raffle_entries(address: str, session: AsyncSession = Depends(get_session)):
    current_round = await get_current_round(session)
    entries = await list_entries(session, round_number=current_round, wallet_address=address)
    return {
        "address": address,
        "round": current_round,
        "entries": [entry_summary(entry) for entry in entries],
        "count": len(entries),
    }


@router.post(ENTER_PATH)
async def enter_raffle(
    request: Request,
    settings: Settings = Depends(get_settings),
    pricing: PricingEngine = Depends(get_pricing_engine),
    gate: PaymentGate = Depends(get_payment_gate),
    session: AsyncSession = Depends(get_session),
):
    wallet_address = (request.headers.get(WALLET_HEADER) or "").strip()
    if not wallet_address:
        raise MissingWalletAddress(f"Wallet address required ({WALLET_HEADER} header)")

    # One quote per request: the gate collects and the ledger stamps the same price.
    quote = await pricing.quote_entry_price(settings.ticket_price_usd)
    requirement = gate.build_requirement(amount_sats=quote.amount_sats, resource=ENTER_PATH)
    receipt = await gate.settle(request, requirement)

    try:
        entry = await record_entry(
            session,
            wallet_address=wallet_address,
            amount_sats=quote.amount_sats,
            price_used=quote.price_used,
        )
        await session.commit()
    except (ServiceError, SQLAlchemyError):
        logger.error(
            "Settled payment %s from %s (%s sats) was not recorded as an entry",
            receipt.txid,
            wallet_address,
            quote.amount_sats,
        )
        raise

    return {
        "success": True,
        "code": entry.code,
        "message": "Raffle entry confirmed!",
        "walletAddress": wallet_address,
        "amountPaidSats": quote.amount_sats,
        "amountPaidUSD": float(quote.face_value_usd),
        "btcPriceUSD": float(quote.price_used),
        "round": entry.round,
        "prizePoolContribution": prize_share(quote.amount_sats, settings.prize_share_bps),
    }


@router.get("/lottery/status", include_in_schema=False)
async def lottery_status_alias():
    return RedirectResponse(url="/raffle/status", status_code=307)


@router.get("/lottery/entries/{address}", include_in_schema=False)
async def lottery_entries_alias(address: str):
    return RedirectResponse(url=f"/raffle/entries/{address}", status_code=307)


@router.post("/btc-lottery-buy", include_in_schema=False)
async def lottery_buy_alias():
    return RedirectResponse(url=ENTER_PATH, status_code=307)
