import math
from dataclasses import dataclass
from decimal import Decimal
from fractions import Fraction

from backend.app.services.price_service import PriceOracle

SATS_PER_BTC = 100_000_000
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class TicketQuote:
    amount_sats: int
    price_used: Decimal
    face_value_usd: Decimal


def usd_to_sats(face_value_usd: Decimal, btc_price_usd: Decimal) -> int:
    """Convert a USD amount to sats, rounding up so the payer never underpays."""
    face_value_usd = Decimal(face_value_usd)
    btc_price_usd = Decimal(btc_price_usd)
    if face_value_usd <= 0:
        raise ValueError("Face value must be positive")
    if btc_price_usd <= 0:
        raise ValueError("BTC price must be positive")
    # Exact rational arithmetic, no intermediate rounding before the ceiling.
    return math.ceil(Fraction(face_value_usd) * SATS_PER_BTC / Fraction(btc_price_usd))


def sats_to_usd(amount_sats: int, btc_price_usd: Decimal) -> Decimal:
    return Decimal(amount_sats) / SATS_PER_BTC * Decimal(btc_price_usd)


def prize_share(total_sats: int, share_bps: int) -> int:
    if not 0 <= share_bps <= BPS_DENOMINATOR:
        raise ValueError("Prize share must be between 0 and 10000 basis points")
    return total_sats * share_bps // BPS_DENOMINATOR


class PricingEngine:
    def __init__(self, oracle: PriceOracle) -> None:
        self._oracle = oracle

    async def quote_entry_price(self, face_value_usd: Decimal) -> TicketQuote:
        price = await self._oracle.get_reference_price()
        return TicketQuote(
            amount_sats=usd_to_sats(face_value_usd, price),
            price_used=price,
            face_value_usd=Decimal(face_value_usd),
        )
