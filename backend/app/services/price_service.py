import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from backend.app.services.errors import PriceFeedUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_FALLBACK_PRICE = Decimal("100000")


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    observed_at: float


def parse_btc_price(payload) -> Decimal:
    try:
        raw = payload["bitcoin"]["usd"]
        price = Decimal(str(raw))
    except (KeyError, TypeError, InvalidOperation) as exc:
        raise PriceFeedUnavailable(f"Malformed price payload: {payload!r}") from exc
    if not price.is_finite() or price <= 0:
        raise PriceFeedUnavailable(f"Invalid BTC price: {price}")
    return price


class PriceOracle:
    """Cached USD-per-BTC reference price.

    The cached quote is a single immutable slot that is swapped as a whole on
    refresh. Lookups never raise: a failed refresh serves the last good price,
    or ``fallback_price`` when nothing was ever fetched.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        fallback_price: Decimal = DEFAULT_FALLBACK_PRICE,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._url = url
        self._ttl_seconds = ttl_seconds
        self._fallback_price = fallback_price
        self._timeout = httpx.Timeout(timeout_seconds)
        self._clock = clock
        self._quote: PriceQuote | None = None

    @property
    def cached_quote(self) -> PriceQuote | None:
        return self._quote

    def _is_fresh(self, quote: PriceQuote | None, now: float) -> bool:
        return quote is not None and now - quote.observed_at < self._ttl_seconds

    async def _fetch(self) -> Decimal:
        try:
            response = await self._client.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PriceFeedUnavailable(f"Price feed request failed: {exc}") from exc
        return parse_btc_price(payload)

    async def get_quote(self) -> PriceQuote:
        quote = self._quote
        if self._is_fresh(quote, self._clock()):
            return quote

        try:
            price = await self._fetch()
        except PriceFeedUnavailable as exc:
            if quote is not None:
                logger.warning("Failed to fetch BTC price, serving cached $%s: %s", quote.price, exc)
                return quote
            logger.warning(
                "Failed to fetch BTC price, serving fallback $%s: %s", self._fallback_price, exc
            )
            return PriceQuote(price=self._fallback_price, observed_at=self._clock())

        fresh = PriceQuote(price=price, observed_at=self._clock())
        self._quote = fresh
        logger.info("BTC price updated: $%s", price)
        return fresh

    async def get_reference_price(self) -> Decimal:
        quote = await self.get_quote()
        return quote.price
