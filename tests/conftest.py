from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Iterator
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from alembic import command
from alembic.config import Config
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from backend.app.core.config import Settings
from backend.app.db.base import Base
from backend.app.db.session import build_engine, build_sessionmaker
from backend.app.main import create_app
from backend.app.models import Entry, Round
from backend.app.services.payment_service import PaymentGate
from backend.app.services.price_service import PriceOracle
from backend.app.services.round_service import ensure_initial_round
from backend.app.web.routes import limiter

PRIZE_WALLET = "SP2PRIZEPOOLWALLET000000000000000000000"
PROFIT_WALLET = "SP3PROFITWALLET00000000000000000000000"
ADMIN_SECRET = "test-admin-secret"
PRICE_URL = "https://prices.test/api/v3/simple/price?ids=bitcoin&vs_currencies=usd"
FACILITATOR_URL = "https://facilitator.test"


class MockUpstream:
    """Stand-in for the price feed and the x402 facilitator."""

    def __init__(self) -> None:
        self.btc_price: object = 50000
        self.price_status = 200
        self.price_error: Exception | None = None
        self.price_calls = 0
        self.settle_mode = "ok"
        self.settle_calls: list[dict] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/simple/price"):
            self.price_calls += 1
            if self.price_error is not None:
                raise self.price_error
            return httpx.Response(self.price_status, json={"bitcoin": {"usd": self.btc_price}})

        if request.url.path == "/settle":
            body = json.loads(request.content)
            self.settle_calls.append(body)
            requirements = body["paymentRequirements"]
            if self.settle_mode == "down":
                raise httpx.ConnectError("facilitator down", request=request)
            if self.settle_mode == "reject":
                return httpx.Response(400, json={"success": False, "error": "Invalid signature"})
            if self.settle_mode == "short":
                amount = int(requirements["maxAmountRequired"]) - 1
            else:
                amount = int(requirements["maxAmountRequired"])
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "txid": "0xabc123",
                    "payer": "SP1PAYER",
                    "amount": str(amount),
                    "payTo": requirements["payTo"],
                },
            )

        return httpx.Response(404)


@pytest.fixture
def upstream() -> MockUpstream:
    return MockUpstream()


@pytest.fixture
def http_client(upstream: MockUpstream) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        prize_pool_wallet=PRIZE_WALLET,
        profit_wallet=PROFIT_WALLET,
        admin_secret=ADMIN_SECRET,
        price_feed_url=PRICE_URL,
        payment_facilitator_url=FACILITATOR_URL,
        fallback_btc_price_usd=Decimal("100000"),
        log_level="WARNING",
    )


@pytest.fixture
def database_url(tmp_path) -> str:
    path = tmp_path / "raffle.db"
    sync_engine = create_engine(f"sqlite:///{path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture
def session_factory(database_url: str) -> async_sessionmaker[AsyncSession]:
    return build_sessionmaker(build_engine(database_url, poolclass=NullPool))


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def price_oracle(http_client: httpx.AsyncClient, settings: Settings) -> PriceOracle:
    return PriceOracle(
        http_client,
        url=settings.price_feed_url,
        ttl_seconds=settings.price_cache_ttl_seconds,
        fallback_price=settings.fallback_btc_price_usd,
    )


@pytest.fixture
def payment_gate(http_client: httpx.AsyncClient, settings: Settings) -> PaymentGate:
    return PaymentGate(
        http_client,
        facilitator_url=settings.payment_facilitator_url,
        pay_to=settings.prize_pool_wallet,
        network=settings.payment_network,
        token_type=settings.payment_token_type,
        token_contract={"address": settings.sbtc_contract_address, "name": "sbtc-token"},
    )


@pytest.fixture
def client(settings, session_factory, price_oracle, payment_gate) -> Iterator[TestClient]:
    limiter.reset()
    app = create_app(
        settings,
        session_factory=session_factory,
        price_oracle=price_oracle,
        payment_gate=payment_gate,
    )
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def postgres_url() -> str:
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set")
    command.upgrade(Config("db/alembic.ini"), "head")
    return database_url


async def reset_rounds(factory: async_sessionmaker[AsyncSession]) -> None:
    async with factory() as session:
        await session.execute(delete(Entry))
        await session.execute(delete(Round))
        await ensure_initial_round(session)
        await session.commit()


@pytest_asyncio.fixture
async def postgres_session_factory(postgres_url) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(postgres_url, poolclass=NullPool)
    factory = build_sessionmaker(engine)
    await reset_rounds(factory)
    yield factory
    await reset_rounds(factory)
    await engine.dispose()
