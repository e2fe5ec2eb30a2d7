import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import Settings, settings as default_settings
from backend.app.core.logging import setup_logging
from backend.app.db.session import SessionLocal
from backend.app.services.errors import PaymentNotSatisfied, ServiceError, StorageUnavailable
from backend.app.services.payment_service import PaymentGate
from backend.app.services.price_service import PriceOracle
from backend.app.services.pricing_service import PricingEngine
from backend.app.services.round_service import ensure_initial_round
from backend.app.web.auth import generate_admin_secret
from backend.app.web.raffle import router as raffle_router
from backend.app.web.routes import configure_admin_rate_limit, limiter, router as admin_router

logger = logging.getLogger(__name__)


def error_body(exc: ServiceError) -> dict:
    return {"error": str(exc), "kind": exc.kind}


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc)
    return JSONResponse(error_body(exc), status_code=exc.status_code)


async def payment_required_handler(request: Request, exc: PaymentNotSatisfied) -> JSONResponse:
    return JSONResponse({**exc.challenge, **error_body(exc)}, status_code=exc.status_code)


async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    unavailable = StorageUnavailable("Storage unavailable")
    return JSONResponse(error_body(unavailable), status_code=unavailable.status_code)


async def bootstrap_rounds(session_factory: async_sessionmaker[AsyncSession]) -> None:
    async with session_factory() as session:
        try:
            await ensure_initial_round(session)
            await session.commit()
        except IntegrityError:
            # Another worker opened round 1 first.
            await session.rollback()


def resolve_settings(settings: Settings) -> Settings:
    missing = settings.missing_required()
    if missing:
        raise RuntimeError(f"Missing required settings: {', '.join(missing)}")
    if settings.admin_secret:
        return settings
    generated = generate_admin_secret()
    logger.warning("ADMIN_SECRET not set; generated admin secret: %s", generated)
    return settings.model_copy(update={"admin_secret": generated})


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    price_oracle: PriceOracle | None = None,
    payment_gate: PaymentGate | None = None,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = resolve_settings(settings)
        async with httpx.AsyncClient() as http_client:
            oracle = price_oracle or PriceOracle(
                http_client,
                url=settings.price_feed_url,
                ttl_seconds=settings.price_cache_ttl_seconds,
                fallback_price=settings.fallback_btc_price_usd,
                timeout_seconds=settings.price_feed_timeout_seconds,
            )
            app.state.price_oracle = oracle
            app.state.pricing_engine = PricingEngine(oracle)
            app.state.payment_gate = payment_gate or PaymentGate(
                http_client,
                facilitator_url=settings.payment_facilitator_url,
                pay_to=settings.prize_pool_wallet,
                network=settings.payment_network,
                token_type=settings.payment_token_type,
                token_contract={
                    "address": settings.sbtc_contract_address,
                    "name": settings.sbtc_contract_name,
                },
                challenge_ttl_seconds=settings.payment_challenge_ttl_seconds,
                timeout_seconds=settings.payment_timeout_seconds,
            )
            await bootstrap_rounds(app.state.session_factory)
            logger.info(
                "%s started: prize pool %s, profit %s, entry $%s",
                settings.project_name,
                settings.prize_pool_wallet,
                settings.profit_wallet,
                settings.ticket_price_usd,
            )
            yield

    app = FastAPI(title=settings.project_name, version=settings.version, lifespan=lifespan)
    app.state.settings = settings
    app.state.session_factory = session_factory or SessionLocal
    app.state.limiter = limiter
    configure_admin_rate_limit(settings.admin_rate_limit)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(PaymentNotSatisfied, payment_required_handler)
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(SQLAlchemyError, storage_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(raffle_router)
    app.include_router(admin_router)
    return app


app = create_app()
