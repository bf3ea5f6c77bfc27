"""Settlement service FastAPI application.

`create_app` wires the registry, ledger gateway, channel hub, terminator,
notifier and liveness monitor from settings (any of the stateful
collaborators can be injected), attaches CORS and tracing middleware, maps
`SettlementError` to JSON responses, and runs the liveness sweep for the
lifetime of the app.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adapters.evm_ledger import EvmLedgerClient, load_abi
from core.config.config import Settings, get_settings
from orchestration.service_mesh_hooks import PollConfig
from orchestration.ws_hub import ChannelHub
from packages.common.tracing import trace_middleware
from storage.redis_cache import ReadThroughCache
from storage.session_registry import SessionRegistry

from .errors import SettlementError
from .gateway import LedgerGateway
from .lifecycle import SessionLifecycle
from .notifier import NotificationFanout
from .routes import router as settlement_router
from .terminator import SessionTerminator

log = logging.getLogger("tutorlink.settlement.app")


def build_gateway(settings: Settings, redis_client: Optional[aioredis.Redis]) -> LedgerGateway:
    """Ledger gateway from settings; without a configured contract it runs fallback-only."""
    cfg = settings.ledger
    client = None
    if cfg.configured:
        key = cfg.private_key.get_secret_value() if cfg.private_key else None
        client = EvmLedgerClient(
            cfg.rpc_url,
            cfg.contract_address,
            abi=load_abi(cfg.abi_path),
            private_key=key,
            confirmation_timeout=cfg.confirmation_timeout_seconds,
        )
        log.info("ledger contract %s via %s (signer=%s)", cfg.contract_address, cfg.rpc_url, client.can_write)
    else:
        log.warning("ledger contract not configured; fallback=%s", cfg.allow_fallback)
    cache = None
    if redis_client is not None:
        cache = ReadThroughCache(redis_client, ttl_sec=settings.redis.registration_ttl_seconds)
    return LedgerGateway(
        client,
        cache,
        allow_fallback=cfg.allow_fallback,
        token_decimals=cfg.token_decimals,
        registration_ttl=settings.redis.registration_ttl_seconds,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[SessionRegistry] = None,
    gateway: Optional[LedgerGateway] = None,
    hub: Optional[ChannelHub] = None,
) -> FastAPI:
    settings = settings or get_settings()

    redis_client = None
    if registry is None or gateway is None:
        redis_client = aioredis.from_url(settings.redis.url, decode_responses=True)
    if registry is None:
        registry = SessionRegistry(redis_client, ttl_sec=settings.redis.session_ttl_seconds)
    if gateway is None:
        gateway = build_gateway(settings, redis_client)
    hub = hub or ChannelHub()

    terminator = SessionTerminator(
        registry,
        gateway,
        currency_code=settings.ledger.currency_code,
        verify=PollConfig(
            attempts=settings.ledger.verify_attempts,
            interval=settings.ledger.verify_interval_seconds,
        ),
    )
    lifecycle = SessionLifecycle(
        terminator,
        NotificationFanout(hub),
        grace_period=settings.liveness.grace_period_seconds,
        sweep_interval=settings.liveness.sweep_interval_seconds,
        stale_after=settings.liveness.stale_after_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        lifecycle.start()
        log.info("%s started (env=%s, ledger=%s)", settings.service_name, settings.env, gateway.status()["mode"])
        try:
            yield
        finally:
            await lifecycle.stop()
            await hub.close()
            await gateway.close()
            await registry.close()
            log.info("%s stopped", settings.service_name)

    app = FastAPI(title="Tutorlink Settlement Service", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.hub = hub
    app.state.lifecycle = lifecycle

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )
    app.middleware("http")(trace_middleware)

    @app.exception_handler(SettlementError)
    async def _settlement_error(request: Request, exc: SettlementError) -> JSONResponse:
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    app.include_router(settlement_router)
    return app
