import logging
from functools import partial
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tubegate.api.admin import router as admin_router
from tubegate.api.gateway import router as gateway_router
from tubegate.api.health import router as health_router
from tubegate.config import Settings, settings as default_settings
from tubegate.core.errors import install_exception_handlers
from tubegate.core.metadata import MetadataFetcher, YtDlpFetcher
from tubegate.core.request_id import RequestIdMiddleware
from tubegate.core.usage_logging import StoreOpener, UsageLogger, UsageLoggingMiddleware
from tubegate.deps.admin_auth import AdminGuard
from tubegate.deps.db import close_engine, open_key_store
from tubegate.logging import setup_logging

logger = logging.getLogger("tubegate")


def _cors_origins(settings: Settings) -> list[str]:
    if settings.cors_origins:
        return settings.cors_origins
    # deny cross-origin by default in production, allow everything locally
    return [] if settings.is_production else ["*"]


def create_app(
    settings: Settings | None = None,
    *,
    open_store: StoreOpener | None = None,
    metadata_fetcher: MetadataFetcher | None = None,
) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not app.state.admin_guard.configured:
            logger.error("admin_token_not_configured: admin endpoints will return 500")
        yield
        await close_engine()

    app = FastAPI(title="Tubegate", version="0.1.0", lifespan=lifespan)

    app.state.settings = settings
    app.state.admin_guard = AdminGuard(settings.admin_token)
    app.state.open_store = open_store or partial(open_key_store, settings.postgres_dsn)
    app.state.usage_logger = UsageLogger(app.state.open_store)
    app.state.metadata_fetcher = metadata_fetcher or YtDlpFetcher(settings.metadata_timeout_seconds)

    install_exception_handlers(app)

    app.add_middleware(UsageLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(health_router)
    app.include_router(admin_router)
    app.include_router(gateway_router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("tubegate.main:app", host=default_settings.app_host, port=default_settings.app_port)
