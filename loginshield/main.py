"""FastAPI host for the login shield."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from loginshield import __version__
from loginshield.api.v2 import attempts, login
from loginshield.core.cache import TransientCache
from loginshield.core.config import ShieldSettings, get_shield_settings
from loginshield.core.logger import setup_logging
from loginshield.core.notifier import Notifier
from loginshield.core.policy_gate import build_gate
from loginshield.core.rate_limit import configure_limiter, limiter
from loginshield.core.store import PostgresRecordStore, RecordStore
from loginshield.schemas.common import HealthResponse

logger = logging.getLogger("loginshield")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open store and cache connections; drain notifications on shutdown."""
    settings: ShieldSettings = app.state.settings
    gate = app.state.gate
    store = gate.tracker.store
    logger.info("Login shield starting on %s:%s", settings.host, settings.port)

    if isinstance(store, PostgresRecordStore):
        if await store.connect():
            logger.info("Database connected")
        else:
            logger.warning(
                "Database connection failed, logins run %s until it recovers",
                "blocked" if settings.fail_closed else "unprotected",
            )
    else:
        logger.info("No DATABASE_URL, attempt records kept in memory")

    await gate.captcha.cache.connect(settings.redis_url)
    configure_limiter(settings.redis_url)

    yield

    # Shutdown
    await gate.tracker.drain(timeout=settings.notify_timeout_seconds)
    await gate.captcha.cache.close()
    if isinstance(store, PostgresRecordStore) and store.is_connected:
        await store.disconnect()
    logger.info("Login shield stopped")


def create_app(
    settings: Optional[ShieldSettings] = None,
    store: Optional[RecordStore] = None,
    cache: Optional[TransientCache] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_shield_settings()

    app = FastAPI(
        title="Login Shield API",
        description="Brute-force lockout and captcha state for login forms",
        version=__version__,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
        redirect_slashes=False,
    )

    app.state.settings = settings
    app.state.gate = build_gate(settings, store=store, cache=cache, notifier=notifier)

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Prevent insecure "*" with allow_credentials=True
    cors_origins = [o for o in settings.cors_origins if o != "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Admin-Key"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response

    app.include_router(login.router, prefix="/api/v2/login", tags=["login"])
    app.include_router(attempts.router, prefix="/api/v2/attempts", tags=["attempts"])

    @app.get("/api/v2/health", response_model=HealthResponse, tags=["health"])
    async def health_check():
        """Health check endpoint."""
        gate = app.state.gate
        store = gate.tracker.store
        if isinstance(store, PostgresRecordStore):
            store_status = "ok" if store.is_connected else "down"
        else:
            store_status = "memory"
        return HealthResponse(
            status="ok" if store_status != "down" else "degraded",
            version=__version__,
            services={
                "store": store_status,
                "cache": "redis" if gate.captcha.cache.is_redis else "memory",
            },
        )

    return app


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_shield_settings()
    setup_logging(settings.log_level, settings.log_dir)
    uvicorn.run(
        "loginshield.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=None,
    )


if __name__ == "__main__":
    run()
