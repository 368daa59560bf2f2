"""
TaskPulse FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from redis.asyncio import Redis

from app import __version__
from app.config import NoticeChannelBackend, get_settings
from app.core.logging_config import setup_logging
from app.core.sentry_config import init_sentry
from app.middleware.logging_middleware import LoggingMiddleware
from app.middleware.rate_limiter import close_redis, get_redis
from app.services.notification_dispatcher import (
    NotificationDispatcher,
    build_notice_channel,
    get_dispatcher,
    set_dispatcher,
)
from app.services.ws_manager import get_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle management."""
    settings = get_settings()
    # Startup
    logger.info(f"Starting {settings.app_name} v{__version__} ({settings.app_env.value})")

    redis = await get_redis() if settings.notice_channel_backend == NoticeChannelBackend.REDIS else None
    dispatcher = NotificationDispatcher(
        channel=build_notice_channel(settings, redis),
        registry=get_registry(),
        reap_interval=float(settings.ws_heartbeat_interval),
    )
    await dispatcher.start()
    set_dispatcher(dispatcher)

    yield

    # Shutdown
    closed = await get_registry().close_all()
    if closed:
        logger.info(f"Closed {closed} live session(s)")
    await dispatcher.stop()
    set_dispatcher(None)
    await close_redis()
    logger.info(f"Shutting down {settings.app_name}")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI instance."""
    settings = get_settings()

    # 1. Configure structured logging (before anything else)
    setup_logging(
        app_env=settings.app_env,
        log_level=settings.log_level,
        log_format=settings.log_format,
    )

    # 2. Initialize Sentry (before app creation so ASGI integration hooks in)
    init_sentry(
        dsn=settings.sentry_dsn,
        app_env=settings.app_env,
        app_version=__version__,
        traces_sample_rate=settings.sentry_traces_sample_rate,
        profiles_sample_rate=settings.sentry_profiles_sample_rate,
    )

    # OpenAPI tag descriptions for Swagger / ReDoc
    openapi_tags = [
        {
            "name": "Admission",
            "description": "Token-bucket admission checks for login and token refresh.",
        },
        {
            "name": "Notifications",
            "description": "Live notification session status.",
        },
        {
            "name": "WebSocket",
            "description": "Real-time task-change notifications via WebSocket.",
        },
        {
            "name": "System",
            "description": "Health checks and operational endpoints.",
        },
    ]

    app = FastAPI(
        title=settings.app_name,
        description=(
            "TaskPulse notifies users when their tasks change: live over WebSocket "
            "and through periodic email digests.\n\n"
            "**Authentication:** WebSocket and notification endpoints require a JWT "
            "access token issued by the auth service.\n\n"
            "**Rate Limits:** Login, token refresh and WebSocket connects draw from "
            "per-identity token buckets shared by every instance. Denials return 429 "
            "with `Retry-After`."
        ),
        version=__version__,
        lifespan=lifespan,
        openapi_tags=openapi_tags,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        redirect_slashes=False,
    )

    # Middleware order: Logging → GZip → CORS (LIFO, CORS outermost)
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=settings.gzip_minimum_size)
    # CORS origins: dev uses Vite default, prod reads from CORS_ALLOWED_ORIGINS env var
    if settings.is_development:
        cors_origins = ["http://localhost:5173"]
    elif settings.cors_allowed_origins:
        cors_origins = [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    else:
        cors_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from app.api.v1 import admission, notifications, ws

    # Health check with Redis probe, dispatcher status and live session count
    @app.get("/health", tags=["System"])
    async def health_check(redis: Redis = Depends(get_redis)):
        from app.core.health import get_health_status

        try:
            dispatcher_running = get_dispatcher().running
        except RuntimeError:
            dispatcher_running = None

        return await get_health_status(
            app_name=settings.app_name,
            app_version=__version__,
            app_env=settings.app_env.value,
            redis_client=redis,
            live_sessions=get_registry().total_connections,
            dispatcher_running=dispatcher_running,
        )

    app.include_router(admission.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(ws.router, prefix="/api/v1")

    # Register global exception handlers (after routers)
    from app.middleware.exception_handler import register_exception_handlers

    register_exception_handlers(app)

    return app


app = create_app()
