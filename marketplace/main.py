"""Marketplace FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.config import Settings, get_settings
from marketplace.database import Database
from marketplace.exceptions import register_exception_handlers
from marketplace.logging_config import configure_logging, get_logger
from marketplace.middleware.request_context import RequestContextMiddleware
from marketplace.redis import close_redis, open_redis
from marketplace.routes.admin import router as admin_router
from marketplace.routes.feature_requests import router as feature_requests_router
from marketplace.routes.forum import router as forum_router
from marketplace.routes.registry import router as registry_router
from marketplace.routes.stats import router as stats_router
from marketplace.services.config_service import ForumConfigService
from marketplace.services.gateway import AttestationGateway
from marketplace.services.rate_limiter import build_rate_limiter

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: verify DB, attach Redis on startup, release both on shutdown."""
    settings: Settings = app.state.settings
    configure_logging(
        level=settings.log_level,
        json_format=settings.log_format == "json",
        service_name=settings.service_name,
    )

    database: Database = app.state.database
    logger.info("starting_database_init")
    await database.connect()
    if settings.auto_create_schema:
        await database.create_schema()

    if settings.redis_url:
        redis = await open_redis(settings.redis_url)
        wire_services(app, redis)

    logger.info("application_started", rate_limit_backend=settings.rate_limit_backend)
    yield

    logger.info("shutting_down")
    await close_redis(app.state.redis)
    await database.dispose()
    logger.info("shutdown_complete")


def wire_services(app: FastAPI, redis=None) -> None:
    """(Re)build the request-scoped collaborators that depend on Redis."""
    settings: Settings = app.state.settings
    app.state.redis = redis
    app.state.rate_limiter = build_rate_limiter(settings.rate_limit_backend, redis)
    app.state.gateway = AttestationGateway(app.state.rate_limiter)
    app.state.config_service = ForumConfigService(redis)


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """
    Build the application with explicitly constructed collaborators.

    Settings, the database, the rate limiter, the gateway and the config
    service all hang off ``app.state`` and reach handlers through
    dependencies. Redis, when configured, is attached during startup.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Marketplace",
        description="Federated registry, feature requests and forum for signed peer instances",
        version=settings.service_version,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database or Database(
        settings.database_url,
        echo=settings.database_echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    app.state.redis = None
    if settings.rate_limit_backend == "redis":
        if not settings.redis_url:
            raise ValueError("RATE_LIMIT_BACKEND=redis requires REDIS_URL")
        # Wired by the lifespan once Redis is open.
    else:
        wire_services(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    register_exception_handlers(app)

    app.include_router(registry_router)
    app.include_router(feature_requests_router)
    app.include_router(forum_router)
    app.include_router(admin_router)
    app.include_router(stats_router)

    @app.get("/health")
    async def health_check():
        """Liveness only."""
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
