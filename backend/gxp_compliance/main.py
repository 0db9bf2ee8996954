"""
FastAPI application entry point.
Configures middleware, routers, and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gxp_compliance.core.config import get_settings
from gxp_compliance.core.logging import configure_logging, get_logger
from gxp_compliance.core.middleware import REQUEST_ID_HEADER, RequestContextMiddleware
from gxp_compliance.core.rate_limit import close_throttle_redis, get_throttle_redis
from gxp_compliance.db.session import check_database, close_db, init_db
from gxp_compliance.modules.audit.router import router as audit_router
from gxp_compliance.modules.signatures.router import router as signatures_router

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the database pool on startup and releases the database pool and
    the throttle Redis connection on shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
        throttle_backend=settings.throttle_backend,
    )

    await init_db()
    logger.info("database_initialized")

    yield

    await close_throttle_redis()
    await close_db()
    logger.info("application_shutdown_complete")


def create_application() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with all middleware,
    routers, and settings applied.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware Configuration
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Accept",
            "Origin",
            REQUEST_ID_HEADER,
            settings.identity_header,
            settings.roles_header,
        ],
        expose_headers=[REQUEST_ID_HEADER],
    )
    app.add_middleware(RequestContextMiddleware)

    # ==========================================================================
    # Router Registration
    # ==========================================================================

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        try:
            checks["db"] = "ok" if await check_database() else "unavailable"
        except Exception:
            logger.warning("health_check_db_unavailable", exc_info=True)
            checks["db"] = "unavailable"

        client = get_throttle_redis()
        if client is not None:
            try:
                await client.ping()  # type: ignore[misc,unused-ignore]
                checks["throttle_redis"] = "ok"
            except Exception:
                logger.warning("health_check_redis_unavailable", exc_info=True)
                checks["throttle_redis"] = "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        signatures_router,
        prefix=f"{settings.api_v1_prefix}/signatures",
        tags=["Electronic Signatures"],
    )
    app.include_router(
        audit_router,
        prefix=f"{settings.api_v1_prefix}/audit",
        tags=["Audit"],
    )

    return app


app = create_application()
