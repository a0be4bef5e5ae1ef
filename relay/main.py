"""
Relay Coordinator - operator HTTP surface (health + admin)
"""
from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import settings
from relay.core.logging import setup_logging, get_logger
from relay.core.middleware import setup_middleware, setup_exception_handlers
from relay.api.routes import router as api_router
from relay.db.database import engine, Base, get_db
import relay.db.models  # noqa: F401  register tables on Base.metadata

setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=settings.LOG_JSON and not settings.DEBUG,
    app_name="relay"
)

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {"name": "Health", "description": "Liveness and readiness probes."},
    {
        "name": "admin",
        "description": "Operator tools: circuit breakers, dispatch queue, dead letters, jobs, stuck webhooks.",
    },
]

app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    description="Dispatch queue, webhook intake guard and singleton job coordination.",
    openapi_tags=_OPENAPI_TAGS,
)

setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")

    # partial indexes are PostgreSQL only; SQLite (tests) relies on create_all
    if engine.dialect.name == "postgresql":
        from relay.db.migrations import run_all_migrations

        async with engine.begin() as conn:
            await run_all_migrations(conn)
        logger.info("Auto-migrations completed")


@app.on_event("shutdown")
async def shutdown() -> None:
    logger.info("Shutting down application")
    from relay.core.redis_client import close_redis
    await close_redis()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up. No dependency checks, so a DB outage does not trigger restarts.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="DB, Redis and Celery broker checks plus dispatch queue backlog. 503 when degraded.",
    responses={
        200: {"description": "All dependencies reachable"},
        503: {"description": "At least one dependency unavailable"},
    },
    tags=["Health"],
)
async def readiness_check(db: AsyncSession = Depends(get_db)) -> JSONResponse:
    from relay.domain.services.health_service import check_readiness

    result = await check_readiness(db)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
