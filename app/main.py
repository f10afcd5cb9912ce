"""
Marketplace Webhooks - Main FastAPI Application
"""
from fastapi import FastAPI
from starlette.responses import JSONResponse

from app.core.config import settings
from app.core.logging import setup_logging, get_logger
from app.core.middleware import setup_middleware, setup_exception_handlers
from app.api.webhooks.routes import router as webhooks_router
from app.db.database import engine, Base
from app.domain.services.health_service import check_readiness
from app.webhooks.runtime import build_webhook_runtime

# Register every model on Base.metadata before create_all
from app.db import models  # noqa: F401

logger = get_logger(__name__)

_OPENAPI_TAGS = [
    {
        "name": "Webhooks",
        "description": "Finix and GetStream webhook intake, plus queue tooling for operators.",
    },
    {"name": "Health", "description": "Liveness and readiness probes."},
]


def create_app() -> FastAPI:
    setup_logging(
        level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
        json_format=not settings.DEBUG,
        app_name=settings.APP_NAME
    )

    application = FastAPI(
        title=settings.APP_NAME,
        version="1.0.0",
        description=(
            "Receives payment and chat webhooks, records each event exactly once "
            "and processes it asynchronously."
        ),
        openapi_tags=_OPENAPI_TAGS,
    )
    application.state.webhook_runtime = build_webhook_runtime(settings)

    setup_middleware(application)
    setup_exception_handlers(application)
    application.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])

    @application.on_event("startup")
    async def startup() -> None:
        """Create tables on startup"""
        logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized")

    @application.on_event("shutdown")
    async def shutdown() -> None:
        logger.info("Shutting down application")
        from app.core.redis_client import close_redis
        await close_redis()
        await engine.dispose()
        logger.info("Database connections disposed")

    @application.get(
        "/health",
        summary="Liveness probe",
        description="The process is up. No dependency checks, so a database outage does not trigger restarts.",
        tags=["Health"],
    )
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    @application.get(
        "/health/ready",
        summary="Readiness probe",
        description="Checks the database, Redis and the Celery broker; 503 when any is down.",
        responses={
            200: {
                "description": "All dependencies available",
                "content": {
                    "application/json": {
                        "example": {"status": "healthy", "db": "ok", "redis": "ok", "celery": "ok"}
                    }
                },
            },
            503: {"description": "At least one dependency is unavailable"},
        },
        tags=["Health"],
    )
    async def readiness_check() -> JSONResponse:
        result = await check_readiness()
        status_code = 200 if result["status"] == "healthy" else 503
        return JSONResponse(content=result, status_code=status_code)

    return application


app = create_app()
