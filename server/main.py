"""
FlowPilot Engine: workflow execution and scheduling backend.

FastAPI application with dependency injection, a graph executor and an
APScheduler-driven sweeper for scheduled runs.
"""

from datetime import datetime, timezone
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.container import container
from core.logging import configure_logging, get_logger
from routers import workflow, cron, dashboard

logger = get_logger(__name__)

VERSION = "1.0.0"
SHUTDOWN_DRAIN_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management."""
    settings = container.settings()
    configure_logging(settings)

    # Startup
    logger.info("Starting FlowPilot Engine", version=VERSION)
    await container.database().startup()

    scheduler = container.scheduler()
    if settings.scheduler_enabled:
        await scheduler.start()
    else:
        logger.info("Scheduler loop disabled; sweeps run only through the cron endpoint")

    logger.info("Services started successfully")
    yield

    # Shutdown
    await scheduler.stop()
    await scheduler.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
    await container.workflow_service().wait_for_background_runs()
    await container.database().shutdown()
    logger.info("Services shutdown complete")


class CatchAllExceptionsMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error("Unhandled exception", path=request.url.path,
                         error=f"{type(e).__name__}: {e}", exc_info=True)
            return ORJSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "ok": False,
                    "error": f"{type(e).__name__}: {str(e)}",
                    "detail": "Internal server error"
                }
            )


def create_app() -> FastAPI:
    settings = container.settings()

    app = FastAPI(
        title="FlowPilot Engine",
        version=VERSION,
        description="Workflow execution and scheduling engine",
        lifespan=lifespan,
        default_response_class=ORJSONResponse
    )

    # Exception handler middleware BEFORE CORS to catch all errors
    app.add_middleware(CatchAllExceptionsMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflow.router)
    app.include_router(cron.router)
    app.include_router(dashboard.router)

    @app.get("/health")
    async def health_check():
        """Service health including database and scheduler state."""
        database = container.database()
        return {
            "status": "OK" if database.is_ready else "DEGRADED",
            "service": "flowpilot-engine",
            "version": VERSION,
            "environment": "development" if settings.debug else "production",
            "database": database.is_ready,
            "scheduler": container.scheduler().status(),
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = container.settings()
    configure_logging(settings)
    logger.info("Starting FlowPilot Engine",
                host=settings.host, port=settings.port, debug=settings.debug)
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers
    )
