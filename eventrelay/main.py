"""
Chat Event Relay - FastAPI application

Serves the delivery query API and health probes. Delivery work itself runs
in the worker process (eventrelay.workers.runner).
"""
from fastapi import Depends, FastAPI
from starlette.responses import JSONResponse

from eventrelay import __version__
from eventrelay.api.dependencies import close_task_queue, get_task_queue
from eventrelay.api.routes import router as api_router
from eventrelay.core.config import settings
from eventrelay.core.logging import get_logger, setup_logging
from eventrelay.core.middleware import setup_exception_handlers, setup_middleware
from eventrelay.db.database import AsyncSessionLocal, create_tables, engine
from eventrelay.domain.services.health_service import check_readiness
from eventrelay.workers.queue import TaskQueue

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL,
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


_OPENAPI_TAGS = [
    {"name": "Events", "description": "Deliveries fanned out from one event."},
    {"name": "Deliveries", "description": "Delivery state, attempt history and manual retry."},
    {"name": "Health", "description": "Liveness and readiness probes."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    description="Fan-out of chat domain events to configured processors, with tracked retries.",
    openapi_tags=_OPENAPI_TAGS,
)

# Setup middleware (correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    await create_tables()
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await close_task_queue()
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="Liveness probe",
    description="The process is up and answering. No dependency is checked.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="Readiness probe",
    description="Checks the database and the task broker.",
    responses={
        200: {
            "description": "All dependencies reachable",
            "content": {
                "application/json": {
                    "example": {"status": "healthy", "db": "ok", "broker": "ok"}
                }
            },
        },
        503: {
            "description": "At least one dependency unavailable",
            "content": {
                "application/json": {
                    "example": {
                        "status": "degraded",
                        "db": "ok",
                        "broker": "error: broker_unavailable",
                    }
                }
            },
        },
    },
    tags=["Health"],
)
async def readiness_check(task_queue: TaskQueue = Depends(get_task_queue)) -> JSONResponse:
    result = await check_readiness(AsyncSessionLocal, task_queue)
    status_code = 200 if result["status"] == "healthy" else 503
    return JSONResponse(content=result, status_code=status_code)
