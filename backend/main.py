from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import uvicorn
import logging
from contextlib import asynccontextmanager

from coursesync.core.config import settings
from coursesync.core.database import init_db
from coursesync.core.exceptions import CourseSyncError, SessionNotFoundError, TaskNotFoundError
from coursesync.api.v1 import sync, tasks, sessions
from coursesync.tasks.sync_tasks import SyncTaskManager

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database
    await init_db()

    # Reconcile runs left running by a crash, then start scheduling
    manager = SyncTaskManager()
    recovery = await manager.start()
    logger.info(f"Startup recovery: {recovery}")
    app.state.sync_task_manager = manager

    yield

    await manager.stop()


app = FastAPI(
    title="Course Session Sync API",
    description="Aggregates per-period schedule rows into class sessions and orchestrates sync runs",
    version="1.0.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])
app.include_router(tasks.router, prefix="/api/v1/tasks", tags=["tasks"])
app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["sessions"])


@app.get("/")
async def root():
    return {"message": "Course Session Sync API", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics for aggregation and task orchestration."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "status_code": exc.status_code}
    )


@app.exception_handler(CourseSyncError)
async def course_sync_exception_handler(request, exc):
    status_code = 404 if isinstance(exc, (TaskNotFoundError, SessionNotFoundError)) else 409
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "status_code": status_code}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "status_code": 500}
    )


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info" if not settings.DEBUG else "debug"
    )
