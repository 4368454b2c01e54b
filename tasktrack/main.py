"""
HTTP surface: read-only tracking queries plus reporter control.

    uvicorn tasktrack.main:app
"""
import logging
import os
import subprocess
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from . import db
from .api.health import router as health_router
from .api.prometheus import router as prometheus_router
from .api.reporters import router as reporters_router
from .api.runs import router as runs_router
from .config import VERSION, env_bool, get_settings
from .errors import TaskTrackError
from .logging_config import setup_logging

API_PREFIX = "/v1"

logger = logging.getLogger("tasktrack.api")


@asynccontextmanager
async def lifespan(application: FastAPI):
    settings = get_settings()
    setup_logging(settings)
    db.configure(settings)

    # Optional alembic migration instead of create_all
    if env_bool("AUTO_MIGRATE", False):
        try:
            subprocess.run(["alembic", "upgrade", "head"], check=True)
            logger.info("Alembic auto-migrate: upgrade head OK", extra={"component": "api"})
        except (OSError, subprocess.CalledProcessError):
            logger.exception("Alembic auto-migrate failed", extra={"component": "api"})
    else:
        db.init_db()

    logger.info("tasktrack API ready", extra={
        "component": "api", "version": VERSION, "backend": db.get_dialect().name})
    try:
        yield
    finally:
        db.dispose()
        logger.info("tasktrack API shutting down", extra={"component": "api"})


app = FastAPI(title="tasktrack", version=VERSION, lifespan=lifespan)


@app.exception_handler(TaskTrackError)
async def tasktrack_error_handler(request: Request, exc: TaskTrackError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"store error serving {request.url.path}: {exc}", extra={"component": "api"})
    return JSONResponse(status_code=503, content={"detail": "tracking store unavailable"})


app.include_router(health_router, prefix=API_PREFIX)
app.include_router(runs_router, prefix=API_PREFIX)
app.include_router(reporters_router, prefix=API_PREFIX)
app.include_router(prometheus_router, prefix=API_PREFIX)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("APP_HOST", "0.0.0.0"), port=int(os.getenv("APP_PORT", "8080")))
