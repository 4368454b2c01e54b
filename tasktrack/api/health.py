"""
Health check endpoint
"""

import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..config import VERSION

router = APIRouter(tags=["Health"])


@router.get("/health")
def health():
    try:
        with db.session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logging.getLogger("tasktrack.api").error(f"health check failed: {e}", extra={"component": "api"})
        return JSONResponse(status_code=503, content={"status": "error", "database": "unreachable"})
    return {"status": "ok", "version": VERSION, "backend": db.get_dialect().name}
