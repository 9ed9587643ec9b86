"""Health check router."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    database = request.app.state.database
    database_ok = False
    if database.is_open:
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            database_ok = True
        except SQLAlchemyError as e:
            logger.warning(f"Health check database probe failed: {e.__class__.__name__}")

    return {
        "success": True,
        "status": "ok" if database_ok else "degraded",
        "service": "blockhaven",
        "version": "1.0.0",
        "database": "ok" if database_ok else "unavailable",
    }
