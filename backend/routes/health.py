"""
Health check endpoint.
"""
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from deps import get_db
from solana_client import solana_client

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Database is required; the Solana RPC is reported but optional."""
    body = {
        "status": "healthy",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        await db.execute(text("SELECT 1"))
        body["database_connected"] = True
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        body.update(status="unhealthy", database_connected=False)
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)

    try:
        body["solana_slot"] = await solana_client.get_slot()
        body["solana_connected"] = True
    except Exception as e:
        logger.warning(f"Solana RPC unreachable: {e}")
        body["solana_connected"] = False
        body["status"] = "degraded"

    return body
