"""
Scheduler endpoints for the stuck order sweep.

    POST /cron/process-stuck-orders — run one sweep batch now (X-Cron-Secret)
    GET  /cron/status               — background scheduler status
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import async_sessionmaker

from deps import get_session_factory, require_cron_secret
from domain.responses import success_response
from services import sweep_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/cron", tags=["cron"])


@router.post("/process-stuck-orders", dependencies=[Depends(require_cron_secret)])
async def process_stuck_orders(
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    report = await sweep_service.run_sweep(session_factory=session_factory)
    return success_response(report.to_dict())


@router.get("/status")
async def sweep_status():
    return success_response(sweep_service.get_status())
