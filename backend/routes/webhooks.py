"""
Paystack webhook: asynchronous push from the card rail.

Must answer quickly and defensively:
    - 401 on a missing/invalid x-paystack-signature (fail closed)
    - 400 on a body that is not JSON
    - 200 for everything else, including unknown events and unmatched
      references, so Paystack stops redelivering
"""
import json
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deps import get_db, get_session_factory
from domain.constants import PAYSTACK_SIGNATURE_HEADER
from domain.errors import UnauthorizedError, ValidationError
from domain.responses import success_response
from services import paystack_service, reconciliation_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    body = await request.body()
    signature = request.headers.get(PAYSTACK_SIGNATURE_HEADER, "")

    if not paystack_service.verify_webhook_signature(body, signature):
        raise UnauthorizedError("Invalid webhook signature")

    try:
        event = json.loads(body)
    except ValueError:
        raise ValidationError("Invalid JSON payload")
    if not isinstance(event, dict):
        raise ValidationError("Invalid webhook payload")

    result = await reconciliation_service.handle_paystack_event(
        db, event, session_factory=session_factory
    )
    return success_response(result)
