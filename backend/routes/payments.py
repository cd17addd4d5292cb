"""
Payment verification callbacks, fired by the browser right after checkout.

Lowest latency trigger, but never the only one: the webhook and the stuck
order sweep cover a closed tab. Responses:
    200 — verified and fulfilled (or already fulfilled)
    202 — indeterminate; the order stays processing and will be retried
    402 — the rail rejected the payment
    503 — fulfillment failed and was rolled back; retry later
"""
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deps import get_db, get_session_factory
from domain.errors import PaymentRejectedError
from domain.responses import success_response
from middleware.rate_limit import rate_limit
from models import PaystackVerifyRequest, SolanaVerifyRequest
from services import reconciliation_service
from services.reconciliation_service import ReconciliationOutcome

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


def _respond(outcome: ReconciliationOutcome):
    verification = outcome.verification
    if verification.is_rejected:
        raise PaymentRejectedError(
            f"Payment verification failed: {verification.reason}",
            details={"orderId": outcome.order_id, **verification.to_dict()},
        )
    if verification.is_indeterminate:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=success_response(
                {
                    **outcome.to_dict(),
                    "status": "indeterminate",
                    "message": "Payment not confirmed yet. Your library will update once it clears.",
                }
            ),
        )
    return success_response(outcome.to_dict())


@router.post("/paystack/verify")
async def verify_paystack_payment(
    req: PaystackVerifyRequest,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    _rate=Depends(rate_limit(max_requests=10, window_seconds=60)),
):
    """Verify a Paystack reference server-side and fulfill the order."""
    outcome = await reconciliation_service.verify_card_payment(
        db, order_id=req.order_id, reference=req.reference, session_factory=session_factory
    )
    return _respond(outcome)


@router.post("/solana/verify")
async def verify_solana_payment(
    req: SolanaVerifyRequest,
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    _rate=Depends(rate_limit(max_requests=10, window_seconds=60)),
):
    """Poll the Solana RPC for the signature and fulfill the order once confirmed."""
    outcome = await reconciliation_service.verify_onchain_payment(
        db, order_id=req.order_id, signature=req.signature, session_factory=session_factory
    )
    return _respond(outcome)
