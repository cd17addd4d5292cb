"""
Reconciliation service: the client callback and webhook trigger surfaces.

Every trigger runs the same two steps:
    1. Ledger verification (get_verifier picks the rail's strategy)
    2. finalize_order_fulfillment(order_id)

Triggers do not coordinate with each other; whichever reaches the fulfillment
compare-and-swap first wins and the rest become no-ops.

Webhook correlation:
    charge.success is matched on the references recorded on the order (at
    payment-attempt time or by a callback), among the most recent
    pending/processing card orders. The payload's metadata (order id, amount)
    is never used to pick an order, and each candidate is re-verified
    server-side before fulfillment.

One payment, one order:
    a verified proof is claimed on the order (unique payment_reference) before
    fulfillment, so the same reference or signature can never pay for two orders.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from db_models import Notification, Order, Payout
from domain.constants import (
    EVENT_CHARGE_SUCCESS,
    EVENT_TRANSFER_FAILED,
    EVENT_TRANSFER_SUCCESS,
    PAYOUT_FAILED_TITLE,
    PAYOUT_SUCCESS_TITLE,
)
from domain.enums import FULFILLABLE_STATUSES, NotificationType, OrderStatus, PaymentMethod, PayoutStatus
from domain.errors import ConflictError, DomainError, ValidationError
from services import fulfillment_service, order_service
from services.fulfillment_service import FulfillmentResult
from services.paystack_service import PaystackVerifier
from services.solana_service import SolanaVerifier
from services.verification import VerificationResult, Verifier

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationOutcome:
    order_id: int
    verification: VerificationResult
    fulfillment: Optional[FulfillmentResult] = None
    already_completed: bool = False

    @property
    def verified(self) -> bool:
        return self.verification.is_verified

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "verified": self.verified,
            "verification": self.verification.to_dict(),
            "fulfillment": self.fulfillment.to_dict() if self.fulfillment else None,
            "alreadyCompleted": self.already_completed,
        }


def get_verifier(payment_method: str, **overrides) -> Verifier:
    """The ledger verifier for a payment rail (overrides go to its constructor)."""
    if payment_method == PaymentMethod.CARD_SPLIT.value:
        return PaystackVerifier(**overrides)
    if payment_method == PaymentMethod.SOLANA_USDC.value:
        return SolanaVerifier(**overrides)
    raise ValidationError(f"Unsupported payment method '{payment_method}'", field="paymentMethod")


async def _fulfill_completed(order_id: int, session_factory) -> ReconciliationOutcome:
    """Order is already completed: re-run fulfillment (a no-op) and report it."""
    result = await fulfillment_service.finalize_order_fulfillment(order_id, session_factory=session_factory)
    return ReconciliationOutcome(
        order_id=order_id,
        verification=VerificationResult.verified(note="order already completed"),
        fulfillment=result,
        already_completed=True,
    )


async def _claim_and_fulfill(
    db: AsyncSession,
    order_id: int,
    proof: str,
    verification: VerificationResult,
    session_factory: Optional[async_sessionmaker],
    reused_reason: str,
) -> ReconciliationOutcome:
    """A verified proof pays for exactly one order: claim it, then fulfill."""
    if not await order_service.claim_payment_proof(db, order_id, proof):
        return ReconciliationOutcome(order_id=order_id, verification=VerificationResult.rejected(reused_reason))

    result = await fulfillment_service.finalize_order_fulfillment(order_id, session_factory=session_factory)
    return ReconciliationOutcome(order_id=order_id, verification=verification, fulfillment=result)


async def _record_attempt(db: AsyncSession, order_id: int, reused_reason: str, **proof):
    """Record the proof on the order; a proof held by another order is a rejection."""
    try:
        order = await order_service.record_payment_attempt(db, order_id=order_id, **proof)
    except ConflictError as e:
        logger.warning(f"  Order {order_id}: {e.message} ({e.details.get('otherOrderId')})")
        return None, ReconciliationOutcome(
            order_id=order_id,
            verification=VerificationResult.rejected(reused_reason, other_order_id=e.details.get("otherOrderId")),
        )
    return order, None


# ════════════════════════════════════════════════════════════════════
# Client Callbacks
# ════════════════════════════════════════════════════════════════════


async def verify_card_payment(
    db: AsyncSession,
    *,
    order_id: int,
    reference: str,
    verifier: Optional[Verifier] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> ReconciliationOutcome:
    """
    Client callback after the Paystack popup reports success.

    The popup's own success flag is ignored; the reference is verified against
    Paystack and the order's recorded total/currency. A reference already
    recorded on another order is rejected without calling Paystack.
    """
    order = await order_service.require_order(db, order_id)
    if order.payment_method != PaymentMethod.CARD_SPLIT.value:
        raise ValidationError(f"Order {order_id} is not a card order", field="orderId")
    if order.status == OrderStatus.COMPLETED.value:
        return await _fulfill_completed(order_id, session_factory)

    order, rejected = await _record_attempt(db, order_id, "reference_reused", reference=reference)
    if rejected:
        return rejected
    snap = order_service.snapshot(order)

    verifier = verifier or get_verifier(snap.payment_method)
    verification = await verifier.verify(snap, reference)
    logger.info(f"  Card verification for order {order_id}: {verification.status.value} ({verification.reason})")

    if not verification.is_verified:
        return ReconciliationOutcome(order_id=order_id, verification=verification)

    return await _claim_and_fulfill(db, order_id, reference, verification, session_factory, "reference_reused")


async def verify_onchain_payment(
    db: AsyncSession,
    *,
    order_id: int,
    signature: str,
    verifier: Optional[Verifier] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> ReconciliationOutcome:
    """
    Client callback after the wallet reports a submitted USDC transfer.

    The signature is recorded before polling (pending -> processing) so that the
    sweep can finish the job if this request is abandoned or times out.
    """
    order = await order_service.require_order(db, order_id)
    if order.payment_method != PaymentMethod.SOLANA_USDC.value:
        raise ValidationError(f"Order {order_id} is not an on-chain order", field="orderId")
    if order.status == OrderStatus.COMPLETED.value:
        return await _fulfill_completed(order_id, session_factory)

    order, rejected = await _record_attempt(db, order_id, "signature_reused", signature=signature)
    if rejected:
        return rejected
    snap = order_service.snapshot(order, signature=signature)

    verifier = verifier or get_verifier(snap.payment_method)
    verification = await verifier.verify(snap, signature)

    if not verification.is_verified:
        return ReconciliationOutcome(order_id=order_id, verification=verification)

    return await _claim_and_fulfill(db, order_id, signature, verification, session_factory, "signature_reused")


# ════════════════════════════════════════════════════════════════════
# Webhook
# ════════════════════════════════════════════════════════════════════


async def find_webhook_candidates(db: AsyncSession, reference: str, limit: int | None = None) -> list[Order]:
    """Recent fulfillable card orders that have recorded `reference`."""
    res = await db.execute(
        select(Order)
        .where(
            Order.payment_method == PaymentMethod.CARD_SPLIT.value,
            Order.status.in_(FULFILLABLE_STATUSES),
            (Order.payment_reference == reference)
            | Order.attempted_references.contains(json.dumps(reference), autoescape=True),
        )
        .order_by(Order.order_date.desc())
        .limit(limit or settings.webhook_scan_limit)
    )
    return res.scalars().all()


async def _handle_charge_success(
    db: AsyncSession,
    data: dict,
    verifier: Optional[Verifier],
    session_factory: Optional[async_sessionmaker],
) -> dict:
    reference = data.get("reference")
    if not reference:
        return {"status": "ignored", "reason": "missing_reference"}

    candidates = await find_webhook_candidates(db, reference)
    if not candidates:
        logger.info(f"  charge.success {reference}: no matching pending order (acknowledged)")
        return {"status": "ignored", "reason": "no_matching_order", "reference": reference}

    # The order that first recorded the reference gets the first claim on it
    candidates = sorted(candidates, key=lambda o: o.payment_reference != reference)

    verifier = verifier or get_verifier(PaymentMethod.CARD_SPLIT.value)
    snapshots = [order_service.snapshot(o) for o in candidates]
    results = []
    for snap in snapshots:
        verification = await verifier.verify(snap, reference)
        entry = {"orderId": snap.id, "verification": verification.status.value, "reason": verification.reason}
        if verification.is_verified:
            try:
                outcome = await _claim_and_fulfill(
                    db, snap.id, reference, verification, session_factory, "reference_reused"
                )
                if outcome.fulfillment:
                    entry["fulfillment"] = outcome.fulfillment.status.value
                else:
                    entry["verification"] = outcome.verification.status.value
                    entry["reason"] = outcome.verification.reason
            except DomainError as e:
                # The store is unchanged; the client callback or a redelivery will retry
                logger.error(f"  Webhook fulfillment failed for order {snap.id}: {e.message}")
                entry["fulfillment"] = "error"
                entry["error"] = e.message
        results.append(entry)

    return {"status": "processed", "reference": reference, "orders": results}


async def _handle_transfer(db: AsyncSession, event: str, data: dict) -> dict:
    reference = data.get("reference")
    if not reference:
        return {"status": "ignored", "reason": "missing_reference"}

    res = await db.execute(select(Payout).where(Payout.transaction_reference == reference))
    payout = res.scalar_one_or_none()
    if not payout:
        logger.warning(f"  {event} for unknown payout reference {reference}")
        return {"status": "ignored", "reason": "unknown_payout", "reference": reference}

    succeeded = event == EVENT_TRANSFER_SUCCESS
    new_status = PayoutStatus.SUCCESS.value if succeeded else PayoutStatus.FAILED.value
    if payout.status == new_status:
        return {"status": "duplicate", "reference": reference}

    payout.status = new_status
    payout.transaction_details = json.dumps(data, default=str)
    if succeeded:
        payout.payout_date = datetime.utcnow()
        title, body = PAYOUT_SUCCESS_TITLE, f"Your payout of {payout.amount:,.2f} has been sent."
    else:
        payout.failure_reason = data.get("reason") or "Unknown failure reason"
        title, body = PAYOUT_FAILED_TITLE, f"Your payout of {payout.amount:,.2f} failed: {payout.failure_reason}"

    db.add(
        Notification(
            recipient_id=payout.producer_id,
            title=title,
            body=body,
            notification_type=NotificationType.PAYOUT.value,
            related_entity_type="payout",
            related_entity_id=payout.id,
        )
    )
    await db.commit()

    logger.info(f"  Payout {reference} → {new_status}")
    return {"status": new_status, "reference": reference}


async def handle_paystack_event(
    db: AsyncSession,
    event: dict,
    *,
    verifier: Optional[Verifier] = None,
    session_factory: Optional[async_sessionmaker] = None,
) -> dict:
    """
    Process a signature-checked Paystack webhook body.

    Unknown event types and unmatched references are acknowledged without writes.
    """
    name = event.get("event", "")
    data = event.get("data") or {}
    if not isinstance(data, dict):
        return {"status": "ignored", "reason": "malformed_data", "event": name}

    logger.info(f"  📩 Paystack webhook: {name} ref={data.get('reference')}")

    if name == EVENT_CHARGE_SUCCESS:
        result = await _handle_charge_success(db, data, verifier, session_factory)
    elif name in (EVENT_TRANSFER_SUCCESS, EVENT_TRANSFER_FAILED):
        result = await _handle_transfer(db, name, data)
    else:
        logger.debug(f"  Paystack webhook event ignored: {name}")
        result = {"status": "ignored", "reason": "unhandled_event"}

    result["event"] = name
    return result
