"""
Stuck Order Sweep: the backstop trigger for on-chain payments.

Finds solana_usdc orders sitting in `processing` with a recorded signature for
longer than `sweep_stuck_after_seconds`, re-verifies them against the RPC node
and fulfills the confirmed ones. Guarantees eventual consistency when both the
client callback and any push notification were lost.

    - Bounded batch per run (oldest first); the rest wait for the next run
    - Orders in a batch are verified concurrently, each under its own timeout
    - Every recorded signature is checked, newest first
    - verified      → finalize_order_fulfillment
      rejected      → mark_order_failed once every recorded signature is
                      rejected (terminal, no further sweeps)
      indeterminate → left in `processing` for the next run
    - One order failing never aborts the run

Runs as an asyncio background task during the FastAPI app lifespan and can be
triggered on demand via POST /cron/process-stuck-orders. Overlapping runs are
safe: fulfillment is idempotent.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import async_session
from db_models import Order
from domain.enums import OrderStatus, PaymentMethod
from domain.errors import DomainError
from services import fulfillment_service, order_service, reconciliation_service
from services.verification import OrderSnapshot, VerificationResult, Verifier

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    processed: int = 0
    fulfilled: int = 0
    failed: int = 0
    pending: int = 0
    errors: int = 0
    details: list[dict] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "fulfilled": self.fulfilled,
            "failed": self.failed,
            "pending": self.pending,
            "errors": self.errors,
            "details": self.details,
            "startedAt": self.started_at.isoformat(),
        }


# ════════════════════════════════════════════════════════════════════
# Query
# ════════════════════════════════════════════════════════════════════


async def find_stuck_orders(
    db: AsyncSession,
    *,
    older_than: timedelta,
    limit: int,
) -> list[OrderSnapshot]:
    """Oldest `limit` on-chain orders stuck in processing with a recorded signature."""
    cutoff = datetime.utcnow() - older_than
    res = await db.execute(
        select(Order)
        .where(
            Order.status == OrderStatus.PROCESSING.value,
            Order.payment_method == PaymentMethod.SOLANA_USDC.value,
            Order.order_date < cutoff,
            Order.transaction_signatures.isnot(None),
            Order.transaction_signatures != "[]",
        )
        .order_by(Order.order_date.asc(), Order.id.asc())
        .limit(limit)
    )
    snapshots = []
    for order in res.scalars().all():
        snap = order_service.snapshot(order)
        if snap.signatures:
            snapshots.append(snap)
    return snapshots


# ════════════════════════════════════════════════════════════════════
# One Order
# ════════════════════════════════════════════════════════════════════


async def _verify_signatures(snap: OrderSnapshot, verifier: Verifier) -> tuple[str, VerificationResult]:
    """
    Check every recorded signature, newest first; the first verified one wins.

    The order is only rejected when every signature was definitively rejected.
    Otherwise the first undecided answer is returned so the order stays open.
    """
    rejection = None
    undecided = None
    for signature in reversed(snap.signatures):
        verification = await verifier.verify(snap, signature)
        if verification.is_verified:
            return signature, verification
        if verification.is_rejected:
            rejection = rejection or (signature, verification)
        else:
            undecided = undecided or (signature, verification)
    return undecided or rejection


async def _process_order(
    snap: OrderSnapshot,
    verifier: Verifier,
    timeout: float,
    session_factory: async_sessionmaker,
) -> dict:
    """Verify + fulfill one order. Never raises; the outcome goes in the report."""
    entry = {"orderId": snap.id, "signature": snap.signature, "signatures": len(snap.signatures)}
    try:
        try:
            signature, verification = await asyncio.wait_for(_verify_signatures(snap, verifier), timeout=timeout)
            entry["signature"] = signature
        except asyncio.TimeoutError:
            verification = VerificationResult.indeterminate("timeout", timeout_seconds=timeout)

        entry["verification"] = verification.status.value
        entry["reason"] = verification.reason

        if verification.is_verified:
            async with session_factory() as db:
                claimed = await order_service.claim_payment_proof(db, snap.id, signature)
            if claimed:
                result = await fulfillment_service.finalize_order_fulfillment(snap.id, session_factory=session_factory)
                entry["outcome"] = result.status.value
            else:
                entry["outcome"] = "error"
                entry["error"] = "signature claimed by another order"
        elif verification.is_rejected:
            await fulfillment_service.mark_order_failed(
                snap.id, f"on-chain: {verification.reason}", session_factory=session_factory
            )
            entry["outcome"] = "on_chain_failure"
        else:
            entry["outcome"] = "pending"

    except DomainError as e:
        logger.error(f"[Sweep] Order {snap.id}: {e.message}")
        entry["outcome"] = "error"
        entry["error"] = e.message
    except Exception as e:
        logger.error(f"[Sweep] Unexpected error on order {snap.id}: {e}", exc_info=True)
        entry["outcome"] = "error"
        entry["error"] = "internal error"

    return entry


# ════════════════════════════════════════════════════════════════════
# One Run
# ════════════════════════════════════════════════════════════════════


async def run_sweep(
    *,
    session_factory: Optional[async_sessionmaker] = None,
    verifier: Optional[Verifier] = None,
    batch_size: int | None = None,
    stuck_after_seconds: int | None = None,
    per_order_timeout: float | None = None,
) -> SweepReport:
    """Process one bounded batch of stuck orders and return what happened."""
    factory = session_factory or async_session
    verifier = verifier or reconciliation_service.get_verifier(
        PaymentMethod.SOLANA_USDC.value, max_attempts=settings.sweep_poll_attempts
    )
    batch_size = batch_size or settings.sweep_batch_size
    older_than = timedelta(
        seconds=stuck_after_seconds if stuck_after_seconds is not None else settings.sweep_stuck_after_seconds
    )
    timeout = per_order_timeout or settings.sweep_order_timeout_seconds

    report = SweepReport()
    logger.info("[Sweep] Starting stuck order sweep...")

    async with factory() as db:
        snapshots = await find_stuck_orders(db, older_than=older_than, limit=batch_size)

    if not snapshots:
        logger.info("[Sweep] No stuck orders found.")
        return report

    logger.info(f"[Sweep] Found {len(snapshots)} stuck order(s).")

    entries = await asyncio.gather(
        *(_process_order(snap, verifier, timeout, factory) for snap in snapshots)
    )

    for entry in entries:
        report.processed += 1
        outcome = entry.get("outcome")
        if outcome in ("fulfilled", "already_fulfilled"):
            report.fulfilled += 1
        elif outcome == "on_chain_failure":
            report.failed += 1
        elif outcome == "pending":
            report.pending += 1
        else:
            report.errors += 1
        report.details.append(entry)

    logger.info(
        f"[Sweep] Done: {report.processed} processed, {report.fulfilled} fulfilled, "
        f"{report.failed} failed, {report.pending} pending, {report.errors} error(s)"
    )
    return report


# ════════════════════════════════════════════════════════════════════
# Background Scheduler
# ════════════════════════════════════════════════════════════════════

_sweep_task: Optional[asyncio.Task] = None
_is_running: bool = False
_errors_count: int = 0
_last_run_at: Optional[datetime] = None
_last_report: Optional[SweepReport] = None


async def _sweep_loop():
    """Run a sweep every `sweep_interval_seconds` until stopped."""
    global _is_running, _errors_count, _last_run_at, _last_report

    _is_running = True
    interval = settings.sweep_interval_seconds
    logger.info(f"Sweep scheduler started (every {interval}s, batch {settings.sweep_batch_size})")

    while _is_running:
        try:
            await asyncio.sleep(interval)
            _last_report = await run_sweep()
            _last_run_at = datetime.utcnow()
        except asyncio.CancelledError:
            logger.info("Sweep scheduler cancelled")
            break
        except Exception as e:
            _errors_count += 1
            logger.error(f"Sweep cycle error: {e}", exc_info=True)

    _is_running = False
    logger.info("Sweep scheduler stopped")


async def start():
    """Start the sweep scheduler as a background asyncio task."""
    global _sweep_task, _is_running

    if _sweep_task and not _sweep_task.done():
        logger.warning("Sweep scheduler already running")
        return

    _is_running = True
    _sweep_task = asyncio.create_task(_sweep_loop())


async def stop():
    """Stop the sweep scheduler gracefully."""
    global _sweep_task, _is_running
    _is_running = False

    if _sweep_task and not _sweep_task.done():
        _sweep_task.cancel()
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass

    _sweep_task = None


def get_status() -> dict:
    """Scheduler status for GET /cron/status."""
    return {
        "running": _is_running,
        "enabled": settings.sweep_enabled,
        "intervalSeconds": settings.sweep_interval_seconds,
        "batchSize": settings.sweep_batch_size,
        "stuckAfterSeconds": settings.sweep_stuck_after_seconds,
        "lastRunAt": _last_run_at.isoformat() if _last_run_at else None,
        "lastReport": (
            {k: v for k, v in _last_report.to_dict().items() if k != "details"} if _last_report else None
        ),
        "errorsCount": _errors_count,
    }
