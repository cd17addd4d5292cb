"""
Fulfillment service: the single choke point that turns a verified payment into
entitlements.

Called by the client callback, the Paystack webhook and the stuck order sweep,
possibly at the same moment for the same order. Correctness does not depend on
the callers coordinating:

    1. The first statement of the unit of work is a compare-and-swap:
           UPDATE orders SET status='completed' WHERE id=:id AND status IN (pending, processing)
       The row/write lock it takes serializes concurrent callers. The loser
       re-evaluates the WHERE clause after the winner commits and matches 0 rows.
    2. Entitlements, purchase counters and notifications are written in the
       same transaction. Any failure rolls everything back, including the status.
    3. purchased_items has a UNIQUE (order_id, item_type, item_id) backstop.

Only this module writes `completed`, `failed` or entitlement rows.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import async_session
from db_models import Beat, LineItem, Notification, Order, PurchasedItem, Soundpack
from domain.constants import PURCHASE_NOTIFICATION_TITLE, SALE_NOTIFICATION_TITLE
from domain.enums import FULFILLABLE_STATUSES, ItemType, NotificationType, OrderStatus
from domain.errors import ConflictError, DomainError, FulfillmentError, NotFoundError, OrderPreconditionError

logger = logging.getLogger(__name__)

ITEM_MODELS = {
    ItemType.BEAT.value: Beat,
    ItemType.SOUNDPACK.value: Soundpack,
}


class FulfillmentStatus(str, Enum):
    FULFILLED = "fulfilled"
    ALREADY_FULFILLED = "already_fulfilled"


@dataclass
class FulfillmentResult:
    order_id: int
    status: FulfillmentStatus
    granted_count: int = 0
    notifications_count: int = 0

    @property
    def already_fulfilled(self) -> bool:
        return self.status is FulfillmentStatus.ALREADY_FULFILLED

    def to_dict(self) -> dict:
        return {
            "orderId": self.order_id,
            "status": self.status.value,
            "grantedCount": self.granted_count,
            "notificationsCount": self.notifications_count,
        }


# ════════════════════════════════════════════════════════════════════
# Helpers
# ════════════════════════════════════════════════════════════════════


async def _load_items(db: AsyncSession, line_items: list[LineItem]) -> dict[tuple[str, int], object]:
    """Fetch the Beat/Soundpack rows referenced by the line items, keyed by (type, id)."""
    found: dict[tuple[str, int], object] = {}
    for item_type, model in ITEM_MODELS.items():
        ids = {li.item_id for li in line_items if li.item_type == item_type}
        if not ids:
            continue
        res = await db.execute(select(model).where(model.id.in_(ids)))
        for row in res.scalars().all():
            found[(item_type, row.id)] = row
    return found


async def _existing_entitlements(db: AsyncSession, order_id: int) -> set[tuple[str, int]]:
    res = await db.execute(
        select(PurchasedItem.item_type, PurchasedItem.item_id).where(PurchasedItem.order_id == order_id)
    )
    return {(row.item_type, row.item_id) for row in res.all()}


def _build_notifications(order: Order, granted: list[tuple[LineItem, object]]) -> list[Notification]:
    """
    One confirmation for the buyer, one sale alert per distinct producer.

    A producer buying their own item does not get a sale alert.
    """
    notifications = [
        Notification(
            recipient_id=order.buyer_id,
            title=PURCHASE_NOTIFICATION_TITLE,
            body=(
                f"Your purchase of {len(granted)} item(s) is complete. "
                "You can now download the full files from your library."
            ),
            notification_type=NotificationType.PURCHASE.value,
            related_entity_type="order",
            related_entity_id=order.id,
        )
    ]

    titles_by_producer: dict[int, list[str]] = {}
    for _, item in granted:
        if item.producer_id == order.buyer_id:
            continue
        titles_by_producer.setdefault(item.producer_id, []).append(item.title)

    for producer_id, titles in titles_by_producer.items():
        notifications.append(
            Notification(
                recipient_id=producer_id,
                sender_id=order.buyer_id,
                title=SALE_NOTIFICATION_TITLE,
                body=f"You sold {', '.join(titles)}.",
                notification_type=NotificationType.SALE.value,
                related_entity_type="order",
                related_entity_id=order.id,
            )
        )
    return notifications


async def _resolve_unclaimed(db: AsyncSession, order_id: int) -> FulfillmentResult:
    """The compare-and-swap matched nothing: explain why without writing."""
    res = await db.execute(select(Order.status).where(Order.id == order_id))
    status = res.scalar_one_or_none()
    if status is None:
        logger.error(f"Fulfillment requested for unknown order {order_id}")
        raise NotFoundError("Order", str(order_id))
    if status == OrderStatus.COMPLETED.value:
        logger.info(f"  Order {order_id} already fulfilled (no-op)")
        return FulfillmentResult(order_id=order_id, status=FulfillmentStatus.ALREADY_FULFILLED)
    logger.error(f"Order {order_id} is {status}; refusing to fulfill")
    raise ConflictError(f"Order {order_id} cannot be fulfilled from status '{status}'", details={"status": status})


# ════════════════════════════════════════════════════════════════════
# Public API
# ════════════════════════════════════════════════════════════════════


async def finalize_order_fulfillment(
    order_id: int,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> FulfillmentResult:
    """
    Atomically grant everything an order bought. Safe to call any number of times.

    Args:
        order_id: the order to fulfill; payment must already be verified by the caller
        session_factory: session maker owning the transaction (defaults to the app's)

    Returns:
        FulfillmentResult: FULFILLED with the number of new entitlements, or
        ALREADY_FULFILLED with zero writes.

    Raises:
        NotFoundError: order does not exist (nothing written)
        ConflictError: order is in a terminal failure state (nothing written)
        OrderPreconditionError: order has no line items or references missing items (rolled back)
        FulfillmentError: database failure mid-way (rolled back, safe to retry)
    """
    factory = session_factory or async_session

    async with factory() as db:
        try:
            claim = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status.in_(FULFILLABLE_STATUSES))
                .values(status=OrderStatus.COMPLETED.value, completed_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await db.rollback()
                return await _resolve_unclaimed(db, order_id)

            res = await db.execute(select(Order).where(Order.id == order_id))
            order = res.scalar_one()
            line_items = list(order.line_items)
            if not line_items:
                raise OrderPreconditionError(f"Order {order_id} has no line items")

            items = await _load_items(db, line_items)
            missing = [(li.item_type, li.item_id) for li in line_items if (li.item_type, li.item_id) not in items]
            if missing:
                raise OrderPreconditionError(
                    f"Order {order_id} references unknown items",
                    details={"missing": [f"{t}:{i}" for t, i in missing]},
                )

            granted_keys = await _existing_entitlements(db, order_id)
            granted: list[tuple[LineItem, object]] = []
            for li in line_items:
                key = (li.item_type, li.item_id)
                if key in granted_keys:
                    continue
                db.add(
                    PurchasedItem(
                        user_id=order.buyer_id,
                        item_type=li.item_type,
                        item_id=li.item_id,
                        license_type=li.license_type,
                        order_id=order.id,
                        currency_code=li.currency_code or order.currency_code,
                    )
                )
                model = ITEM_MODELS[li.item_type]
                await db.execute(
                    update(model)
                    .where(model.id == li.item_id)
                    .values(purchase_count=model.purchase_count + 1)
                    .execution_options(synchronize_session=False)
                )
                granted_keys.add(key)
                granted.append((li, items[key]))

            if not granted:
                # Entitlements were already in place; only the status needed repair
                await db.commit()
                logger.info(f"  Order {order_id}: entitlements already present, status set to completed")
                return FulfillmentResult(order_id=order_id, status=FulfillmentStatus.ALREADY_FULFILLED)

            notifications = _build_notifications(order, granted)
            db.add_all(notifications)
            await db.flush()
            await db.commit()

        except DomainError:
            await db.rollback()
            raise
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Fulfillment of order {order_id} rolled back: {e}", exc_info=True)
            raise FulfillmentError(details={"orderId": order_id}) from e

    logger.info(
        f"  ✅ Order {order_id} fulfilled: {len(granted)} entitlement(s), "
        f"{len(notifications)} notification(s)"
    )
    return FulfillmentResult(
        order_id=order_id,
        status=FulfillmentStatus.FULFILLED,
        granted_count=len(granted),
        notifications_count=len(notifications),
    )


async def mark_order_failed(
    order_id: int,
    reason: str,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> bool:
    """
    Move a processing order to the terminal `failed` state after a definitive
    on-chain rejection. Returns False if the order was not processing anymore.
    """
    factory = session_factory or async_session

    async with factory() as db:
        try:
            res = await db.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == OrderStatus.PROCESSING.value)
                .values(status=OrderStatus.FAILED.value, failure_reason=reason[:200])
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Could not mark order {order_id} failed: {e}")
            raise FulfillmentError("Could not update order status", details={"orderId": order_id}) from e

    changed = res.rowcount == 1
    if changed:
        logger.warning(f"  ⚠️ Order {order_id} → failed ({reason})")
    return changed
