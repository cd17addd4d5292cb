"""
Order service — checkout bookkeeping around the reconciliation core.

Creates orders + line items at checkout (status=pending) and records payment
attempts (card reference or on-chain signature, pending -> processing).
Never writes `completed`; that belongs to fulfillment_service.
"""
import json
import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Beat, LineItem, Order, PurchasedItem, Soundpack
from domain.constants import DEFAULT_LICENSE_TYPE
from domain.enums import FULFILLABLE_STATUSES, ItemType, OrderStatus, PaymentMethod
from domain.errors import ConflictError, NotFoundError, ValidationError
from services.verification import OrderSnapshot

logger = logging.getLogger(__name__)

_ITEM_MODELS = {ItemType.BEAT.value: Beat, ItemType.SOUNDPACK.value: Soundpack}


async def create_order(
    db: AsyncSession,
    *,
    buyer_id: int,
    items: list[dict],
    currency_code: str,
    payment_method: str,
    split_code: str | None = None,
) -> Order:
    """
    items: [{item_type:str, item_id:int, price_charged:float, license_type:str?}]
    """
    if not items:
        raise ValidationError("Cart is empty", field="items")
    if payment_method not in {m.value for m in PaymentMethod}:
        raise ValidationError(f"Unsupported payment method '{payment_method}'", field="payment_method")

    seen: set[tuple[str, int]] = set()
    for i in items:
        key = (i["item_type"], int(i["item_id"]))
        if key[0] not in _ITEM_MODELS:
            raise ValidationError(f"Unknown item type '{key[0]}'", field="items")
        if key in seen:
            raise ValidationError(f"Duplicate item {key[0]}:{key[1]} in cart", field="items")
        if float(i["price_charged"]) < 0:
            raise ValidationError("Price must not be negative", field="items")
        seen.add(key)

    for item_type, model in _ITEM_MODELS.items():
        ids = {item_id for t, item_id in seen if t == item_type}
        if not ids:
            continue
        res = await db.execute(select(model.id).where(model.id.in_(ids)))
        missing = ids - set(res.scalars().all())
        if missing:
            raise NotFoundError(item_type.capitalize(), ", ".join(str(m) for m in sorted(missing)))

    currency = currency_code.upper()
    order = Order(
        buyer_id=buyer_id,
        total_price=round(sum(float(i["price_charged"]) for i in items), 2),
        currency_code=currency,
        payment_method=payment_method,
        status=OrderStatus.PENDING.value,
        split_code=split_code,
        transaction_signatures=json.dumps([]),
        order_date=datetime.utcnow(),
    )
    db.add(order)
    await db.flush()

    for i in items:
        db.add(
            LineItem(
                order_id=order.id,
                item_type=i["item_type"],
                item_id=int(i["item_id"]),
                price_charged=float(i["price_charged"]),
                currency_code=currency,
                license_type=i.get("license_type") or DEFAULT_LICENSE_TYPE,
            )
        )
    await db.flush()

    logger.info(
        f"  🛒 Order {order.id} created: {len(items)} item(s), "
        f"{order.total_price} {currency} via {payment_method}"
    )
    return order


async def get_order(db: AsyncSession, order_id: int) -> Order | None:
    """Fresh read of the order and its line items (other sessions may have written it)."""
    res = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def require_order(db: AsyncSession, order_id: int) -> Order:
    order = await get_order(db, order_id)
    if not order:
        raise NotFoundError("Order", str(order_id))
    return order


async def find_order_by_proof(db: AsyncSession, proof: str) -> Order | None:
    """Order that has recorded `proof` (card reference or on-chain signature), if any."""
    encoded = json.dumps(proof)
    res = await db.execute(
        select(Order).where(
            (Order.payment_reference == proof)
            | Order.transaction_signatures.contains(encoded, autoescape=True)
            | Order.attempted_references.contains(encoded, autoescape=True)
        )
    )
    return res.scalars().first()


async def record_payment_attempt(
    db: AsyncSession,
    *,
    order_id: int,
    reference: str | None = None,
    signature: str | None = None,
) -> Order:
    """
    Store the payment proof on the order and move it pending -> processing.

    Every proof is appended to the order's list for its rail and never
    replaces an earlier one, so a mistyped callback cannot hide the real
    reference from the webhook. payment_reference is only filled when empty.

    The status move is a compare-and-swap, so a concurrent fulfillment that
    already completed the order is never pulled back. Terminal orders are
    returned unchanged.
    """
    if not reference and not signature:
        raise ValidationError("A payment reference or signature is required")

    order = await require_order(db, order_id)
    if order.status in (OrderStatus.COMPLETED.value, OrderStatus.FAILED.value):
        return order

    for proof in (reference, signature):
        other = await find_order_by_proof(db, proof) if proof else None
        if other is not None and other.id != order_id:
            raise ConflictError(
                "Payment proof is already recorded on another order",
                details={"orderId": order_id, "otherOrderId": other.id},
            )

    values: dict = {}
    if reference:
        references = order.references
        if reference not in references:
            references.append(reference)
        values["attempted_references"] = json.dumps(references)
    if signature:
        signatures = order.signatures
        if signature not in signatures:
            signatures.append(signature)
        values["transaction_signatures"] = json.dumps(signatures)
    if not order.payment_reference:
        values["payment_reference"] = reference or signature

    try:
        await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(FULFILLABLE_STATUSES))
            .values(status=OrderStatus.PROCESSING.value, **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError(
            "Payment proof is already recorded on another order",
            details={"orderId": order_id},
        )
    await db.refresh(order)

    logger.info(f"  Payment attempt recorded for order {order_id} (status={order.status})")
    return order


async def claim_payment_proof(db: AsyncSession, order_id: int, proof: str) -> bool:
    """
    Bind a verified proof to the order before fulfilling it.

    payment_reference is unique, so when two orders race to claim the same
    payment only one succeeds. Returns False when another order holds it.
    Completed orders keep the proof they were fulfilled with.
    """
    try:
        await db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(FULFILLABLE_STATUSES))
            .values(payment_reference=proof)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.warning(f"  Proof {proof[:12]}... is already claimed by another order; not claiming for {order_id}")
        return False
    return True


async def list_buyer_purchases(
    db: AsyncSession,
    buyer_id: int,
    *,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[PurchasedItem], int]:
    """A page of the buyer's entitlements, newest first, plus the total count."""
    total_res = await db.execute(
        select(func.count(PurchasedItem.id)).where(PurchasedItem.user_id == buyer_id)
    )
    res = await db.execute(
        select(PurchasedItem)
        .where(PurchasedItem.user_id == buyer_id)
        .order_by(PurchasedItem.purchase_date.desc(), PurchasedItem.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return res.scalars().all(), total_res.scalar_one()


def snapshot(order: Order, signature: str | None = None) -> OrderSnapshot:
    """Detach the fields verifiers need from the ORM row (`signature` defaults to the newest)."""
    signatures = tuple(order.signatures)
    if signature is None and signatures:
        signature = signatures[-1]
    return OrderSnapshot(
        id=order.id,
        total_price=order.total_price,
        currency_code=order.currency_code,
        payment_method=order.payment_method,
        signature=signature,
        signatures=signatures,
    )


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "buyerId": order.buyer_id,
        "status": order.status,
        "totalPrice": order.total_price,
        "currencyCode": order.currency_code,
        "paymentMethod": order.payment_method,
        "paymentReference": order.payment_reference,
        "transactionSignatures": order.signatures,
        "attemptedReferences": order.references,
        "failureReason": order.failure_reason,
        "orderDate": order.order_date.isoformat() if order.order_date else None,
        "completedAt": order.completed_at.isoformat() if order.completed_at else None,
        "lineItems": [
            {
                "itemType": li.item_type,
                "itemId": li.item_id,
                "priceCharged": li.price_charged,
                "currencyCode": li.currency_code,
                "licenseType": li.license_type,
            }
            for li in order.line_items
        ],
    }


def serialize_purchase(p: PurchasedItem) -> dict:
    return {
        "itemType": p.item_type,
        "itemId": p.item_id,
        "licenseType": p.license_type,
        "orderId": p.order_id,
        "currencyCode": p.currency_code,
        "purchaseDate": p.purchase_date.isoformat() if p.purchase_date else None,
    }
