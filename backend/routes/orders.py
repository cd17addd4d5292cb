"""
Order endpoints — checkout creation, payment attempts, buyer library.
"""
import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import User
from deps import Pagination, get_db, pagination_params, require_user
from domain.responses import paginated_response, success_response
from models import CreateOrderRequest, PaymentAttemptRequest
from services import order_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["orders"])


@router.post("/orders", status_code=status.HTTP_201_CREATED)
async def create_order(req: CreateOrderRequest, db: AsyncSession = Depends(get_db)):
    """Create an order and its line items (status=pending)."""
    order = await order_service.create_order(
        db,
        buyer_id=req.buyer_id,
        items=[
            {
                "item_type": line.item_type.value,
                "item_id": line.item_id,
                "price_charged": line.price_charged,
                "license_type": line.license_type,
            }
            for line in req.items
        ],
        currency_code=req.currency_code,
        payment_method=req.payment_method.value,
        split_code=req.split_code,
    )
    await db.commit()
    order = await order_service.require_order(db, order.id)
    return success_response(order_service.serialize_order(order))


@router.get("/orders/{order_id}")
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)):
    order = await order_service.require_order(db, order_id)
    return success_response(order_service.serialize_order(order))


@router.post("/orders/{order_id}/payment-attempt")
async def record_payment_attempt(
    order_id: int,
    req: PaymentAttemptRequest,
    db: AsyncSession = Depends(get_db),
):
    """Store the Paystack reference or Solana signature before the payer confirms."""
    order = await order_service.record_payment_attempt(
        db, order_id=order_id, reference=req.reference, signature=req.signature
    )
    return success_response(order_service.serialize_order(order))


@router.get("/users/{user_id}/purchases")
async def list_purchases(
    user: User = Depends(require_user),
    page: Pagination = Depends(pagination_params),
    db: AsyncSession = Depends(get_db),
):
    """Entitlements granted to a buyer, newest first."""
    items, total = await order_service.list_buyer_purchases(
        db, user.id, limit=page["limit"], offset=page["offset"]
    )
    return paginated_response(
        [order_service.serialize_purchase(p) for p in items],
        limit=page["limit"],
        offset=page["offset"],
        total=total,
    )
