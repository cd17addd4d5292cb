"""
SQLAlchemy ORM models for the Beat Marketplace fulfillment service.

Tables:
    users            — buyers and producers
    beats            — single beats (carry purchase_count)
    soundpacks       — sample/sound packs (carry purchase_count)
    orders           — one row per checkout, moves pending -> processing -> completed
    line_items       — purchased units of an order (immutable)
    purchased_items  — entitlements, unique per (order, item): the idempotency boundary
    notifications    — purchase / sale / payout alerts
    payouts          — producer transfers reported by the Paystack webhook
"""
import json
from datetime import datetime

from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text, ForeignKey,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship

from database import Base


def _decode_list(raw: str | None) -> list[str]:
    """JSON list column -> list of strings (empty when unset or corrupt)."""
    try:
        value = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    return [s for s in value if isinstance(s, str)] if isinstance(value, list) else []


class User(Base):
    """Marketplace accounts (buyers and producers)."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(100), nullable=True)
    role = Column(String(20), nullable=False, default="buyer")  # "buyer" | "producer" | "admin"
    created_at = Column(DateTime, default=datetime.utcnow)


class Beat(Base):
    """A beat listed by a producer."""
    __tablename__ = "beats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    producer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    purchase_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class Soundpack(Base):
    """A soundpack listed by a producer."""
    __tablename__ = "soundpacks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    producer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    purchase_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


# ════════════════════════════════════════════════════════════════════
# Orders
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    """
    One checkout.

    Lifecycle:
        1. Checkout creates the order + line items (status=pending)
        2. A payment attempt records the reference/signature (status=processing)
        3. Fulfillment grants entitlements (status=completed, terminal)
    The sweep may move an on-chain order to status=failed once every recorded
    signature is definitively rejected.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    total_price = Column(Float, nullable=False, default=0.0)  # major units (naira, dollars)
    currency_code = Column(String(10), nullable=False, default="NGN")
    payment_method = Column(String(30), nullable=False)  # card_split | solana_usdc
    status = Column(String(20), nullable=False, default="pending", index=True)
    # Proof that paid for the order once verified; before that, the first proof recorded.
    # Unique so one payment can never be claimed by two orders.
    payment_reference = Column(String(128), nullable=True, unique=True, index=True)
    transaction_signatures = Column(Text, nullable=True)  # JSON list of on-chain signatures
    attempted_references = Column(Text, nullable=True)  # JSON list of card references
    split_code = Column(String(64), nullable=True)  # Paystack split group
    failure_reason = Column(String(200), nullable=True)
    order_date = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)

    line_items = relationship("LineItem", back_populates="order", lazy="selectin")

    __table_args__ = (
        # For the stuck order sweep: status + method, oldest first
        Index("ix_orders_status_method_date", "status", "payment_method", "order_date"),
    )

    @property
    def signatures(self) -> list[str]:
        """Decoded transaction_signatures, oldest first."""
        return _decode_list(self.transaction_signatures)

    @property
    def references(self) -> list[str]:
        """Decoded attempted_references, oldest first."""
        return _decode_list(self.attempted_references)


class LineItem(Base):
    """One purchased unit within an order. Never updated after checkout."""
    __tablename__ = "line_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    item_type = Column(String(20), nullable=False, default="beat")  # beat | soundpack
    item_id = Column(Integer, nullable=False, index=True)
    price_charged = Column(Float, nullable=False, default=0.0)
    currency_code = Column(String(10), nullable=False, default="NGN")
    license_type = Column(String(30), nullable=False, default="basic")

    order = relationship("Order", back_populates="line_items")


class PurchasedItem(Base):
    """
    Permanent access grant for a purchased beat or soundpack.

    At most one row per (order, item); fulfillment relies on this constraint
    as the backstop of its compare-and-swap on the order status.
    """
    __tablename__ = "purchased_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    item_type = Column(String(20), nullable=False)
    item_id = Column(Integer, nullable=False)
    license_type = Column(String(30), nullable=False, default="basic")
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    currency_code = Column(String(10), nullable=False)
    purchase_date = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "item_type", "item_id", name="uq_purchased_order_item"),
        Index("ix_purchased_user_item", "user_id", "item_type", "item_id"),
    )


# ════════════════════════════════════════════════════════════════════
# Notifications & Payouts
# ════════════════════════════════════════════════════════════════════

class Notification(Base):
    """User-facing message. Side-effect of fulfillment, never read by it."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    title = Column(String(200), nullable=False)
    body = Column(Text, nullable=False)
    notification_type = Column(String(20), nullable=False, default="purchase")
    related_entity_type = Column(String(30), nullable=True)
    related_entity_id = Column(Integer, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_date = Column(DateTime, default=datetime.utcnow, index=True)


class Payout(Base):
    """Producer transfer, updated by transfer.success / transfer.failed webhooks."""
    __tablename__ = "payouts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    producer_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="pending")  # pending | success | failed
    transaction_reference = Column(String(128), unique=True, nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    transaction_details = Column(Text, nullable=True)  # raw webhook data (JSON)
    payout_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
