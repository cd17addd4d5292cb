"""
Pydantic models for request/response validation.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional

from domain.enums import ItemType, PaymentMethod


class ApiBase(BaseModel):
    """Shared base; allows construction by Python name or camelCase alias."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


# ── Checkout Models ─────────────────────────────────────────────────

class CartLine(ApiBase):
    """One beat or soundpack in the cart."""
    item_type: ItemType = Field(ItemType.BEAT, alias="itemType")
    item_id: int = Field(..., alias="itemId", gt=0)
    price_charged: float = Field(..., alias="priceCharged", ge=0)
    license_type: Optional[str] = Field(default=None, alias="licenseType", max_length=30)


class CreateOrderRequest(ApiBase):
    """Create an order at checkout (status=pending)."""
    buyer_id: int = Field(..., alias="buyerId", gt=0)
    items: List[CartLine] = Field(..., min_length=1)
    currency_code: str = Field("NGN", alias="currencyCode", min_length=3, max_length=10)
    payment_method: PaymentMethod = Field(..., alias="paymentMethod")
    split_code: Optional[str] = Field(default=None, alias="splitCode", max_length=64)


class PaymentAttemptRequest(ApiBase):
    """Record the proof of an in-flight payment (pending -> processing)."""
    reference: Optional[str] = Field(default=None, min_length=1, max_length=128)
    signature: Optional[str] = Field(default=None, min_length=32, max_length=128)


# ── Verification Callbacks ──────────────────────────────────────────

class PaystackVerifyRequest(ApiBase):
    """Client callback after the Paystack popup closes."""
    order_id: int = Field(..., alias="orderId", gt=0)
    reference: str = Field(..., min_length=1, max_length=128)


class SolanaVerifyRequest(ApiBase):
    """Client callback after the wallet submits the USDC transfer."""
    order_id: int = Field(..., alias="orderId", gt=0)
    signature: str = Field(..., min_length=32, max_length=128, description="Base58 transaction signature")
