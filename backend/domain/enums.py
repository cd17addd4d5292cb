"""
Domain enums (minimal set used for clarity in services).
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(str, Enum):
    CARD_SPLIT = "card_split"
    SOLANA_USDC = "solana_usdc"


class ItemType(str, Enum):
    BEAT = "beat"
    SOUNDPACK = "soundpack"


class NotificationType(str, Enum):
    PURCHASE = "purchase"
    SALE = "sale"
    PAYOUT = "payout"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


# Statuses from which fulfillment may still complete an order
FULFILLABLE_STATUSES = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)
