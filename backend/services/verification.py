"""
Ledger verification contract shared by both payment rails.

A verifier answers one question: did payment P for order O actually clear on
the authoritative rail? It never trusts client-supplied success flags and never
touches the database; callers pass a detached OrderSnapshot.

Result is tri-state:
    verified       — the rail confirms the payment
    rejected       — the rail says the payment definitively did not happen
    indeterminate  — no definitive answer within the budget; retry later
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class OrderSnapshot:
    """The order fields a verifier needs, copied out of the ORM row."""
    id: int
    total_price: float
    currency_code: str
    payment_method: str
    signature: str | None = None
    signatures: tuple[str, ...] = ()  # every recorded signature, oldest first


@dataclass
class VerificationResult:
    status: VerificationStatus
    reason: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def verified(cls, **details) -> "VerificationResult":
        return cls(VerificationStatus.VERIFIED, "ok", details)

    @classmethod
    def rejected(cls, reason: str, **details) -> "VerificationResult":
        return cls(VerificationStatus.REJECTED, reason, details)

    @classmethod
    def indeterminate(cls, reason: str, **details) -> "VerificationResult":
        return cls(VerificationStatus.INDETERMINATE, reason, details)

    @property
    def is_verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED

    @property
    def is_rejected(self) -> bool:
        return self.status is VerificationStatus.REJECTED

    @property
    def is_indeterminate(self) -> bool:
        return self.status is VerificationStatus.INDETERMINATE

    def to_dict(self) -> dict:
        return {"status": self.status.value, "reason": self.reason, "details": self.details}


class Verifier:
    """Strategy interface: one implementation per payment rail."""

    payment_method: str = ""

    async def verify(self, order: OrderSnapshot, proof: str) -> VerificationResult:
        """
        Args:
            order: snapshot of the order being paid
            proof: provider reference (card rail) or transaction signature (on-chain rail)
        """
        raise NotImplementedError

