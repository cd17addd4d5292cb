"""
Fake payment rail clients and database helpers shared by the tests.
"""
import json
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Order, PurchasedItem
from exceptions import SolanaRPCError
from services.verification import VerificationResult

TEST_PAYSTACK_SECRET = "sk_test_fulfillment_pytest_only"
TEST_CRON_SECRET = "cron-secret-for-pytest-only"

SIGNATURE_A = "5" * 40 + "AAAA"
SIGNATURE_B = "4" * 40 + "BBBB"


# ── Fake Rail Clients ────────────────────────────────────────────────


class FakePaystackClient:
    """
    Stands in for PaystackClient.

    `transactions` maps reference -> data dict of a successful verify answer.
    Unknown references answer like Paystack does (HTTP 400, status false).
    """

    def __init__(self, transactions: dict | None = None, error: Exception | None = None):
        self.transactions = transactions or {}
        self.error = error
        self.calls: list[str] = []

    async def verify_transaction(self, reference: str):
        self.calls.append(reference)
        if self.error:
            raise self.error
        data = self.transactions.get(reference)
        if data is None:
            return 400, {"status": False, "message": "Transaction reference not found"}
        return 200, {"status": True, "message": "Verification successful", "data": data}


def paystack_charge(amount_minor: int, currency: str = "NGN", status: str = "success", reference: str = "ref") -> dict:
    return {
        "reference": reference,
        "status": status,
        "amount": amount_minor,
        "currency": currency,
        "paid_at": "2024-05-01T10:00:00.000Z",
    }


class FakeSolanaClient:
    """
    Stands in for SolanaRPCClient.

    `statuses` is replayed one per get_signature_status call (the last entry
    repeats); None means the node has not seen the signature yet.
    """

    def __init__(self, statuses=None, transaction=None, errors: int = 0):
        self.statuses = list(statuses) if statuses is not None else [None]
        self.transaction = transaction if transaction is not None else {"slot": 1, "meta": {"err": None}}
        self.errors = errors
        self.status_calls = 0

    async def get_signature_status(self, signature, search_transaction_history=True):
        self.status_calls += 1
        if self.errors:
            self.errors -= 1
            raise SolanaRPCError("node unavailable")
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def get_transaction(self, signature, commitment="confirmed"):
        return self.transaction

    async def get_slot(self):
        return 250_000_000


def confirmed_status(level: str = "confirmed") -> dict:
    return {"slot": 1, "confirmations": 10, "err": None, "confirmationStatus": level}


class StaticVerifier:
    """Verifier returning a fixed result; records which orders it was asked about."""

    def __init__(self, result):
        self.result = result
        self.seen: list[int] = []

    async def verify(self, order, proof):
        self.seen.append(order.id)
        return self.result


class ProofVerifier:
    """
    Verifier answering per proof.

    `results` maps proof -> VerificationResult; unknown proofs are indeterminate.
    """

    def __init__(self, results: dict):
        self.results = results
        self.proofs: list[str] = []

    async def verify(self, order, proof):
        self.proofs.append(proof)
        return self.results.get(proof, VerificationResult.indeterminate("not_found_within_budget"))


# ── Helpers ──────────────────────────────────────────────────────────


async def backdate(db: AsyncSession, order_id: int, seconds: int) -> None:
    await db.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(order_date=datetime.utcnow() - timedelta(seconds=seconds))
    )
    await db.commit()


async def reload_order(db: AsyncSession, order_id: int) -> Order:
    """Re-read an order written by another session."""
    res = await db.execute(
        select(Order).where(Order.id == order_id).execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def entitlement_count(db: AsyncSession, order_id: int | None = None) -> int:
    query = select(func.count(PurchasedItem.id))
    if order_id is not None:
        query = query.where(PurchasedItem.order_id == order_id)
    res = await db.execute(query)
    return res.scalar_one()


def signatures_of(order: Order) -> list[str]:
    return json.loads(order.transaction_signatures or "[]")
