"""
Paystack Service — card / bank rail verification.

Handles:
    1. Server-to-server transaction verification (GET /transaction/verify/:reference)
    2. Webhook signature verification (HMAC-SHA512 of the raw body)

Security:
    - verify_webhook_signature() FAILS CLOSED when the secret key is missing
    - Amounts are compared in minor units computed with Decimal
    - A provider answer is only "verified" when status, amount AND currency match the order
"""
import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from config import settings
from domain.constants import MINOR_UNITS_PER_MAJOR
from domain.enums import PaymentMethod
from exceptions import PaystackAPIError
from services.verification import OrderSnapshot, VerificationResult, Verifier

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════
# API Client
# ════════════════════════════════════════════════════════════════════


class PaystackClient:
    """Minimal async client for the Paystack REST API."""

    def __init__(
        self,
        secret_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.paystack_secret_key
        self.base_url = (base_url or settings.paystack_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.paystack_timeout_seconds

    async def verify_transaction(self, reference: str) -> tuple[int, dict]:
        """
        Call the verification endpoint for a transaction reference.

        Returns:
            (http_status, json_body) for any answer below 500

        Raises:
            PaystackAPIError: network failure, timeout, 5xx or a non-JSON body
        """
        if not self.secret_key:
            raise PaystackAPIError("PAYSTACK_SECRET_KEY not configured")

        url = f"{self.base_url}/transaction/verify/{reference}"
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            raise PaystackAPIError(f"Paystack request failed: {e}") from e

        if response.status_code >= 500:
            raise PaystackAPIError(
                f"Paystack API error: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as e:
            raise PaystackAPIError(
                "Paystack returned a non-JSON body", status_code=response.status_code
            ) from e
        return response.status_code, body


def to_minor_units(amount: float) -> int:
    """Convert a major-unit price (e.g. 10000.0 NGN) to Paystack minor units (kobo)."""
    value = Decimal(str(amount)) * MINOR_UNITS_PER_MAJOR
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ════════════════════════════════════════════════════════════════════
# Verifier
# ════════════════════════════════════════════════════════════════════


class PaystackVerifier(Verifier):
    """Card-rail verifier: the Paystack verify endpoint is the ground truth."""

    payment_method = PaymentMethod.CARD_SPLIT.value

    def __init__(self, client: Optional[PaystackClient] = None):
        self.client = client or PaystackClient()

    async def verify(self, order: OrderSnapshot, proof: str) -> VerificationResult:
        reference = proof
        if not reference:
            return VerificationResult.rejected("missing_reference")

        try:
            http_status, body = await self.client.verify_transaction(reference)
        except PaystackAPIError as e:
            logger.warning(f"  Paystack verification unavailable for order {order.id}: {e}")
            return VerificationResult.indeterminate("provider_unreachable", error=str(e))

        data = body.get("data") or {}
        if http_status >= 400 or body.get("status") is not True or not isinstance(data, dict):
            logger.info(f"  Paystack does not know reference {reference} (HTTP {http_status})")
            return VerificationResult.rejected(
                "reference_not_found",
                http_status=http_status,
                message=body.get("message"),
            )

        charge_status = data.get("status")
        if charge_status != "success":
            return VerificationResult.rejected("charge_not_successful", charge_status=charge_status)

        expected_amount = to_minor_units(order.total_price)
        paid_amount = data.get("amount")
        if paid_amount != expected_amount:
            logger.warning(
                f"  Amount mismatch for order {order.id}: expected {expected_amount}, "
                f"Paystack verified {paid_amount} ({reference})"
            )
            return VerificationResult.rejected(
                "amount_mismatch", expected=expected_amount, received=paid_amount
            )

        paid_currency = (data.get("currency") or "").upper()
        if paid_currency != order.currency_code.upper():
            return VerificationResult.rejected(
                "currency_mismatch", expected=order.currency_code, received=paid_currency
            )

        return VerificationResult.verified(
            reference=reference,
            amount=paid_amount,
            currency=paid_currency,
            paid_at=data.get("paid_at"),
        )


# ════════════════════════════════════════════════════════════════════
# Webhook Verification
# ════════════════════════════════════════════════════════════════════


def verify_webhook_signature(payload: bytes, signature: str, secret_key: str | None = None) -> bool:
    """
    Verify a Paystack webhook HMAC-SHA512 signature.

    Paystack signs the raw request body with the account's secret key.
    FAILS CLOSED when the secret is not configured.
    """
    secret = secret_key if secret_key is not None else settings.paystack_secret_key
    if not secret:
        logger.error(
            "PAYSTACK_SECRET_KEY not configured, rejecting webhook. "
            "Set PAYSTACK_SECRET_KEY in .env to accept Paystack webhooks."
        )
        return False

    if not signature:
        logger.warning("Webhook received without signature header")
        return False

    expected = hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
