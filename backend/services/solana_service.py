"""
Solana Service — on-chain (USDC) payment verification.

Polls the RPC node for a transaction signature until it reaches the required
commitment. Propagation lag is expected: a signature that is not visible yet is
retried, not rejected. Only an explicit on-chain error is a rejection.

Budget: max_attempts x poll_interval (default 20 x 3s ~= 60s). Exhausting it
yields `indeterminate` and the order is left for the stuck order sweep.
"""
import asyncio
import logging
from typing import Optional

from config import settings
from domain.constants import COMMITMENT_LEVELS
from domain.enums import PaymentMethod
from services.verification import OrderSnapshot, VerificationResult, Verifier
from solana_client import SolanaRPCClient, solana_client

logger = logging.getLogger(__name__)


def meets_commitment(confirmation_status: str | None, required: str) -> bool:
    """True when `confirmation_status` is at least as strong as `required`."""
    if confirmation_status not in COMMITMENT_LEVELS:
        return False
    return COMMITMENT_LEVELS.index(confirmation_status) >= COMMITMENT_LEVELS.index(required)


class SolanaVerifier(Verifier):
    """On-chain verifier with bounded polling."""

    payment_method = PaymentMethod.SOLANA_USDC.value

    def __init__(
        self,
        client: Optional[SolanaRPCClient] = None,
        max_attempts: int | None = None,
        poll_interval: float | None = None,
        commitment: str | None = None,
    ):
        self.client = client or solana_client
        self.max_attempts = max_attempts if max_attempts is not None else settings.solana_poll_attempts
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.solana_poll_interval_seconds
        )
        self.commitment = commitment or settings.solana_commitment
        if self.commitment not in COMMITMENT_LEVELS:
            raise ValueError(f"Unknown commitment level: {self.commitment}")

    async def _check_once(self, signature: str) -> Optional[VerificationResult]:
        """One polling attempt. None means 'not definitive yet, poll again'."""
        status = await self.client.get_signature_status(signature)
        if status is None:
            return None

        if status.get("err"):
            return VerificationResult.rejected(
                "transaction_failed", error=status["err"], slot=status.get("slot")
            )

        if not meets_commitment(status.get("confirmationStatus"), self.commitment):
            return None

        tx = await self.client.get_transaction(signature, commitment=self.commitment)
        if tx is None:
            return None

        meta = tx.get("meta") or {}
        if meta.get("err"):
            return VerificationResult.rejected("transaction_failed", error=meta["err"], slot=tx.get("slot"))

        return VerificationResult.verified(
            signature=signature,
            slot=tx.get("slot"),
            confirmation_status=status.get("confirmationStatus"),
            block_time=tx.get("blockTime"),
        )

    async def verify(self, order: OrderSnapshot, proof: str) -> VerificationResult:
        signature = proof
        if not signature:
            return VerificationResult.rejected("missing_signature")

        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await self._check_once(signature)
                if result is not None:
                    logger.info(
                        f"  Signature {signature[:12]}... for order {order.id}: "
                        f"{result.status.value} ({result.reason}) after {attempt} attempt(s)"
                    )
                    return result
            except Exception as e:
                # RPC hiccups are not a rejection; count the attempt and poll again
                last_error = str(e)
                logger.warning(
                    f"  RPC error verifying order {order.id} "
                    f"(attempt {attempt}/{self.max_attempts}): {e}"
                )

            if attempt < self.max_attempts:
                await asyncio.sleep(self.poll_interval)

        logger.info(
            f"  Signature {signature[:12]}... for order {order.id} not confirmed "
            f"within {self.max_attempts} attempt(s); leaving for sweep"
        )
        return VerificationResult.indeterminate(
            "not_found_within_budget", attempts=self.max_attempts, last_error=last_error
        )
