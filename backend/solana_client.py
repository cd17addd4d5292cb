"""
Solana JSON-RPC client singleton.

Only the two read calls the payment verifier needs are exposed:
getSignatureStatuses and getTransaction.
"""
import itertools
import logging
from typing import Optional

import httpx

from config import settings
from exceptions import SolanaRPCError

logger = logging.getLogger(__name__)


class SolanaRPCClient:
    """Thin async JSON-RPC 2.0 client for a Solana node."""

    def __init__(self, rpc_url: str | None = None, timeout: float | None = None):
        self.rpc_url = rpc_url or settings.solana_rpc_url
        self.timeout = timeout if timeout is not None else settings.solana_timeout_seconds
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: list) -> Optional[dict]:
        """
        POST a single JSON-RPC request and return its `result`.

        Raises:
            SolanaRPCError: on transport errors, non-2xx answers or a JSON-RPC error object
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.rpc_url, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise SolanaRPCError(f"{method} request failed: {e}") from e
        except ValueError as e:
            raise SolanaRPCError(f"{method} returned invalid JSON") from e

        error = data.get("error")
        if error:
            raise SolanaRPCError(
                f"{method} error: {error.get('message', 'unknown')}",
                code=error.get("code"),
            )
        return data.get("result")

    async def get_signature_status(
        self,
        signature: str,
        search_transaction_history: bool = True,
    ) -> Optional[dict]:
        """
        Fetch the status of one signature.

        Returns:
            dict with `confirmationStatus`, `confirmations`, `err`, `slot`,
            or None when the node has not seen the signature yet.
        """
        result = await self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": search_transaction_history}],
        )
        values = (result or {}).get("value") or []
        return values[0] if values else None

    async def get_transaction(self, signature: str, commitment: str = "confirmed") -> Optional[dict]:
        """Fetch a parsed transaction at the given commitment, or None if not visible."""
        return await self._call(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": commitment,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )

    async def get_slot(self) -> int:
        """Current slot; used by the health check."""
        return await self._call("getSlot", [{"commitment": "confirmed"}])


# Global client instance
solana_client = SolanaRPCClient()
