"""
Tests for the Solana USDC rail.

Tests: SolanaVerifier polling budget, on-chain failures, propagation lag,
RPC errors; meets_commitment; SolanaRPCClient error mapping.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from exceptions import SolanaRPCError
from services.solana_service import SolanaVerifier, meets_commitment
from services.verification import OrderSnapshot, VerificationStatus
from solana_client import SolanaRPCClient
from tests.fakes import SIGNATURE_A, FakeSolanaClient, confirmed_status

ORDER = OrderSnapshot(id=7, total_price=25.0, currency_code="USDC", payment_method="solana_usdc", signature=SIGNATURE_A)


def _verifier(client, attempts=3):
    return SolanaVerifier(client=client, max_attempts=attempts, poll_interval=0)


class TestSolanaVerifier:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirmed_transaction_is_verified(self):
        client = FakeSolanaClient([confirmed_status()])
        result = await _verifier(client).verify(ORDER, SIGNATURE_A)

        assert result.status == VerificationStatus.VERIFIED
        assert result.details["signature"] == SIGNATURE_A
        assert client.status_calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signature_never_seen_is_indeterminate(self):
        client = FakeSolanaClient([None])
        result = await _verifier(client, attempts=4).verify(ORDER, SIGNATURE_A)

        assert result.status == VerificationStatus.INDETERMINATE
        assert result.reason == "not_found_within_budget"
        assert client.status_calls == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_transaction_is_rejected(self):
        failed = {"slot": 1, "confirmations": 3, "err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"}
        result = await _verifier(FakeSolanaClient([failed])).verify(ORDER, SIGNATURE_A)

        assert result.status == VerificationStatus.REJECTED
        assert result.reason == "transaction_failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_meta_error_is_rejected(self):
        client = FakeSolanaClient([confirmed_status()], transaction={"slot": 1, "meta": {"err": "InsufficientFunds"}})
        result = await _verifier(client).verify(ORDER, SIGNATURE_A)

        assert result.is_rejected

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_propagation_lag_then_confirmed(self):
        client = FakeSolanaClient([None, confirmed_status("processed"), confirmed_status("confirmed")])
        result = await _verifier(client, attempts=5).verify(ORDER, SIGNATURE_A)

        assert result.is_verified
        assert client.status_calls == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processed_only_is_not_enough(self):
        client = FakeSolanaClient([confirmed_status("processed")])
        result = await _verifier(client, attempts=2).verify(ORDER, SIGNATURE_A)

        assert result.is_indeterminate

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_finalized_requirement(self):
        client = FakeSolanaClient([confirmed_status("confirmed")])
        verifier = SolanaVerifier(client=client, max_attempts=2, poll_interval=0, commitment="finalized")

        assert (await verifier.verify(ORDER, SIGNATURE_A)).is_indeterminate

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rpc_errors_are_retried(self):
        client = FakeSolanaClient([confirmed_status()], errors=2)
        result = await _verifier(client, attempts=3).verify(ORDER, SIGNATURE_A)

        assert result.is_verified
        assert client.status_calls == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rpc_down_for_whole_budget_is_indeterminate(self):
        client = FakeSolanaClient([confirmed_status()], errors=10)
        result = await _verifier(client, attempts=2).verify(ORDER, SIGNATURE_A)

        assert result.is_indeterminate
        assert "node unavailable" in result.details["last_error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_signature_is_rejected(self):
        result = await _verifier(FakeSolanaClient()).verify(ORDER, "")
        assert result.reason == "missing_signature"

    @pytest.mark.unit
    def test_unknown_commitment_rejected_at_construction(self):
        with pytest.raises(ValueError):
            SolanaVerifier(client=FakeSolanaClient(), commitment="instant")


class TestMeetsCommitment:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status,required,expected",
        [
            ("processed", "confirmed", False),
            ("confirmed", "confirmed", True),
            ("finalized", "confirmed", True),
            ("confirmed", "finalized", False),
            (None, "processed", False),
        ],
    )
    def test_levels(self, status, required, expected):
        assert meets_commitment(status, required) is expected


class TestSolanaRPCClient:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_json_rpc_error_raises(self):
        request = httpx.Request("POST", "http://rpc.test")
        response = httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "Node is behind"}}, request=request)
        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            with pytest.raises(SolanaRPCError) as exc_info:
                await SolanaRPCClient(rpc_url="http://rpc.test").get_slot()
        assert exc_info.value.code == -32005

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        with patch("httpx.AsyncClient.post", new=AsyncMock(side_effect=httpx.ReadTimeout("slow"))):
            with pytest.raises(SolanaRPCError):
                await SolanaRPCClient(rpc_url="http://rpc.test").get_signature_status(SIGNATURE_A)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_signature_returns_none(self):
        request = httpx.Request("POST", "http://rpc.test")
        response = httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": 1, "result": {"context": {"slot": 5}, "value": [None]}},
            request=request,
        )
        with patch("httpx.AsyncClient.post", new=AsyncMock(return_value=response)):
            assert await SolanaRPCClient(rpc_url="http://rpc.test").get_signature_status(SIGNATURE_A) is None
