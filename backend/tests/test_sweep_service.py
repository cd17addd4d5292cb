"""
Tests for the stuck order sweep.

Tests: find_stuck_orders eligibility, run_sweep batching and outcomes,
orders with several signatures, per-order timeout and error isolation,
scheduler start/stop/status.
"""
import os, sys
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from config import settings
from db_models import Order
from services import order_service, sweep_service
from services.solana_service import SolanaVerifier
from services.verification import VerificationResult
from tests.fakes import FakeSolanaClient, ProofVerifier, StaticVerifier, entitlement_count, reload_order


def _sig(n: int) -> str:
    return f"{n:04d}" + "S" * 60


class SlowVerifier:
    async def verify(self, order, proof):
        await asyncio.sleep(5)
        return VerificationResult.verified()


class PickyVerifier:
    """Raises for one order, verifies the rest."""

    def __init__(self, bad_order_id):
        self.bad_order_id = bad_order_id

    async def verify(self, order, proof):
        if order.id == self.bad_order_id:
            raise RuntimeError("unexpected RPC payload")
        return VerificationResult.verified()


class TestFindStuckOrders:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_only_old_onchain_processing_orders_with_signatures(self, db_session, make_order):
        stuck = await make_order(payment_method="solana_usdc", signature=_sig(1), age_seconds=600)
        await make_order(payment_method="solana_usdc", signature=_sig(2))                    # too fresh
        await make_order(payment_method="solana_usdc", age_seconds=600)                      # no signature yet
        await make_order(payment_method="card_split", reference="ref_old", age_seconds=600)  # card rail

        found = await sweep_service.find_stuck_orders(db_session, older_than=timedelta(seconds=120), limit=20)

        assert [s.id for s in found] == [stuck.id]
        assert found[0].signature == _sig(1)


class TestRunSweep:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_is_bounded_and_oldest_first(self, db_session, session_factory, make_order):
        orders = []
        for i in range(25):
            orders.append(
                await make_order(payment_method="solana_usdc", signature=_sig(i), age_seconds=3600 - i * 10)
            )

        report = await sweep_service.run_sweep(
            session_factory=session_factory,
            verifier=StaticVerifier(VerificationResult.verified()),
            batch_size=20,
        )

        assert report.processed == 20
        assert report.fulfilled == 20
        statuses = {}
        for order in orders:
            statuses[order.id] = (await reload_order(db_session, order.id)).status
        assert all(statuses[o.id] == "completed" for o in orders[:20])
        assert all(statuses[o.id] == "processing" for o in orders[20:])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_next_run_picks_up_the_rest(self, session_factory, make_order, db_session):
        for i in range(5):
            await make_order(payment_method="solana_usdc", signature=_sig(i), age_seconds=600 + i)
        verifier = StaticVerifier(VerificationResult.verified())

        first = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier, batch_size=3)
        second = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier, batch_size=3)
        third = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier, batch_size=3)

        assert (first.processed, second.processed, third.processed) == (3, 2, 0)
        assert await entitlement_count(db_session) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_onchain_failure_marks_order_failed(self, db_session, session_factory, make_order):
        order = await make_order(payment_method="solana_usdc", signature=_sig(1), age_seconds=600)
        failed = {"slot": 9, "err": {"InstructionError": [0, "Custom"]}, "confirmationStatus": "confirmed"}
        verifier = SolanaVerifier(client=FakeSolanaClient([failed]), max_attempts=1, poll_interval=0)

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert report.failed == 1
        assert report.details[0]["outcome"] == "on_chain_failure"
        order = await reload_order(db_session, order.id)
        assert order.status == "failed"
        assert "transaction_failed" in order.failure_reason
        assert await entitlement_count(db_session, order.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unconfirmed_order_stays_processing(self, db_session, session_factory, make_order):
        order = await make_order(payment_method="solana_usdc", signature=_sig(1), age_seconds=600)
        verifier = SolanaVerifier(client=FakeSolanaClient([None]), max_attempts=2, poll_interval=0)

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert report.pending == 1
        assert (await reload_order(db_session, order.id)).status == "processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_counts_as_pending(self, db_session, session_factory, make_order):
        order = await make_order(payment_method="solana_usdc", signature=_sig(1), age_seconds=600)

        report = await sweep_service.run_sweep(
            session_factory=session_factory, verifier=SlowVerifier(), per_order_timeout=0.05
        )

        assert report.pending == 1
        assert report.details[0]["reason"] == "timeout"
        assert (await reload_order(db_session, order.id)).status == "processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_bad_order_does_not_abort_the_run(self, db_session, session_factory, make_order):
        bad = await make_order(payment_method="solana_usdc", signature=_sig(1), age_seconds=700)
        good = await make_order(payment_method="solana_usdc", signature=_sig(2), age_seconds=600)

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=PickyVerifier(bad.id))

        assert report.errors == 1
        assert report.fulfilled == 1
        assert (await reload_order(db_session, bad.id)).status == "processing"
        assert (await reload_order(db_session, good.id)).status == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_run(self, session_factory):
        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=SlowVerifier())
        assert report.to_dict()["processed"] == 0


class TestMultipleSignatures:
    """Orders whose buyer retried the transfer carry several signatures."""

    async def _order_with_signatures(self, db_session, make_order, *signatures):
        order = await make_order(payment_method="solana_usdc", signature=signatures[0], age_seconds=600)
        for signature in signatures[1:]:
            order = await order_service.record_payment_attempt(db_session, order_id=order.id, signature=signature)
        return order

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_later_confirmed_signature_completes_the_order(self, db_session, session_factory, make_order):
        order = await self._order_with_signatures(db_session, make_order, _sig(1), _sig(2))
        verifier = ProofVerifier({
            _sig(1): VerificationResult.rejected("transaction_failed"),
            _sig(2): VerificationResult.verified(),
        })

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert report.fulfilled == 1
        assert report.failed == 0
        assert report.details[0]["signature"] == _sig(2)
        order = await reload_order(db_session, order.id)
        assert order.status == "completed"
        assert order.payment_reference == _sig(2)
        assert await entitlement_count(db_session, order.id) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_newest_signature_is_checked_first(self, db_session, session_factory, make_order):
        await self._order_with_signatures(db_session, make_order, _sig(1), _sig(2))
        verifier = ProofVerifier({_sig(2): VerificationResult.verified()})

        await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert verifier.proofs == [_sig(2)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_only_when_every_signature_is_rejected(self, db_session, session_factory, make_order):
        order = await self._order_with_signatures(db_session, make_order, _sig(1), _sig(2))
        verifier = ProofVerifier({
            _sig(1): VerificationResult.rejected("transaction_failed"),
            _sig(2): VerificationResult.rejected("transaction_failed"),
        })

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert report.failed == 1
        assert sorted(verifier.proofs) == [_sig(1), _sig(2)]
        assert (await reload_order(db_session, order.id)).status == "failed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unseen_signature_keeps_order_open(self, db_session, session_factory, make_order):
        order = await self._order_with_signatures(db_session, make_order, _sig(1), _sig(2))
        verifier = ProofVerifier({_sig(1): VerificationResult.rejected("transaction_failed")})

        report = await sweep_service.run_sweep(session_factory=session_factory, verifier=verifier)

        assert report.pending == 1
        assert report.details[0]["signature"] == _sig(2)
        assert (await reload_order(db_session, order.id)).status == "processing"



class TestSweepScheduler:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_and_stop(self, monkeypatch):
        monkeypatch.setattr(settings, "sweep_interval_seconds", 3600)

        await sweep_service.start()
        await asyncio.sleep(0)
        assert sweep_service.get_status()["running"] is True

        await sweep_service.stop()
        status = sweep_service.get_status()
        assert status["running"] is False
        assert status["intervalSeconds"] == 3600
