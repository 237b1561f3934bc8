"""
Payment record store tests: idempotent attempts, terminal states and the event journal.
"""
from decimal import Decimal

import pytest

from jetsetters.errors import InconsistentState, ValidationError
from jetsetters.models import PaymentStatus
from jetsetters.services.payments import PaymentStore


@pytest.fixture
def store(session):
    return PaymentStore(session)


@pytest.fixture
def record(store, quote):
    async def _record(order_id="ORDER-1"):
        return await store.record_attempt(quote.id, quote.total_amount, "USD", order_id)
    return _record


class TestPaymentStore:

    @pytest.mark.asyncio
    async def test_record_attempt_is_idempotent(self, store, record):
        first = await record()
        second = await record()
        assert first.id == second.id
        assert first.payment_status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_order_id_reuse_with_other_amount_fails(self, store, record, quote):
        await record()
        with pytest.raises(ValidationError):
            await store.record_attempt(quote.id, Decimal("1.00"), "USD", "ORDER-1")

    @pytest.mark.asyncio
    async def test_completion_and_refund(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1", payment_method="VISA")
        await store.mark_refunded(payment.id, Decimal("235.00"), "refund-1", "customer request")

        assert payment.payment_status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("235.00")
        refunds = await store.list_refunds(payment.id)
        assert [r.gateway_transaction_id for r in refunds] == ["refund-1"]

    @pytest.mark.asyncio
    async def test_same_refund_twice_is_noop(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1")
        await store.mark_refunded(payment.id, Decimal("235.00"), "refund-1")
        await store.mark_refunded(payment.id, Decimal("235.00"), "refund-1")
        assert len(await store.list_refunds(payment.id)) == 1

    @pytest.mark.asyncio
    async def test_terminal_states_cannot_be_left(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1")
        await store.mark_voided(payment.id)
        # repeating the terminal write is fine
        await store.mark_voided(payment.id)

        with pytest.raises(InconsistentState):
            await store.mark_refunded(payment.id, Decimal("235.00"), "refund-1")
        with pytest.raises(InconsistentState):
            await store.mark_refund_pending(payment.id, "late")
        assert await store.list_refunds(payment.id) == []

    @pytest.mark.asyncio
    async def test_pending_cannot_be_refunded(self, store, record):
        payment = await record()
        with pytest.raises(InconsistentState):
            await store.mark_refunded(payment.id, Decimal("10.00"), "refund-1")

    @pytest.mark.asyncio
    async def test_refund_pending_can_still_be_refunded(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1")
        await store.mark_refund_pending(payment.id, "gateway down")
        await store.mark_refunded(payment.id, Decimal("235.00"), "refund-1")
        assert payment.payment_status == PaymentStatus.REFUNDED.value

    @pytest.mark.asyncio
    async def test_events_are_journalled(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1")
        events = await store.list_events(payment.id)
        assert [e.event_type for e in events] == ["attempt_recorded", "completed"]
        assert events[-1].from_status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_version_increments(self, store, record):
        payment = await record()
        version = payment.version
        await store.mark_completed(payment.id, "1")
        assert payment.version > version

    @pytest.mark.asyncio
    async def test_stale_writer_conflicts(self, session_factory, quote):
        async with session_factory() as first_session, session_factory() as second_session:
            first = PaymentStore(first_session)
            payment = await first.record_attempt(quote.id, quote.total_amount, "USD", "ORDER-STALE")

            second = PaymentStore(second_session)
            stale = await second.get(payment.id)

            await first.mark_completed(payment.id, "1")
            with pytest.raises(InconsistentState):
                await second.mark_failed(stale.id, "declined")

    @pytest.mark.asyncio
    async def test_partial_refund_leaves_balance_reversible(self, store, record):
        payment = await record()
        await store.mark_completed(payment.id, "1")
        await store.mark_refunded(payment.id, Decimal("50.00"), "refund-1")
        await store.mark_refunded(payment.id, Decimal("10.00"), "refund-2")
        assert payment.payment_status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("60.00")

        with pytest.raises(ValidationError):
            await store.mark_refunded(payment.id, Decimal("200.00"), "refund-3")

        await store.mark_refunded(payment.id, Decimal("175.00"), "refund-3")
        assert payment.refunded_amount == Decimal("235.00")
        with pytest.raises(InconsistentState):
            await store.mark_refunded(payment.id, Decimal("1.00"), "refund-4")
        with pytest.raises(InconsistentState):
            await store.mark_refund_pending(payment.id, "late")
        assert len(await store.list_refunds(payment.id)) == 3
