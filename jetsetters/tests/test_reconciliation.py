"""
Checkout, reconciliation and cancellation scenarios end to end against the gateway simulator.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from jetsetters.errors import ValidationError, GatewayUnavailable, GatewayRejected, SupplierError
from jetsetters.models import (
    PaymentStatus, QuotePaymentStatus, QuoteStatus, InquiryStatus, BookingStatus, PaymentAction, utcnow
)
from jetsetters.services.payments import PaymentStore
from jetsetters.services.quotes import QuoteService
from jetsetters.services.status import effective_status


class TestCheckout:
    """Checkout creation guards."""

    @pytest.mark.asyncio
    async def test_checkout_records_pending_attempt(self, start_checkout, quote, arc):
        payment, session = await start_checkout(quote)
        assert payment.payment_status == PaymentStatus.PENDING.value
        assert payment.amount == quote.total_amount
        assert payment.session_id == session.session_id
        assert arc.orders[payment.gateway_order_id]["amount"] == Decimal("235.00")

    @pytest.mark.asyncio
    async def test_amount_mismatch_never_reaches_gateway(self, reconciliation, quote, arc):
        with pytest.raises(ValidationError):
            await reconciliation.start_checkout(
                quote_id=quote.id,
                amount="230.00",
                currency="USD",
                return_url="https://api.jetsetters.test/api/payments/callback",
            )
        assert arc.requests == []
        assert await PaymentStore(reconciliation.session).list_for_quote(quote.id) == []

    @pytest.mark.asyncio
    async def test_same_order_id_replays_session(self, start_checkout, quote, arc):
        first, first_session = await start_checkout(quote, order_id="ORDER-A")
        second, second_session = await start_checkout(quote, order_id="ORDER-A")
        assert first.id == second.id
        assert first_session.session_id == second_session.session_id
        assert len(arc.calls("POST", "/session")) == 1

    @pytest.mark.asyncio
    async def test_new_checkout_supersedes_unpaid_attempt(self, start_checkout, quote, session):
        old, _ = await start_checkout(quote, order_id="ORDER-A")
        new, _ = await start_checkout(quote, order_id="ORDER-B")
        await session.refresh(old)
        assert old.payment_status == PaymentStatus.FAILED.value
        assert "superseded" in old.failure_reason
        assert new.payment_status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_new_checkout_refused_when_old_attempt_was_paid(self, start_checkout, quote, arc, session):
        old, _ = await start_checkout(quote, order_id="ORDER-A")
        arc.pay("ORDER-A")
        with pytest.raises(ValidationError):
            await start_checkout(quote, order_id="ORDER-B")

        await session.refresh(old)
        assert old.payment_status == PaymentStatus.COMPLETED.value
        assert await PaymentStore(session).get_by_order_id("ORDER-B") is None

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_attempt_failed(self, start_checkout, quote, arc, session):
        arc.fail_session = True
        with pytest.raises(GatewayUnavailable):
            await start_checkout(quote, order_id="ORDER-A")
        payment = await PaymentStore(session).get_by_order_id("ORDER-A")
        assert payment.payment_status == PaymentStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_paid_quote_cannot_be_checked_out_again(self, paid_booking, start_checkout, quote):
        with pytest.raises(ValidationError):
            await start_checkout(quote, order_id="ORDER-NEW")

    @pytest.mark.asyncio
    async def test_lapsed_quote_refused_before_the_sweep_runs(self, start_checkout, session, quote, notifier, arc):
        await QuoteService(session, notifier=notifier).send_quote(quote.id, validity_days=1)
        quote.expires_at = utcnow() - timedelta(minutes=5)
        await session.commit()
        assert quote.status == QuoteStatus.SENT.value

        with pytest.raises(ValidationError):
            await start_checkout(quote)
        assert arc.requests == []


class TestReconcile:

    @pytest.mark.asyncio
    async def test_success_books_everything(self, paid_booking, session, quote, inquiry, notifier):
        booking, payment = paid_booking
        await session.refresh(quote)
        await session.refresh(inquiry)

        assert payment.payment_status == PaymentStatus.COMPLETED.value
        assert payment.arc_transaction_id == "1"
        assert payment.payment_method == "MASTERCARD"
        assert quote.payment_status == QuotePaymentStatus.PAID.value
        assert quote.status == QuoteStatus.ACCEPTED.value
        assert inquiry.status == InquiryStatus.BOOKED.value
        assert booking.status == BookingStatus.CONFIRMED.value
        assert booking.booking_reference.startswith("JS")
        assert "payment_received" in notifier.templates()

    @pytest.mark.asyncio
    async def test_reconcile_twice_is_stable(self, paid_booking, reconciliation):
        booking, payment = paid_booking
        again = await reconciliation.reconcile(payment_id=payment.id)
        assert again.payment_status == PaymentStatus.COMPLETED.value
        assert (await reconciliation.get_booking_for_payment(payment.id)).id == booking.id

    @pytest.mark.asyncio
    async def test_unpaid_order_stays_pending(self, start_checkout, reconciliation, quote):
        payment, _ = await start_checkout(quote)
        payment = await reconciliation.reconcile(payment_id=payment.id)
        assert payment.payment_status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_declined_payment(self, start_checkout, reconciliation, quote, arc, session):
        payment, _ = await start_checkout(quote)
        arc.decline(payment.gateway_order_id)
        payment = await reconciliation.reconcile(order_id=payment.gateway_order_id)
        await session.refresh(quote)
        assert payment.payment_status == PaymentStatus.FAILED.value
        assert quote.payment_status == QuotePaymentStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_callback_with_wrong_indicator_still_trusts_gateway(self, start_checkout, reconciliation, quote, arc):
        payment, _ = await start_checkout(quote)
        arc.pay(payment.gateway_order_id)
        payment = await reconciliation.handle_callback(payment.gateway_order_id, result_indicator="forged")
        assert payment.payment_status == PaymentStatus.COMPLETED.value
        events = await reconciliation.payments.list_events(payment.id)
        assert "result_indicator_mismatch" in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_gateway_failure_overwrites_completed_payment(self, paid_booking, reconciliation, session, quote, arc):
        _, payment = paid_booking
        order = arc.orders[payment.gateway_order_id]
        order["status"] = "FAILED"
        order["captured"] = Decimal("0")

        payment = await reconciliation.reconcile(payment_id=payment.id)
        await session.refresh(quote)
        assert payment.payment_status == PaymentStatus.FAILED.value
        assert quote.payment_status == QuotePaymentStatus.FAILED.value
        events = await reconciliation.payments.list_events(payment.id)
        assert "inconsistent_state" in [e.event_type for e in events]

    @pytest.mark.asyncio
    async def test_void_made_at_gateway_is_synced(self, paid_booking, reconciliation, session, quote, arc):
        _, payment = paid_booking
        order = arc.orders[payment.gateway_order_id]
        order["status"] = "CANCELLED"
        order["captured"] = Decimal("0")
        order["voided"] = True
        order["transactions"].append({
            "id": "desk-void", "type": "VOID_PAYMENT", "amount": Decimal("235.00"), "result": "SUCCESS",
            "gatewayCode": "APPROVED",
        })

        payment = await reconciliation.reconcile(payment_id=payment.id)
        await session.refresh(quote)
        assert payment.payment_status == PaymentStatus.VOIDED.value
        assert quote.payment_status == QuotePaymentStatus.VOIDED.value

    @pytest.mark.asyncio
    async def test_refund_made_at_gateway_after_partial_refund_is_synced(self, paid_booking, reconciliation, arc):
        _, payment = paid_booking
        await reconciliation.refund_payment(payment.id, amount="50.00", reason="goodwill")

        order = arc.orders[payment.gateway_order_id]
        order["refunded"] += Decimal("25.00")
        order["transactions"].append({
            "id": "desk-refund", "type": "REFUND", "amount": Decimal("25.00"), "result": "SUCCESS",
            "gatewayCode": "APPROVED",
        })

        payment = await reconciliation.reconcile(payment_id=payment.id)
        assert payment.payment_status == PaymentStatus.REFUNDED.value
        assert payment.refunded_amount == Decimal("75.00")
        refunds = await reconciliation.payments.list_refunds(payment.id)
        assert "desk-refund" in [r.gateway_transaction_id for r in refunds]

    @pytest.mark.asyncio
    async def test_poll_open_payments(self, start_checkout, reconciliation, quote, arc):
        payment, _ = await start_checkout(quote)
        arc.pay(payment.gateway_order_id)
        summary = await reconciliation.poll_open_payments()
        assert summary == {"checked": 1, "completed": 1, "failed": 0, "pending": 0, "errors": 0}

    @pytest.mark.asyncio
    async def test_every_reconcile_takes_the_payment_lock(self, start_checkout, reconciliation, quote, locks):
        payment, _ = await start_checkout(quote)
        await reconciliation.reconcile(payment_id=payment.id)
        assert locks.acquired == [str(payment.id)]


class TestCancellation:
    """Void/refund decisions when a booking is cancelled."""

    @pytest.mark.asyncio
    async def test_same_day_cancel_voids(self, paid_booking, reconciliation, session, quote):
        booking, payment = paid_booking
        result = await reconciliation.cancel_booking(booking.id, reason="change of plans", cancelled_by="customer")

        assert result.payment_action == PaymentAction.VOID.value
        assert result.refund_amount == Decimal("235.00")
        assert result.refund_pending is False
        await session.refresh(quote)
        assert quote.payment_status == QuotePaymentStatus.VOIDED.value
        assert quote.status == QuoteStatus.CANCELLED.value
        assert payment.payment_status == PaymentStatus.VOIDED.value
        assert payment.amount == Decimal("235.00")
        assert await reconciliation.payments.list_refunds(payment.id) == []
        assert booking.cancelled_by == "customer"

    @pytest.mark.asyncio
    async def test_settled_payment_is_refunded(self, paid_booking, reconciliation, session, quote, arc):
        booking, payment = paid_booking
        arc.settle(payment.gateway_order_id)
        result = await reconciliation.cancel_booking(booking.id, reason="schedule change")

        assert result.payment_action == PaymentAction.REFUND.value
        assert result.refund_amount == Decimal("235.00")
        await session.refresh(quote)
        assert quote.payment_status == QuotePaymentStatus.REFUNDED.value
        assert payment.payment_status == PaymentStatus.REFUNDED.value
        refunds = await reconciliation.payments.list_refunds(payment.id)
        assert [r.amount for r in refunds] == [Decimal("235.00")]
        assert len(arc.calls("PUT", "/transaction/void-")) == 1

    @pytest.mark.asyncio
    async def test_partial_amount_refunds_without_void(self, paid_booking, reconciliation, arc):
        booking, payment = paid_booking
        result = await reconciliation.cancel_booking(booking.id, reason="partial", amount="100.00")
        assert result.payment_action == PaymentAction.REFUND.value
        assert result.refund_amount == Decimal("100.00")
        assert arc.calls("PUT", "/transaction/void-") == []
        assert payment.refunded_amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_cancel_after_partial_refunds_returns_the_rest(self, paid_booking, reconciliation, session, quote, arc):
        booking, payment = paid_booking
        arc.settle(payment.gateway_order_id)
        await reconciliation.refund_payment(payment.id, amount="50.00", reason="goodwill")
        await reconciliation.refund_payment(payment.id, amount="10.00", reason="seat fee")

        result = await reconciliation.cancel_booking(booking.id, reason="schedule change")

        assert result.payment_action == PaymentAction.REFUND.value
        assert result.refund_amount == Decimal("175.00")
        assert arc.orders[payment.gateway_order_id]["refunded"] == Decimal("235.00")
        assert payment.refunded_amount == Decimal("235.00")
        assert payment.payment_status == PaymentStatus.REFUNDED.value
        await session.refresh(quote)
        assert quote.payment_status == QuotePaymentStatus.REFUNDED.value
        with pytest.raises(ValidationError):
            await reconciliation.refund_payment(payment.id, amount="1.00")

    @pytest.mark.asyncio
    async def test_gateway_down_leaves_refund_pending(self, paid_booking, reconciliation, session, quote, arc, notifier):
        booking, payment = paid_booking
        arc.fail_voids = True
        arc.fail_refunds = True
        result = await reconciliation.cancel_booking(booking.id, reason="illness")

        assert result.refund_pending is True
        assert result.payment_action is None
        assert booking.status == BookingStatus.CANCELLED.value
        assert booking.refund_pending is True
        assert payment.payment_status == PaymentStatus.REFUND_PENDING.value
        await session.refresh(quote)
        assert quote.payment_status == QuotePaymentStatus.REFUND_PENDING.value
        assert "refund_pending" in notifier.templates()

    @pytest.mark.asyncio
    async def test_status_read_failure_leaves_refund_pending(self, paid_booking, reconciliation, arc):
        booking, payment = paid_booking
        arc.fail_reads = 10
        result = await reconciliation.cancel_booking(booking.id, reason="illness")
        assert result.refund_pending is True
        assert arc.calls("PUT") == []
        assert booking.status == BookingStatus.CANCELLED.value

    @pytest.mark.asyncio
    async def test_supplier_failure_does_not_undo_refund(self, paid_booking, reconciliation, supplier):
        booking, payment = paid_booking
        await reconciliation.link_supplier_order(booking.id, "eJzTd9f3NjIJdzUGAAp%2fAiY=")
        supplier.error = SupplierError("Amadeus cancel failed: 500")

        result = await reconciliation.cancel_booking(booking.id, reason="airline strike")

        assert result.payment_action == PaymentAction.VOID.value
        assert result.amadeus_cancelled is False
        assert booking.supplier_cancelled is False
        assert "Amadeus" in booking.supplier_error
        assert payment.payment_status == PaymentStatus.VOIDED.value

    @pytest.mark.asyncio
    async def test_supplier_cancelled_when_linked(self, paid_booking, reconciliation, supplier):
        booking, _ = paid_booking
        await reconciliation.link_supplier_order(booking.id, "AMADEUS-123")
        result = await reconciliation.cancel_booking(booking.id, reason="change")
        assert result.amadeus_cancelled is True
        assert supplier.cancelled == ["AMADEUS-123"]

    @pytest.mark.asyncio
    async def test_no_supplier_call_without_order(self, paid_booking, reconciliation, supplier):
        booking, _ = paid_booking
        result = await reconciliation.cancel_booking(booking.id, reason="change")
        assert result.amadeus_cancelled is None
        assert supplier.cancelled == []

    @pytest.mark.asyncio
    async def test_cannot_cancel_twice(self, paid_booking, reconciliation):
        booking, _ = paid_booking
        await reconciliation.cancel_booking(booking.id, reason="first")
        with pytest.raises(ValidationError):
            await reconciliation.cancel_booking(booking.id, reason="second")

    @pytest.mark.asyncio
    async def test_refund_over_balance_rejected_up_front(self, paid_booking, reconciliation, arc):
        booking, _ = paid_booking
        with pytest.raises(ValidationError):
            await reconciliation.cancel_booking(booking.id, reason="too much", amount="500.00")
        assert arc.calls("PUT") == []

    @pytest.mark.asyncio
    async def test_cancelled_booking_no_longer_projects_booked(self, paid_booking, reconciliation, session, quote, inquiry):
        booking, payment = paid_booking
        await reconciliation.cancel_booking(booking.id, reason="change")
        await session.refresh(quote)
        await session.refresh(inquiry)
        assert effective_status(inquiry, [quote], [payment]) == InquiryStatus.CANCELLED.value

class TestDirectOperations:

    @pytest.mark.asyncio
    async def test_void_payment_after_settlement_surfaces_rejection(self, paid_booking, reconciliation, arc):
        _, payment = paid_booking
        arc.settle(payment.gateway_order_id)
        with pytest.raises(GatewayRejected):
            await reconciliation.void_payment(payment.id, reason="ops")
        assert payment.payment_status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_refund_payment(self, paid_booking, reconciliation, session, quote):
        _, payment = paid_booking
        await reconciliation.refund_payment(payment.id, amount="35.00", reason="goodwill")
        await session.refresh(quote)
        assert payment.refunded_amount == Decimal("35.00")
        assert quote.payment_status == QuotePaymentStatus.REFUNDED.value

    @pytest.mark.asyncio
    async def test_refund_pending_payment_requires_capture(self, start_checkout, reconciliation, quote):
        payment, _ = await start_checkout(quote)
        with pytest.raises(ValidationError):
            await reconciliation.refund_payment(payment.id)


@pytest.fixture
def paid_twice(reconciliation, gateway, arc, quote):
    """A second attempt on an already paid quote, captured at the gateway."""
    async def _pay():
        duplicate = await reconciliation.payments.record_attempt(quote.id, quote.total_amount, "USD", "ORDER-DUP")
        await gateway.create_checkout_session(
            amount=quote.total_amount,
            currency="USD",
            order_id="ORDER-DUP",
            description="JFK to LHR",
            return_url="https://api.jetsetters.test/api/payments/callback",
        )
        arc.pay("ORDER-DUP")
        return duplicate
    return _pay


class TestDuplicatePayments:
    """A second capture on a paid quote is given back."""

    @pytest.mark.asyncio
    async def test_duplicate_capture_is_voided(self, paid_booking, paid_twice, reconciliation, session, quote, arc):
        _, original = paid_booking
        duplicate = await paid_twice()

        duplicate = await reconciliation.reconcile(order_id="ORDER-DUP")

        assert duplicate.payment_status == PaymentStatus.VOIDED.value
        assert arc.orders["ORDER-DUP"]["voided"] is True
        assert await reconciliation.get_booking_for_payment(duplicate.id) is None
        await session.refresh(quote)
        await session.refresh(original)
        assert quote.payment_status == QuotePaymentStatus.PAID.value
        assert original.payment_status == PaymentStatus.COMPLETED.value

    @pytest.mark.asyncio
    async def test_unreachable_gateway_leaves_duplicate_refund_pending(
        self, paid_booking, paid_twice, reconciliation, session, quote, arc, notifier
    ):
        duplicate = await paid_twice()
        arc.fail_voids = True
        arc.fail_refunds = True

        duplicate = await reconciliation.reconcile(order_id="ORDER-DUP")

        assert duplicate.payment_status == PaymentStatus.REFUND_PENDING.value
        assert "refund_pending" in notifier.templates()
        assert await reconciliation.get_booking_for_payment(duplicate.id) is None
        await session.refresh(quote)
        assert quote.payment_status == QuotePaymentStatus.PAID.value
