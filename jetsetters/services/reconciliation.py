"""
Reconciliation & Cancellation Orchestrator
Moves money and status between the local ledger and ARC Pay.

The gateway is authoritative: every decision that moves money starts with a
fresh ``retrieve_order_status`` taken under the per-payment lock.
"""
from typing import Dict, Any, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from decimal import Decimal
from pydantic import BaseModel
import logging
import uuid

from ..errors import ValidationError, NotFoundError, InconsistentState, GatewayError, SupplierError
from ..models import (
    Inquiry, Quote, Payment, BookingRecord,
    QuoteStatus, QuotePaymentStatus, PaymentStatus, InquiryStatus, BookingStatus, PaymentAction,
    utcnow, ensure_utc, as_uuid, ZERO
)
from ..integrations.arc_pay import CheckoutSession, NormalizedOrderStatus
from .payments import PaymentStore, is_reversible, refundable_balance
from .pricing import to_decimal

logger = logging.getLogger(__name__)

CANCELLED_BY = ("customer", "admin")

# quote.payment_status mirroring each reversal outcome
QUOTE_STATUS_FOR_ACTION = {
    PaymentAction.VOID.value: QuotePaymentStatus.VOIDED.value,
    PaymentAction.REFUND.value: QuotePaymentStatus.REFUNDED.value,
}


class CancellationResult(BaseModel):
    booking_id: str
    booking_reference: str
    refund_amount: Decimal = ZERO
    payment_action: Optional[str] = None
    refund_pending: bool = False
    amadeus_cancelled: Optional[bool] = None
    error: Optional[str] = None


class ReversalOutcome(BaseModel):
    action: Optional[str] = None
    amount: Decimal = ZERO
    refund_pending: bool = False
    error: Optional[str] = None


def generate_order_id() -> str:
    return f"JS-{uuid.uuid4().hex[:12].upper()}"


def generate_booking_reference() -> str:
    return f"JS{uuid.uuid4().hex[:8].upper()}"


class ReconciliationService:
    """Checkout, gateway reconciliation and cancellation for quotes."""

    def __init__(self, session: AsyncSession, gateway, locks, supplier=None, notifier=None):
        self.session = session
        self.gateway = gateway
        self.locks = locks
        self.supplier = supplier
        self.notifier = notifier
        self.payments = PaymentStore(session)

    # Lookups
    async def _get_quote(self, quote_id) -> Quote:
        quote = await self.session.get(Quote, as_uuid(quote_id))
        if not quote:
            raise NotFoundError(f"Quote not found: {quote_id}")
        return quote

    async def get_booking(self, booking_id) -> BookingRecord:
        booking = await self.session.get(BookingRecord, as_uuid(booking_id))
        if not booking:
            raise NotFoundError(f"Booking not found: {booking_id}")
        return booking

    async def get_booking_for_payment(self, payment_id) -> Optional[BookingRecord]:
        result = await self.session.execute(
            select(BookingRecord).where(BookingRecord.payment_id == as_uuid(payment_id))
        )
        return result.scalar_one_or_none()

    async def link_supplier_order(self, booking_id, supplier_order_id: str) -> BookingRecord:
        if not supplier_order_id:
            raise ValidationError("supplierOrderId is required")
        booking = await self.get_booking(booking_id)
        booking.supplier_order_id = supplier_order_id
        await self.session.commit()
        await self.session.refresh(booking)
        logger.info(f"Booking {booking.booking_reference} linked to supplier order {supplier_order_id}")
        return booking

    # Checkout
    async def start_checkout(
        self,
        quote_id,
        amount,
        currency: str = "USD",
        order_id: Optional[str] = None,
        booking_type: Optional[str] = None,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Tuple[Payment, CheckoutSession]:
        """
        Open a hosted checkout for a quote.

        The amount must equal the quote total; this is checked before the
        gateway is contacted. Replaying an order id returns the session
        already created for it.
        """
        if not quote_id:
            raise ValidationError("quoteId is required")
        if amount is None:
            raise ValidationError("amount is required")
        if not return_url:
            raise ValidationError("returnUrl is required")

        quote = await self._get_quote(quote_id)
        amount = to_decimal(amount, "amount")
        currency = (currency or quote.currency or "USD").upper()

        if amount != quote.total_amount:
            raise ValidationError(
                f"Amount {amount} does not match quote total {quote.total_amount}",
                {"amount": str(amount), "quote_total": str(quote.total_amount)}
            )
        if currency != quote.currency:
            raise ValidationError(
                f"Currency {currency} does not match quote currency {quote.currency}",
                {"currency": currency, "quote_currency": quote.currency}
            )
        if quote.status in (QuoteStatus.CANCELLED.value, QuoteStatus.EXPIRED.value):
            raise ValidationError(f"Quote {quote.quote_number} is {quote.status}")
        if quote.expires_at and ensure_utc(quote.expires_at) < utcnow():
            # the expiry sweep may not have run yet
            raise ValidationError(f"Quote {quote.quote_number} expired at {ensure_utc(quote.expires_at).isoformat()}")
        if quote.payment_status not in (QuotePaymentStatus.UNPAID.value, QuotePaymentStatus.FAILED.value):
            raise ValidationError(f"Quote {quote.quote_number} is already {quote.payment_status}")

        attempts = await self.payments.list_for_quote(quote.id)
        if any(p.payment_status == PaymentStatus.COMPLETED.value for p in attempts):
            raise ValidationError(f"Quote {quote.quote_number} is already paid")

        if order_id:
            existing = await self.payments.get_by_order_id(order_id)
            if existing:
                replay = self._replay_checkout(existing, quote, amount, currency)
                if replay:
                    return existing, replay
        else:
            order_id = generate_order_id()

        # only one open attempt per quote
        for attempt in attempts:
            if attempt.payment_status != PaymentStatus.PENDING.value or attempt.gateway_order_id == order_id:
                continue
            attempt = await self.reconcile(payment_id=attempt.id)
            if attempt.payment_status == PaymentStatus.COMPLETED.value:
                raise ValidationError(
                    f"Quote {quote.quote_number} was paid through order {attempt.gateway_order_id}",
                    {"order_id": attempt.gateway_order_id}
                )
            if attempt.payment_status == PaymentStatus.PENDING.value:
                await self.payments.mark_failed(attempt.id, f"superseded by order {order_id}")

        payment = await self.payments.record_attempt(
            quote.id,
            amount,
            currency,
            order_id,
            booking_type=booking_type,
            customer_email=customer_email,
            customer_name=customer_name,
        )

        try:
            session = await self.gateway.create_checkout_session(
                amount=amount,
                currency=currency,
                order_id=order_id,
                description=description or quote.title,
                return_url=return_url,
                cancel_url=cancel_url,
                customer={"email": customer_email, "first_name": customer_name},
            )
        except GatewayError as e:
            logger.error(f"Checkout session creation failed for order {order_id}: {e.message}")
            await self.payments.mark_failed(payment.id, f"checkout session creation failed: {e.message}")
            raise

        payment = await self.payments.attach_session(
            payment.id,
            session_id=session.session_id,
            success_indicator=session.success_indicator,
            checkout_url=session.checkout_url,
        )
        logger.info(f"🛒 Checkout opened for quote {quote.quote_number}: order {order_id}, {currency} {amount}")
        return payment, session

    def _replay_checkout(self, existing: Payment, quote: Quote, amount: Decimal, currency: str) -> Optional[CheckoutSession]:
        if existing.quote_id != quote.id or existing.amount != amount or existing.currency != currency:
            raise ValidationError(
                f"Order {existing.gateway_order_id} belongs to a different checkout",
                {"order_id": existing.gateway_order_id}
            )
        if existing.payment_status == PaymentStatus.COMPLETED.value:
            raise ValidationError(f"Order {existing.gateway_order_id} is already paid")
        if existing.payment_status != PaymentStatus.PENDING.value:
            raise ValidationError(
                f"Order {existing.gateway_order_id} is {existing.payment_status}; start a new checkout",
                {"order_id": existing.gateway_order_id}
            )
        if not existing.session_id:
            return None
        return CheckoutSession(
            order_id=existing.gateway_order_id,
            session_id=existing.session_id,
            checkout_url=existing.checkout_url or "",
            success_indicator=existing.success_indicator,
            amount=existing.amount,
            currency=existing.currency,
        )

    # Reconciliation
    async def handle_callback(self, order_id: str, result_indicator: Optional[str] = None) -> Payment:
        """Gateway return: the indicator is only a hint, the order status decides."""
        payment = await self.payments.get_by_order_id(order_id)
        if not payment:
            raise NotFoundError(f"No payment for order {order_id}")

        if result_indicator and payment.success_indicator and result_indicator != payment.success_indicator:
            logger.warning(f"Result indicator mismatch for order {order_id}")
            await self.payments.record_event(payment.id, "result_indicator_mismatch", {
                "result_indicator": result_indicator
            })

        return await self.reconcile(payment_id=payment.id)

    async def reconcile(self, payment_id=None, order_id: Optional[str] = None) -> Payment:
        """Bring a payment in line with the gateway's view of its order."""
        if payment_id is not None:
            payment = await self.payments.get(payment_id)
        elif order_id:
            payment = await self.payments.get_by_order_id(order_id)
            if not payment:
                raise NotFoundError(f"No payment for order {order_id}")
        else:
            raise ValidationError("payment_id or order_id is required")

        async with self.locks.payment_lock(payment.id):
            await self.session.refresh(payment)
            status = await self.gateway.retrieve_order_status(payment.gateway_order_id)
            return await self._apply_status(payment, status)

    async def _apply_status(self, payment: Payment, status: NormalizedOrderStatus) -> Payment:
        await self.payments.save_snapshot(payment.id, status.model_dump(mode="json"))
        current = payment.payment_status

        if status.result == "PENDING":
            return payment

        if status.result == "FAILURE":
            if current == PaymentStatus.PENDING.value:
                await self.payments.mark_failed(payment.id, status.failure_reason or "declined")
                quote = await self._get_quote(payment.quote_id)
                if quote.payment_status == QuotePaymentStatus.UNPAID.value:
                    quote.payment_status = QuotePaymentStatus.FAILED.value
                    await self.session.commit()
            elif current in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value):
                await self._disagreement(payment, status)
                await self.payments.mark_failed(payment.id, status.failure_reason or "failed at gateway")
                await self._set_quote_payment_status(payment.quote_id, QuotePaymentStatus.FAILED.value)
            elif current != PaymentStatus.FAILED.value:
                # refunded and voided are terminal locally
                await self._disagreement(payment, status)
            return payment

        # SUCCESS from here on
        if current in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value):
            if status.total_captured_amount and status.total_captured_amount != payment.amount:
                await self._disagreement(payment, status)
            txn = status.payment_transaction
            await self.payments.mark_completed(
                payment.id,
                gateway_transaction_id=txn.id if txn else None,
                completed_at=txn.timestamp if txn and txn.timestamp else utcnow(),
                payment_method=status.payment_method,
            )
            await self._on_completed(payment, status)
            if payment.payment_status != PaymentStatus.COMPLETED.value:
                # reversed as a duplicate
                return payment
            current = payment.payment_status

        if status.voided and current != PaymentStatus.VOIDED.value:
            if current in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value):
                await self.payments.mark_voided(payment.id, reason="voided at gateway")
                await self._set_quote_payment_status(payment.quote_id, QuotePaymentStatus.VOIDED.value)
            else:
                await self._disagreement(payment, status)
        elif status.total_refunded_amount > (payment.refunded_amount or ZERO):
            if is_reversible(payment):
                refund_txn = next((t for t in reversed(status.transactions) if t.type == "REFUND"), None)
                await self.payments.mark_refunded(
                    payment.id,
                    status.total_refunded_amount - (payment.refunded_amount or ZERO),
                    refund_txn.id if refund_txn and refund_txn.id else f"gateway-sync-{payment.gateway_order_id}",
                    reason="refunded at gateway",
                )
                await self._set_quote_payment_status(payment.quote_id, QuotePaymentStatus.REFUNDED.value)
            else:
                await self._disagreement(payment, status)
        elif current in (PaymentStatus.REFUNDED.value, PaymentStatus.VOIDED.value) and status.untouched:
            await self._disagreement(payment, status)

        return payment

    async def _disagreement(self, payment: Payment, status: NormalizedOrderStatus):
        """Journal a contradiction between the local record and the gateway for staff review."""
        error = InconsistentState(
            f"Payment {payment.id} is {payment.payment_status} locally but gateway reports "
            f"{status.result}/{status.order_status} (captured {status.total_captured_amount}, "
            f"refunded {status.total_refunded_amount})",
            {"payment_id": str(payment.id), "order_id": payment.gateway_order_id}
        )
        logger.error(f"⚠️ {error.message}")
        await self.payments.record_event(payment.id, "inconsistent_state", {
            "local_status": payment.payment_status,
            "gateway_result": status.result,
            "gateway_order_status": status.order_status,
        })

    async def _on_completed(self, payment: Payment, status: NormalizedOrderStatus):
        quote = await self._get_quote(payment.quote_id)

        # another attempt already paid this quote: give this money back
        others = await self.payments.list_for_quote(quote.id)
        if any(p.id != payment.id and p.payment_status == PaymentStatus.COMPLETED.value for p in others):
            logger.warning(f"Duplicate payment {payment.id} for quote {quote.quote_number}, reversing")
            outcome = await self._reverse(payment, status, None, "duplicate payment")
            if outcome.refund_pending and self.notifier:
                await self.notifier.notify_staff("refund_pending", {
                    "booking_reference": quote.quote_number,
                    "payment_id": str(payment.id),
                    "amount": f"{payment.currency} {payment.amount}",
                    "error": outcome.error or "duplicate payment",
                })
            return

        now = utcnow()
        quote.payment_status = QuotePaymentStatus.PAID.value
        quote.status = QuoteStatus.ACCEPTED.value
        quote.paid_at = now
        quote.accepted_at = quote.accepted_at or now

        inquiry = await self.session.get(Inquiry, quote.inquiry_id)
        if inquiry:
            inquiry.status = InquiryStatus.BOOKED.value

        booking = await self.get_booking_for_payment(payment.id)
        if not booking:
            booking = BookingRecord(
                payment_id=payment.id,
                booking_reference=generate_booking_reference(),
                status=BookingStatus.CONFIRMED.value,
            )
            self.session.add(booking)
        await self.session.commit()

        logger.info(f"🎉 Quote {quote.quote_number} paid, booking {booking.booking_reference}")

        if self.notifier:
            await self.notifier.send_template(
                "payment_received",
                to=payment.customer_email or (inquiry.customer_email if inquiry else None),
                params={
                    "customer_name": payment.customer_name or (inquiry.customer_name if inquiry else ""),
                    "amount": f"{payment.currency} {payment.amount}",
                    "booking_reference": booking.booking_reference,
                },
            )

    async def _set_quote_payment_status(self, quote_id, payment_status: str, cancel: bool = False):
        quote = await self._get_quote(quote_id)
        quote.payment_status = payment_status
        if cancel:
            quote.status = QuoteStatus.CANCELLED.value
        await self.session.commit()

    # Reversal
    async def _reverse(
        self,
        payment: Payment,
        status: NormalizedOrderStatus,
        amount: Optional[Decimal],
        reason: str,
    ) -> ReversalOutcome:
        """
        Give money back: void when the whole untouched capture is being
        reversed, refund otherwise or when the void is refused. Never raises
        for gateway failures; the payment goes to refund_pending instead.
        """
        remaining = status.remaining_amount
        full = amount is None or amount == remaining
        target = status.payment_transaction
        target_id = (target.id if target else None) or payment.arc_transaction_id

        if status.voided:
            await self.payments.mark_voided(payment.id, reason="voided at gateway")
            return ReversalOutcome(action=PaymentAction.VOID.value, amount=payment.amount)
        if remaining <= 0:
            already = status.total_refunded_amount - (payment.refunded_amount or ZERO)
            if already > 0:
                await self.payments.mark_refunded(
                    payment.id, already, f"gateway-sync-{payment.gateway_order_id}", reason="refunded at gateway"
                )
                return ReversalOutcome(action=PaymentAction.REFUND.value, amount=already)
            return ReversalOutcome(error="nothing captured to reverse")

        if full and status.untouched and target_id:
            try:
                await self.gateway.void(payment.gateway_order_id, target_id, reason=reason)
                await self.payments.mark_voided(payment.id, reason=reason)
                return ReversalOutcome(action=PaymentAction.VOID.value, amount=payment.amount)
            except GatewayError as e:
                logger.info(f"Void refused for order {payment.gateway_order_id}, refunding instead: {e.message}")
                await self.payments.record_event(payment.id, "void_failed", {
                    "error": e.message, "gateway_code": e.gateway_code
                })

        refund_amount = remaining if amount is None else amount
        refund_count = len(await self.payments.list_refunds(payment.id))
        refund_txn = f"refund-{payment.gateway_order_id}-{refund_count + 1}"
        try:
            result = await self.gateway.refund(
                payment.gateway_order_id,
                target_id,
                refund_amount,
                currency=payment.currency,
                reason=reason,
                captured_amount=remaining,
                transaction_id=refund_txn,
            )
        except GatewayError as e:
            logger.error(f"❌ Refund failed for order {payment.gateway_order_id}: {e.message}")
            await self.payments.mark_refund_pending(payment.id, f"refund failed: {e.message}")
            return ReversalOutcome(refund_pending=True, amount=refund_amount, error=e.message)

        await self.payments.mark_refunded(payment.id, refund_amount, result.refund_id, reason)
        return ReversalOutcome(action=PaymentAction.REFUND.value, amount=refund_amount)

    # Cancellation
    async def cancel_booking(
        self,
        booking_id,
        reason: str,
        amount=None,
        cancelled_by: str = "admin",
    ) -> CancellationResult:
        """
        Cancel a booking and give the money back.

        The booking is cancelled even when the gateway cannot be reached:
        the payment is then left ``refund_pending`` and staff are alerted.
        A linked supplier order is cancelled afterwards and its failure
        never undoes the payment decision.
        """
        if not reason or not reason.strip():
            raise ValidationError("A cancellation reason is required")
        if cancelled_by not in CANCELLED_BY:
            raise ValidationError(f"cancelledBy must be one of {', '.join(CANCELLED_BY)}")

        booking = await self.get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED.value:
            raise ValidationError(f"Booking {booking.booking_reference} is already cancelled")

        payment = await self.payments.get(booking.payment_id)
        requested = to_decimal(amount, "amount")
        if requested is not None:
            if requested <= 0:
                raise ValidationError("Refund amount must be positive")
            if requested > refundable_balance(payment):
                raise ValidationError(
                    f"Refund amount {requested} exceeds the refundable {refundable_balance(payment)}",
                )

        outcome = ReversalOutcome()
        async with self.locks.payment_lock(payment.id):
            await self.session.refresh(payment)
            if is_reversible(payment):
                try:
                    status = await self.gateway.retrieve_order_status(payment.gateway_order_id)
                except GatewayError as e:
                    logger.error(f"❌ Could not read order {payment.gateway_order_id} before cancelling: {e.message}")
                    await self.payments.mark_refund_pending(payment.id, f"status check failed: {e.message}")
                    outcome = ReversalOutcome(
                        refund_pending=True,
                        amount=requested if requested is not None else refundable_balance(payment),
                        error=e.message,
                    )
                else:
                    if requested is not None and requested > status.remaining_amount:
                        raise ValidationError(
                            f"Refund amount {requested} exceeds the captured balance {status.remaining_amount}"
                        )
                    outcome = await self._reverse(payment, status, requested, reason)
            else:
                logger.info(f"Payment {payment.id} is {payment.payment_status}, no money to move")

            quote = await self._get_quote(payment.quote_id)
            if outcome.refund_pending:
                quote.payment_status = QuotePaymentStatus.REFUND_PENDING.value
            elif outcome.action:
                quote.payment_status = QUOTE_STATUS_FOR_ACTION[outcome.action]
            quote.status = QuoteStatus.CANCELLED.value

            inquiry = await self.session.get(Inquiry, quote.inquiry_id)
            if inquiry:
                inquiry.status = InquiryStatus.CANCELLED.value

            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = reason.strip()
            booking.cancelled_by = cancelled_by
            booking.cancelled_at = utcnow()
            booking.refund_pending = outcome.refund_pending
            await self.session.commit()

        amadeus_cancelled = None
        if booking.supplier_order_id and self.supplier:
            try:
                await self.supplier.cancel_order(booking.supplier_order_id)
                amadeus_cancelled = True
                booking.supplier_error = None
            except SupplierError as e:
                logger.error(f"❌ Supplier cancel failed for booking {booking.booking_reference}: {e.message}")
                amadeus_cancelled = False
                booking.supplier_error = e.message
            booking.supplier_cancelled = amadeus_cancelled
            await self.session.commit()

        logger.info(
            f"🚫 Booking {booking.booking_reference} cancelled by {cancelled_by}: "
            f"{outcome.action or 'no payment action'} {outcome.amount}"
            f"{' (refund pending)' if outcome.refund_pending else ''}"
        )

        await self._notify_cancellation(booking, payment, quote, inquiry, outcome, reason)

        return CancellationResult(
            booking_id=str(booking.id),
            booking_reference=booking.booking_reference,
            refund_amount=outcome.amount if (outcome.action or outcome.refund_pending) else ZERO,
            payment_action=outcome.action,
            refund_pending=outcome.refund_pending,
            amadeus_cancelled=amadeus_cancelled,
            error=outcome.error,
        )

    async def _notify_cancellation(self, booking, payment, quote, inquiry, outcome: ReversalOutcome, reason: str):
        if not self.notifier:
            return
        await self.notifier.send_template(
            "booking_cancelled",
            to=payment.customer_email or (inquiry.customer_email if inquiry else None),
            params={
                "customer_name": payment.customer_name or (inquiry.customer_name if inquiry else ""),
                "booking_reference": booking.booking_reference,
                "reason": reason,
                "refund_amount": f"{payment.currency} {outcome.amount}",
                "payment_action": outcome.action or "",
            },
        )
        if outcome.refund_pending:
            await self.notifier.notify_staff("refund_pending", {
                "booking_reference": booking.booking_reference,
                "payment_id": str(payment.id),
                "amount": f"{payment.currency} {outcome.amount}",
                "error": outcome.error or "",
            })

    # Direct staff operations
    async def refund_payment(self, payment_id, amount=None, reason: Optional[str] = None) -> Payment:
        """Refund through the gateway; gateway errors go back to the caller."""
        requested = to_decimal(amount, "amount")
        if requested is not None and requested <= 0:
            raise ValidationError("Refund amount must be positive")

        payment = await self.payments.get(payment_id)
        async with self.locks.payment_lock(payment.id):
            await self.session.refresh(payment)
            self._require_captured(payment)
            status = await self.gateway.retrieve_order_status(payment.gateway_order_id)
            remaining = status.remaining_amount
            refund_amount = remaining if requested is None else requested
            if refund_amount <= 0:
                raise ValidationError(f"Nothing left to refund on order {payment.gateway_order_id}")
            if refund_amount > remaining:
                raise ValidationError(
                    f"Refund amount {refund_amount} exceeds the captured balance {remaining}"
                )

            target = status.payment_transaction
            target_id = (target.id if target else None) or payment.arc_transaction_id
            refund_count = len(await self.payments.list_refunds(payment.id))
            result = await self.gateway.refund(
                payment.gateway_order_id,
                target_id,
                refund_amount,
                currency=payment.currency,
                reason=reason,
                captured_amount=remaining,
                transaction_id=f"refund-{payment.gateway_order_id}-{refund_count + 1}",
            )
            await self.payments.mark_refunded(payment.id, refund_amount, result.refund_id, reason)
            await self._set_quote_payment_status(payment.quote_id, QuotePaymentStatus.REFUNDED.value)
        return payment

    async def void_payment(self, payment_id, reason: Optional[str] = None) -> Payment:
        """Void through the gateway; a void after settlement surfaces as GatewayRejected."""
        payment = await self.payments.get(payment_id)
        async with self.locks.payment_lock(payment.id):
            await self.session.refresh(payment)
            self._require_captured(payment)
            status = await self.gateway.retrieve_order_status(payment.gateway_order_id)
            if not status.untouched:
                raise ValidationError(
                    f"Order {payment.gateway_order_id} has refunds or is already voided; it cannot be voided"
                )
            target = status.payment_transaction
            target_id = (target.id if target else None) or payment.arc_transaction_id
            if not target_id:
                raise InconsistentState(f"No captured transaction found for order {payment.gateway_order_id}")

            await self.gateway.void(payment.gateway_order_id, target_id, reason=reason)
            await self.payments.mark_voided(payment.id, reason=reason)
            await self._set_quote_payment_status(payment.quote_id, QuotePaymentStatus.VOIDED.value)
        return payment

    def _require_captured(self, payment: Payment):
        if not is_reversible(payment):
            raise ValidationError(
                f"Payment {payment.id} is {payment.payment_status}; nothing captured is left to reverse"
            )

    # Polling
    async def poll_open_payments(self, limit: Optional[int] = None) -> Dict[str, Any]:
        """Reconcile every payment still waiting on the gateway."""
        summary = {"checked": 0, "completed": 0, "failed": 0, "pending": 0, "errors": 0}
        for payment in await self.payments.list_open(limit=limit):
            summary["checked"] += 1
            try:
                payment = await self.reconcile(payment_id=payment.id)
            except (GatewayError, InconsistentState) as e:
                summary["errors"] += 1
                logger.warning(f"Poll could not reconcile payment {payment.id}: {e.message}")
                continue
            if payment.payment_status == PaymentStatus.PENDING.value:
                summary["pending"] += 1
            elif payment.payment_status == PaymentStatus.FAILED.value:
                summary["failed"] += 1
            else:
                summary["completed"] += 1
        if summary["checked"]:
            logger.info(f"🔄 Payment poll: {summary}")
        return summary


def booking_to_dict(booking: BookingRecord) -> Dict[str, Any]:
    return {
        "id": str(booking.id),
        "payment_id": str(booking.payment_id),
        "booking_reference": booking.booking_reference,
        "supplier_order_id": booking.supplier_order_id,
        "status": booking.status,
        "cancellation_reason": booking.cancellation_reason,
        "cancelled_by": booking.cancelled_by,
        "cancelled_at": booking.cancelled_at.isoformat() if booking.cancelled_at else None,
        "refund_pending": booking.refund_pending,
        "supplier_cancelled": booking.supplier_cancelled,
        "supplier_error": booking.supplier_error,
        "created_at": booking.created_at.isoformat() if booking.created_at else None,
    }
