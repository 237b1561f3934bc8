"""
Payment Record Store
Persists payment attempts and their transitions. Every transition is journalled in payment_events.
"""
from typing import Dict, Any, Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError
from datetime import datetime
from decimal import Decimal
import logging

from ..errors import ValidationError, NotFoundError, InconsistentState
from ..models import (
    Payment, Refund, PaymentEvent, PaymentStatus, TERMINAL_PAYMENT_STATUSES,
    utcnow, as_uuid, ZERO
)
from .pricing import to_decimal

logger = logging.getLogger(__name__)

# target status -> statuses it may be entered from
ALLOWED_TRANSITIONS = {
    PaymentStatus.COMPLETED.value: {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value},
    # completed and refund_pending only when the gateway reports the order failed
    PaymentStatus.FAILED.value: {
        PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value
    },
    # refunded -> refunded/refund_pending only while part of the payment is still unrefunded
    PaymentStatus.REFUNDED.value: {
        PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value, PaymentStatus.REFUNDED.value
    },
    PaymentStatus.VOIDED.value: {PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value},
    PaymentStatus.REFUND_PENDING.value: {PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value},
}

OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING.value,)


def refundable_balance(payment: Payment) -> Decimal:
    return payment.amount - (payment.refunded_amount or ZERO)


def partially_refunded(payment: Payment) -> bool:
    return payment.payment_status == PaymentStatus.REFUNDED.value and refundable_balance(payment) > 0


def is_reversible(payment: Payment) -> bool:
    """Captured money is still held: completed, refund_pending or only partly refunded."""
    if payment.payment_status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUND_PENDING.value):
        return True
    return partially_refunded(payment)


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": str(payment.id),
        "quote_id": str(payment.quote_id),
        "order_id": payment.gateway_order_id,
        "session_id": payment.session_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "refunded_amount": str(payment.refunded_amount or ZERO),
        "payment_method": payment.payment_method,
        "payment_status": payment.payment_status,
        "arc_transaction_id": payment.arc_transaction_id,
        "failure_reason": payment.failure_reason,
        "booking_type": payment.booking_type,
        "customer_email": payment.customer_email,
        "customer_name": payment.customer_name,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
        "completed_at": payment.completed_at.isoformat() if payment.completed_at else None,
        "updated_at": payment.updated_at.isoformat() if payment.updated_at else None,
    }


class PaymentStore:
    """Single writer for payment rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _commit(self, payment: Optional[Payment] = None):
        try:
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            payment_id = payment.id if payment is not None else None
            logger.warning(f"Concurrent update detected on payment {payment_id}")
            raise InconsistentState(
                f"Payment {payment_id} was modified by another operation",
                {"payment_id": str(payment_id)}
            )

    # Lookups
    async def get(self, payment_id) -> Payment:
        payment = await self.session.get(Payment, as_uuid(payment_id))
        if not payment:
            raise NotFoundError(f"Payment not found: {payment_id}")
        return payment

    async def get_by_order_id(self, order_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(Payment.gateway_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def list_for_quote(self, quote_id) -> List[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.quote_id == as_uuid(quote_id))
            .order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def list_for_quotes(self, quote_ids: List) -> List[Payment]:
        if not quote_ids:
            return []
        result = await self.session.execute(
            select(Payment).where(Payment.quote_id.in_([as_uuid(q) for q in quote_ids]))
        )
        return list(result.scalars().all())

    async def list_open(self, limit: Optional[int] = None) -> List[Payment]:
        """Payments still waiting for a gateway outcome, oldest first."""
        query = (
            select(Payment)
            .where(Payment.payment_status.in_(OPEN_PAYMENT_STATUSES))
            .order_by(Payment.created_at)
        )
        if limit:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_events(self, payment_id) -> List[PaymentEvent]:
        result = await self.session.execute(
            select(PaymentEvent)
            .where(PaymentEvent.payment_id == as_uuid(payment_id))
            .order_by(PaymentEvent.created_at)
        )
        return list(result.scalars().all())

    async def list_refunds(self, payment_id) -> List[Refund]:
        result = await self.session.execute(
            select(Refund)
            .where(Refund.payment_id == as_uuid(payment_id))
            .order_by(Refund.created_at)
        )
        return list(result.scalars().all())

    # Writes
    async def record_attempt(
        self,
        quote_id,
        amount,
        currency: str,
        gateway_order_id: str,
        **extra
    ) -> Payment:
        """
        Record a new pending checkout attempt.

        Idempotent on ``gateway_order_id``: a replay returns the existing row,
        as long as it is for the same quote and amount.
        """
        if not gateway_order_id:
            raise ValidationError("gateway_order_id is required")
        amount = to_decimal(amount)
        currency = (currency or "USD").upper()

        existing = await self.get_by_order_id(gateway_order_id)
        if existing:
            return self._check_replay(existing, quote_id, amount, currency)

        payment = Payment(
            quote_id=as_uuid(quote_id),
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            refunded_amount=ZERO,
            payment_status=PaymentStatus.PENDING.value,
            **extra
        )
        self.session.add(payment)
        try:
            await self.session.flush()
        except IntegrityError:
            # another request recorded the same order id first
            await self.session.rollback()
            existing = await self.get_by_order_id(gateway_order_id)
            if not existing:
                raise
            return self._check_replay(existing, quote_id, amount, currency)

        self._add_event(payment, "attempt_recorded", None, payment.payment_status, {
            "amount": str(amount), "currency": currency
        })
        await self._commit(payment)
        await self.session.refresh(payment)

        logger.info(f"Recorded payment attempt {payment.id} for order {gateway_order_id}: {currency} {amount}")
        return payment

    def _check_replay(self, existing: Payment, quote_id, amount: Decimal, currency: str) -> Payment:
        if existing.quote_id != as_uuid(quote_id) or existing.amount != amount or existing.currency != currency:
            raise ValidationError(
                f"Order {existing.gateway_order_id} is already used by a different payment",
                {"order_id": existing.gateway_order_id}
            )
        return existing

    async def attach_session(
        self,
        payment_id,
        session_id: str,
        success_indicator: Optional[str] = None,
        checkout_url: Optional[str] = None,
    ) -> Payment:
        payment = await self.get(payment_id)
        payment.session_id = session_id
        payment.success_indicator = success_indicator
        payment.checkout_url = checkout_url
        self._add_event(payment, "session_created", payment.payment_status, payment.payment_status, {
            "session_id": session_id
        })
        await self._commit(payment)
        return payment

    async def save_snapshot(self, payment_id, snapshot: Dict[str, Any]) -> Payment:
        """Store the last normalized gateway view without changing status."""
        payment = await self.get(payment_id)
        payment.gateway_snapshot = snapshot
        await self._commit(payment)
        return payment

    async def mark_completed(
        self,
        payment_id,
        gateway_transaction_id: Optional[str],
        completed_at: Optional[datetime] = None,
        payment_method: Optional[str] = None,
    ) -> Payment:
        payment = await self.get(payment_id)
        if payment.payment_status == PaymentStatus.COMPLETED.value:
            return payment
        self._check_transition(payment, PaymentStatus.COMPLETED.value)

        previous = payment.payment_status
        payment.payment_status = PaymentStatus.COMPLETED.value
        payment.arc_transaction_id = gateway_transaction_id
        payment.completed_at = completed_at or utcnow()
        payment.failure_reason = None
        if payment_method:
            payment.payment_method = payment_method
        self._add_event(payment, "completed", previous, payment.payment_status, {
            "gateway_transaction_id": gateway_transaction_id
        })
        await self._commit(payment)

        logger.info(f"✅ Payment {payment.id} completed (txn {gateway_transaction_id})")
        return payment

    async def mark_failed(self, payment_id, reason: str) -> Payment:
        payment = await self.get(payment_id)
        if payment.payment_status == PaymentStatus.FAILED.value:
            return payment
        self._check_transition(payment, PaymentStatus.FAILED.value)

        previous = payment.payment_status
        payment.payment_status = PaymentStatus.FAILED.value
        payment.failure_reason = reason
        self._add_event(payment, "failed", previous, payment.payment_status, {"reason": reason})
        await self._commit(payment)

        logger.info(f"❌ Payment {payment.id} failed: {reason}")
        return payment

    async def mark_refunded(
        self,
        payment_id,
        refund_amount,
        gateway_refund_id: str,
        reason: Optional[str] = None,
    ) -> Payment:
        """
        Record a successful gateway refund: writes a Refund row and adds to
        ``refunded_amount``. Replaying the same refund id is a no-op.
        """
        payment = await self.get(payment_id)
        refund_amount = to_decimal(refund_amount, "refund_amount")
        if refund_amount is None or refund_amount <= 0:
            raise ValidationError("Refund amount must be positive")

        existing = await self.session.execute(
            select(Refund).where(
                and_(Refund.payment_id == payment.id, Refund.gateway_transaction_id == gateway_refund_id)
            )
        )
        if existing.scalar_one_or_none():
            return payment

        self._check_transition(payment, PaymentStatus.REFUNDED.value)

        refunded_total = (payment.refunded_amount or ZERO) + refund_amount
        if refunded_total > payment.amount:
            raise ValidationError(
                f"Refunds of {refunded_total} would exceed the payment amount {payment.amount}",
                {"payment_id": str(payment.id)}
            )

        self.session.add(Refund(
            payment_id=payment.id,
            gateway_transaction_id=gateway_refund_id,
            amount=refund_amount,
            currency=payment.currency,
            reason=reason,
        ))
        previous = payment.payment_status
        payment.payment_status = PaymentStatus.REFUNDED.value
        payment.refunded_amount = refunded_total
        payment.failure_reason = None
        self._add_event(payment, "refunded", previous, payment.payment_status, {
            "amount": str(refund_amount), "gateway_refund_id": gateway_refund_id, "reason": reason
        })
        await self._commit(payment)

        logger.info(f"💸 Payment {payment.id} refunded {refund_amount} ({gateway_refund_id})")
        return payment

    async def mark_voided(self, payment_id, reason: Optional[str] = None) -> Payment:
        payment = await self.get(payment_id)
        if payment.payment_status == PaymentStatus.VOIDED.value:
            return payment
        self._check_transition(payment, PaymentStatus.VOIDED.value)

        previous = payment.payment_status
        payment.payment_status = PaymentStatus.VOIDED.value
        payment.failure_reason = None
        self._add_event(payment, "voided", previous, payment.payment_status, {"reason": reason})
        await self._commit(payment)

        logger.info(f"↩️ Payment {payment.id} voided")
        return payment

    async def mark_refund_pending(self, payment_id, reason: str) -> Payment:
        """Money is owed back but the gateway could not be reached or refused; staff follow up."""
        payment = await self.get(payment_id)
        if payment.payment_status == PaymentStatus.REFUND_PENDING.value:
            payment.failure_reason = reason
            await self._commit(payment)
            return payment
        self._check_transition(payment, PaymentStatus.REFUND_PENDING.value)

        previous = payment.payment_status
        payment.payment_status = PaymentStatus.REFUND_PENDING.value
        payment.failure_reason = reason
        self._add_event(payment, "refund_pending", previous, payment.payment_status, {"reason": reason})
        await self._commit(payment)

        logger.warning(f"⚠️ Payment {payment.id} refund pending: {reason}")
        return payment

    async def record_event(self, payment_id, event_type: str, details: Optional[Dict[str, Any]] = None):
        """Journal something that did not change the payment status (e.g. a rejected void)."""
        payment = await self.get(payment_id)
        self._add_event(payment, event_type, payment.payment_status, payment.payment_status, details)
        await self.session.commit()

    def _check_transition(self, payment: Payment, target: str):
        current = payment.payment_status
        if current in TERMINAL_PAYMENT_STATUSES and not partially_refunded(payment):
            raise InconsistentState(
                f"Payment {payment.id} is {current} and cannot become {target}",
                {"payment_id": str(payment.id), "status": current}
            )
        if current not in ALLOWED_TRANSITIONS[target]:
            raise InconsistentState(
                f"Payment {payment.id} cannot move from {current} to {target}",
                {"payment_id": str(payment.id), "status": current}
            )

    def _add_event(
        self,
        payment: Payment,
        event_type: str,
        from_status: Optional[str],
        to_status: Optional[str],
        details: Optional[Dict[str, Any]] = None,
    ):
        self.session.add(PaymentEvent(
            payment_id=payment.id,
            event_type=event_type,
            from_status=from_status,
            to_status=to_status,
            details=details or {},
        ))
