"""
Quote Ledger
Owns quote records: creation from priced items, dispatch, acceptance, re-quote and expiry.
"""
from typing import Dict, Any, Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import os
import uuid

from ..errors import ValidationError, NotFoundError, InconsistentState
from ..models import (
    Inquiry, Quote, Payment, QuoteStatus, QuotePaymentStatus, PaymentStatus, InquiryStatus,
    utcnow, ensure_utc, as_uuid
)
from .pricing import PricingService, to_decimal, round_money, normalize_service_type

logger = logging.getLogger(__name__)

EXPIRY_WARNING_DAYS = 3

# quotes in these payment states can still be re-priced or expired
UNSETTLED_PAYMENT_STATUSES = (QuotePaymentStatus.UNPAID.value, QuotePaymentStatus.FAILED.value)


def generate_quote_number() -> str:
    """Generate a human friendly quote number"""
    return f"Q-{utcnow().strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def breakdown_total(breakdown: List[Dict[str, Any]]) -> Decimal:
    return sum((Decimal(str(line["amount"])) for line in breakdown), Decimal("0.00"))


def build_breakdown(items: List[Dict[str, Any]], figures: Dict[str, Decimal], snapshot: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Build the ordered line items for a quote.

    Item lines come first, then fixed charges, then the variable (percentage)
    charges. The last variable line absorbs the rounding of the total so the
    lines always add up to the rounded total exactly.
    """
    lines: List[Dict[str, Any]] = []
    for item in items:
        quantity = item["quantity"]
        unit_price = item["unit_price"]
        lines.append({
            "item": item["item"],
            "quantity": quantity,
            "unit_price": str(unit_price),
            "amount": str(round_money(unit_price * quantity)),
            "kind": "item",
        })

    if figures["fixed_fee"]:
        lines.append(_charge_line("Taxes & fees (fixed)", round_money(figures["fixed_fee"])))
    if figures["port_charge"]:
        lines.append(_charge_line("Port charges", round_money(figures["port_charge"])))

    variable = []
    if figures["markup"]:
        variable.append((f"Package markup ({snapshot.get('markup_percentage')}%)", figures["markup"]))
    if figures["percentage_fee"]:
        variable.append((f"Taxes & fees ({snapshot.get('fee_percentage')}%)", figures["percentage_fee"]))

    for label, value in variable[:-1]:
        lines.append(_charge_line(label, round_money(value)))

    residual = figures["total"] - breakdown_total(lines)
    if variable:
        lines.append(_charge_line(variable[-1][0], residual))
    elif residual:
        # only reachable if item prices carry sub-cent precision
        lines.append(_charge_line("Rounding", residual))

    return lines


def _charge_line(label: str, amount: Decimal) -> Dict[str, Any]:
    return {"item": label, "quantity": 1, "unit_price": str(amount), "amount": str(amount), "kind": "charge"}


def normalize_items(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not items:
        raise ValidationError("At least one quote item is required")
    normalized = []
    for index, raw in enumerate(items):
        name = (raw.get("item") or "").strip()
        if not name:
            raise ValidationError(f"Item {index + 1} needs a description")
        try:
            quantity = int(raw.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"Item {index + 1} quantity must be a whole number")
        if quantity <= 0:
            raise ValidationError(f"Item {index + 1} quantity must be positive")
        unit_price = to_decimal(raw.get("unit_price"), "unit_price")
        if unit_price is None:
            raise ValidationError(f"Item {index + 1} needs a unit_price")
        if unit_price < 0:
            raise ValidationError(f"Item {index + 1} unit_price cannot be negative")
        normalized.append({"item": name, "quantity": quantity, "unit_price": unit_price})
    return normalized


def quote_to_dict(quote: Quote) -> Dict[str, Any]:
    return {
        "id": str(quote.id),
        "inquiry_id": str(quote.inquiry_id),
        "quote_number": quote.quote_number,
        "title": quote.title,
        "service_type": quote.service_type,
        "breakdown": quote.breakdown,
        "total_amount": str(quote.total_amount),
        "currency": quote.currency,
        "status": quote.status,
        "payment_status": quote.payment_status,
        "pricing_snapshot": quote.pricing_snapshot,
        "created_at": quote.created_at.isoformat() if quote.created_at else None,
        "sent_at": quote.sent_at.isoformat() if quote.sent_at else None,
        "accepted_at": quote.accepted_at.isoformat() if quote.accepted_at else None,
        "expires_at": quote.expires_at.isoformat() if quote.expires_at else None,
        "paid_at": quote.paid_at.isoformat() if quote.paid_at else None,
    }


class QuoteService:
    """Service for the quote ledger."""

    def __init__(self, session: AsyncSession, notifier=None):
        self.session = session
        self.notifier = notifier
        self.validity_days = int(os.getenv("QUOTE_VALIDITY_DAYS", 7))

    async def get_inquiry(self, inquiry_id) -> Inquiry:
        inquiry = await self.session.get(Inquiry, as_uuid(inquiry_id))
        if not inquiry:
            raise NotFoundError(f"Inquiry not found: {inquiry_id}")
        return inquiry

    async def get_quote(self, quote_id) -> Quote:
        quote = await self.session.get(Quote, as_uuid(quote_id))
        if not quote:
            raise NotFoundError(f"Quote not found: {quote_id}")
        return quote

    async def list_for_inquiry(self, inquiry_id) -> List[Quote]:
        result = await self.session.execute(
            select(Quote)
            .where(Quote.inquiry_id == as_uuid(inquiry_id))
            .order_by(Quote.created_at.desc())
        )
        return list(result.scalars().all())

    async def _price_items(self, service_type: str, items: List[Dict[str, Any]]):
        normalized = normalize_items(items)
        base_amount = sum((round_money(i["unit_price"] * i["quantity"]) for i in normalized), Decimal("0.00"))
        priced = await PricingService(self.session).price(service_type, base_amount)
        breakdown = build_breakdown(normalized, priced["figures"], priced["snapshot"])
        total = priced["figures"]["total"]

        if breakdown_total(breakdown) != total:
            raise InconsistentState(
                "Quote breakdown does not add up to the total",
                {"total": str(total), "breakdown_total": str(breakdown_total(breakdown))}
            )
        snapshot = dict(priced["snapshot"])
        snapshot["base_amount"] = str(base_amount)
        return breakdown, total, snapshot

    async def create_quote(
        self,
        inquiry_id,
        title: str,
        items: List[Dict[str, Any]],
        service_type: Optional[str] = None,
        currency: str = "USD",
        notes: Optional[str] = None,
    ) -> Quote:
        """
        Create a draft quote priced against the current policy.

        The resolved policy numbers are copied into ``pricing_snapshot``;
        later policy edits never change this quote.
        """
        inquiry = await self.get_inquiry(inquiry_id)
        if not title or not title.strip():
            raise ValidationError("Quote title is required")
        service = normalize_service_type(service_type or inquiry.inquiry_type)

        breakdown, total, snapshot = await self._price_items(service, items)

        quote = Quote(
            inquiry_id=inquiry.id,
            quote_number=generate_quote_number(),
            title=title.strip(),
            service_type=service,
            breakdown=breakdown,
            total_amount=total,
            currency=(currency or "USD").upper(),
            pricing_snapshot=snapshot,
            status=QuoteStatus.DRAFT.value,
            payment_status=QuotePaymentStatus.UNPAID.value,
            notes=notes,
        )
        self.session.add(quote)

        if inquiry.status in (InquiryStatus.PENDING.value, InquiryStatus.PROCESSING.value):
            inquiry.status = InquiryStatus.QUOTED.value

        await self.session.commit()
        await self.session.refresh(quote)

        logger.info(f"Created quote {quote.quote_number} for inquiry {inquiry.id}: {quote.currency} {quote.total_amount}")
        return quote

    async def requote(self, quote_id, items: Optional[List[Dict[str, Any]]] = None, title: Optional[str] = None) -> Quote:
        """
        Explicit re-quote: re-price against the live policy.

        This is the only path that changes ``total_amount`` after creation,
        and it is refused once money has moved or a checkout is open.
        """
        quote = await self.get_quote(quote_id)
        if quote.payment_status not in UNSETTLED_PAYMENT_STATUSES:
            raise ValidationError(
                f"Quote {quote.quote_number} cannot be re-quoted with payment status {quote.payment_status}"
            )
        if quote.status == QuoteStatus.CANCELLED.value:
            raise ValidationError(f"Quote {quote.quote_number} is cancelled")

        pending = await self.session.execute(
            select(Payment.id).where(
                and_(Payment.quote_id == quote.id, Payment.payment_status == PaymentStatus.PENDING.value)
            )
        )
        if pending.first():
            raise ValidationError(f"Quote {quote.quote_number} has a checkout in progress")

        if items is None:
            items = [
                {"item": line["item"], "quantity": line["quantity"], "unit_price": line["unit_price"]}
                for line in quote.breakdown
                if line.get("kind", "item") == "item"
            ]

        breakdown, total, snapshot = await self._price_items(quote.service_type, items)
        previous_total = quote.total_amount

        quote.breakdown = breakdown
        quote.total_amount = total
        quote.pricing_snapshot = snapshot
        quote.status = QuoteStatus.DRAFT.value
        quote.payment_status = QuotePaymentStatus.UNPAID.value
        quote.sent_at = None
        quote.expires_at = None
        if title:
            quote.title = title.strip()

        await self.session.commit()
        await self.session.refresh(quote)

        logger.info(f"Re-quoted {quote.quote_number}: {previous_total} -> {quote.total_amount}")
        return quote

    async def send_quote(self, quote_id, validity_days: Optional[int] = None) -> Quote:
        """Dispatch a draft quote to the customer and start its validity window."""
        quote = await self.get_quote(quote_id)
        if quote.status not in (QuoteStatus.DRAFT.value, QuoteStatus.SENT.value):
            raise ValidationError(f"Quote {quote.quote_number} cannot be sent from status {quote.status}")

        now = utcnow()
        quote.status = QuoteStatus.SENT.value
        quote.sent_at = now
        quote.expires_at = now + timedelta(days=validity_days or self.validity_days)
        await self.session.commit()
        await self.session.refresh(quote)

        if self.notifier:
            inquiry = await self.get_inquiry(quote.inquiry_id)
            await self.notifier.send_template(
                "quote_sent",
                to=inquiry.customer_email,
                params={
                    "customer_name": inquiry.customer_name,
                    "quote_title": quote.title,
                    "amount": f"{quote.currency} {quote.total_amount}",
                    "expires_at": quote.expires_at.date().isoformat(),
                },
            )

        logger.info(f"Quote {quote.quote_number} sent, expires {quote.expires_at.isoformat()}")
        return quote

    async def accept_quote(self, quote_id) -> Quote:
        """Record customer acceptance (informational only)."""
        quote = await self.get_quote(quote_id)
        if quote.status in (QuoteStatus.EXPIRED.value, QuoteStatus.CANCELLED.value):
            raise ValidationError(f"Quote {quote.quote_number} is {quote.status}")
        quote.status = QuoteStatus.ACCEPTED.value
        quote.accepted_at = utcnow()
        await self.session.commit()
        await self.session.refresh(quote)
        return quote

    async def cancel_quote(self, quote_id) -> Quote:
        """Cancel an unpaid quote. Paid quotes are cancelled through booking cancellation."""
        quote = await self.get_quote(quote_id)
        if quote.payment_status not in UNSETTLED_PAYMENT_STATUSES:
            raise ValidationError(
                f"Quote {quote.quote_number} has payment status {quote.payment_status}; cancel the booking instead"
            )
        quote.status = QuoteStatus.CANCELLED.value
        await self.session.commit()
        await self.session.refresh(quote)
        logger.info(f"Quote {quote.quote_number} cancelled")
        return quote

    async def expire_quotes(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Mark sent quotes past their expiry as expired and warn about quotes
        expiring within the next few days. Paid quotes never expire.
        """
        now = now or utcnow()
        warn_before = now + timedelta(days=EXPIRY_WARNING_DAYS)

        expired_result = await self.session.execute(
            select(Quote).where(
                and_(
                    Quote.status.in_([QuoteStatus.SENT.value, QuoteStatus.ACCEPTED.value]),
                    Quote.payment_status.in_(UNSETTLED_PAYMENT_STATUSES),
                    Quote.expires_at.isnot(None),
                    Quote.expires_at < now,
                )
            )
        )
        expired = list(expired_result.scalars().all())
        for quote in expired:
            quote.status = QuoteStatus.EXPIRED.value
        if expired:
            await self.session.commit()
            logger.info(f"Marked {len(expired)} quotes as expired")

        expiring_result = await self.session.execute(
            select(Quote).where(
                and_(
                    Quote.status == QuoteStatus.SENT.value,
                    Quote.payment_status.in_(UNSETTLED_PAYMENT_STATUSES),
                    Quote.expires_at >= now,
                    Quote.expires_at <= warn_before,
                )
            )
        )
        expiring = list(expiring_result.scalars().all())

        if self.notifier:
            for quote in expired:
                await self._notify_expiry("quote_expired", quote, now)
            for quote in expiring:
                await self._notify_expiry("quote_expiring", quote, now)

        return {
            "expired": [q.quote_number for q in expired],
            "expiring_soon": [q.quote_number for q in expiring],
        }

    async def _notify_expiry(self, template: str, quote: Quote, now: datetime):
        inquiry = await self.session.get(Inquiry, quote.inquiry_id)
        if not inquiry:
            return
        expires_at = ensure_utc(quote.expires_at)
        days_left = max((expires_at - now).days, 0) if expires_at else 0
        await self.notifier.send_template(
            template,
            to=inquiry.customer_email,
            params={
                "customer_name": inquiry.customer_name,
                "quote_title": quote.title,
                "amount": f"{quote.currency} {quote.total_amount}",
                "days_left": days_left,
            },
        )


