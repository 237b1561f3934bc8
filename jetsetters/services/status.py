"""
Status projection
The one place that decides what status an inquiry shows. Computed on read, never stored.
"""
from typing import Iterable, Dict, List, Any, Optional

from ..models import Inquiry, Quote, Payment, InquiryStatus, QuotePaymentStatus, PaymentStatus

# "completed" on a quote is a legacy payment_status some older rows carry
PAID_QUOTE_STATUSES = frozenset({QuotePaymentStatus.PAID.value, "completed"})
PAID_PAYMENT_STATUSES = frozenset({PaymentStatus.COMPLETED.value, "paid"})


def effective_status(inquiry: Inquiry, quotes: Iterable[Quote], payments: Iterable[Payment] = ()) -> str:
    """
    ``booked`` as soon as any quote or payment of the inquiry shows money
    received, otherwise the stored status verbatim.
    """
    if any(q.payment_status in PAID_QUOTE_STATUSES for q in quotes):
        return InquiryStatus.BOOKED.value
    if any(p.payment_status in PAID_PAYMENT_STATUSES for p in payments):
        return InquiryStatus.BOOKED.value
    return inquiry.status


def group_by(rows: Iterable[Any], attr: str) -> Dict[Any, List[Any]]:
    grouped: Dict[Any, List[Any]] = {}
    for row in rows:
        grouped.setdefault(getattr(row, attr), []).append(row)
    return grouped


def project_inquiries(
    inquiries: Iterable[Inquiry],
    quotes: Iterable[Quote],
    payments: Iterable[Payment] = (),
    status: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """
    Pair each inquiry with its effective status; ``status`` filters on the
    projected value, not the stored one.
    """
    quotes_by_inquiry = group_by(quotes, "inquiry_id")
    payments_by_quote = group_by(payments, "quote_id")

    projected = []
    for inquiry in inquiries:
        inquiry_quotes = quotes_by_inquiry.get(inquiry.id, [])
        inquiry_payments = [p for q in inquiry_quotes for p in payments_by_quote.get(q.id, [])]
        current = effective_status(inquiry, inquiry_quotes, inquiry_payments)
        if status and current != status:
            continue
        projected.append({"inquiry": inquiry, "status": current, "quotes": inquiry_quotes})
    return projected
