"""
Inquiry read/write side used by the admin screens.
Listings always show the projected status from services.status.
"""
from typing import Dict, Any, Optional, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import logging

from ..errors import ValidationError, NotFoundError
from ..models import Inquiry, Quote, InquiryStatus, as_uuid
from .payments import PaymentStore
from .pricing import normalize_service_type
from .quotes import quote_to_dict
from .status import effective_status, project_inquiries

logger = logging.getLogger(__name__)


def inquiry_to_dict(inquiry: Inquiry, status: str, quotes: Optional[List[Quote]] = None) -> Dict[str, Any]:
    data = {
        "id": str(inquiry.id),
        "customer_name": inquiry.customer_name,
        "customer_email": inquiry.customer_email,
        "customer_phone": inquiry.customer_phone,
        "inquiry_type": inquiry.inquiry_type,
        "status": status,
        "stored_status": inquiry.status,
        "notes": inquiry.notes,
        "created_at": inquiry.created_at.isoformat() if inquiry.created_at else None,
        "updated_at": inquiry.updated_at.isoformat() if inquiry.updated_at else None,
    }
    if quotes is not None:
        data["quotes"] = [quote_to_dict(q) for q in quotes]
    return data


class InquiryService:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_inquiry(
        self,
        customer_name: str,
        customer_email: str,
        inquiry_type: str = "general",
        customer_phone: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Inquiry:
        if not customer_name or not customer_email:
            raise ValidationError("Customer name and email are required")
        inquiry = Inquiry(
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            inquiry_type=normalize_service_type(inquiry_type),
            status=InquiryStatus.PENDING.value,
            notes=notes,
        )
        self.session.add(inquiry)
        await self.session.commit()
        await self.session.refresh(inquiry)
        logger.info(f"Created {inquiry.inquiry_type} inquiry {inquiry.id} for {customer_email}")
        return inquiry

    async def get(self, inquiry_id) -> Inquiry:
        inquiry = await self.session.get(Inquiry, as_uuid(inquiry_id))
        if not inquiry:
            raise NotFoundError(f"Inquiry not found: {inquiry_id}")
        return inquiry

    async def detail(self, inquiry_id) -> Dict[str, Any]:
        inquiry = await self.get(inquiry_id)
        result = await self.session.execute(
            select(Quote).where(Quote.inquiry_id == inquiry.id).order_by(Quote.created_at.desc())
        )
        quotes = list(result.scalars().all())
        payments = await PaymentStore(self.session).list_for_quotes([q.id for q in quotes])
        return inquiry_to_dict(inquiry, effective_status(inquiry, quotes, payments), quotes)

    async def list_inquiries(self, status: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        """List inquiries newest first; ``status`` filters on the projected status."""
        result = await self.session.execute(select(Inquiry).order_by(Inquiry.created_at.desc()))
        inquiries = list(result.scalars().all())

        quotes: List[Quote] = []
        if inquiries:
            quote_result = await self.session.execute(
                select(Quote).where(Quote.inquiry_id.in_([i.id for i in inquiries]))
            )
            quotes = list(quote_result.scalars().all())
        payments = await PaymentStore(self.session).list_for_quotes([q.id for q in quotes])

        projected = project_inquiries(inquiries, quotes, payments, status=status)
        return [inquiry_to_dict(row["inquiry"], row["status"]) for row in projected[offset:offset + limit]]

    async def update_status(self, inquiry_id, status: str) -> Inquiry:
        """Staff override of the stored status. A paid inquiry still reads as booked."""
        try:
            status = InquiryStatus(status).value
        except ValueError:
            raise ValidationError(
                f"Unknown inquiry status: {status}",
                {"allowed": [s.value for s in InquiryStatus]}
            )
        inquiry = await self.get(inquiry_id)
        inquiry.status = status
        await self.session.commit()
        await self.session.refresh(inquiry)
        return inquiry
