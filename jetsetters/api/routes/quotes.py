"""
Quotes API
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List
from decimal import Decimal
import logging

from ...database import get_session
from ...errors import JetsettersError
from ...integrations.email import get_notifier, EmailNotifier
from ...services.quotes import QuoteService, quote_to_dict
from ..dependencies import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/quotes", tags=["Quotes"])


class QuoteItem(BaseModel):
    item: str
    quantity: int = 1
    unit_price: Decimal = Field(alias="unitPrice")

    model_config = ConfigDict(populate_by_name=True)

    def as_dict(self):
        return {"item": self.item, "quantity": self.quantity, "unit_price": self.unit_price}


class QuoteCreateRequest(BaseModel):
    """Request model for creating a quote from line items."""
    model_config = ConfigDict(populate_by_name=True)

    inquiry_id: str = Field(alias="inquiryId")
    title: str
    items: List[QuoteItem]
    service_type: Optional[str] = Field(None, alias="serviceType")
    currency: str = "USD"
    notes: Optional[str] = None


class RequoteRequest(BaseModel):
    items: Optional[List[QuoteItem]] = None
    title: Optional[str] = None


class SendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    validity_days: Optional[int] = Field(None, alias="validityDays", gt=0)


def get_quote_service(
    session: AsyncSession = Depends(get_session),
    notifier: EmailNotifier = Depends(get_notifier),
) -> QuoteService:
    return QuoteService(session, notifier=notifier)


async def _run(action: str, call):
    try:
        quote = await call
        return quote_to_dict(quote)
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error trying to {action} quote: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action} quote"
        )


@router.post("")
async def create_quote(request: QuoteCreateRequest, service: QuoteService = Depends(get_quote_service)):
    """Price the items against the current policy and store a draft quote."""
    return await _run("create", service.create_quote(
        request.inquiry_id,
        title=request.title,
        items=[i.as_dict() for i in request.items],
        service_type=request.service_type,
        currency=request.currency,
        notes=request.notes,
    ))


@router.get("/inquiry/{inquiry_id}")
async def list_inquiry_quotes(inquiry_id: str, service: QuoteService = Depends(get_quote_service)):
    try:
        quotes = await service.list_for_inquiry(inquiry_id)
        return {"quotes": [quote_to_dict(q) for q in quotes]}
    except JetsettersError as e:
        raise http_error(e)


@router.get("/{quote_id}")
async def get_quote(quote_id: str, service: QuoteService = Depends(get_quote_service)):
    return await _run("get", service.get_quote(quote_id))


@router.post("/{quote_id}/send")
async def send_quote(quote_id: str, request: Optional[SendRequest] = None, service: QuoteService = Depends(get_quote_service)):
    validity_days = request.validity_days if request else None
    return await _run("send", service.send_quote(quote_id, validity_days=validity_days))


@router.post("/{quote_id}/accept")
async def accept_quote(quote_id: str, service: QuoteService = Depends(get_quote_service)):
    return await _run("accept", service.accept_quote(quote_id))


@router.post("/{quote_id}/requote")
async def requote(quote_id: str, request: Optional[RequoteRequest] = None, service: QuoteService = Depends(get_quote_service)):
    """Re-price a quote against the live pricing policy. Refused once money has moved."""
    items = [i.as_dict() for i in request.items] if request and request.items else None
    title = request.title if request else None
    return await _run("re-price", service.requote(quote_id, items=items, title=title))


@router.post("/{quote_id}/cancel")
async def cancel_quote(quote_id: str, service: QuoteService = Depends(get_quote_service)):
    return await _run("cancel", service.cancel_quote(quote_id))
