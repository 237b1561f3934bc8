"""
Inquiries API
Every status returned here is the projected status, never the stored one alone.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, ConfigDict, EmailStr
from typing import Optional
import logging

from ...database import get_session
from ...errors import JetsettersError
from ...services.inquiries import InquiryService
from ..dependencies import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/inquiries", tags=["Inquiries"])


class InquiryCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str = Field(alias="customerName")
    customer_email: EmailStr = Field(alias="customerEmail")
    customer_phone: Optional[str] = Field(None, alias="customerPhone")
    inquiry_type: str = Field("general", alias="inquiryType")
    notes: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str


def get_inquiry_service(session: AsyncSession = Depends(get_session)) -> InquiryService:
    return InquiryService(session)


@router.post("")
async def create_inquiry(request: InquiryCreateRequest, service: InquiryService = Depends(get_inquiry_service)):
    try:
        inquiry = await service.create_inquiry(
            customer_name=request.customer_name,
            customer_email=request.customer_email,
            inquiry_type=request.inquiry_type,
            customer_phone=request.customer_phone,
            notes=request.notes,
        )
        return await service.detail(inquiry.id)
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error creating inquiry: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create inquiry"
        )


@router.get("")
async def list_inquiries(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: InquiryService = Depends(get_inquiry_service)
):
    """List inquiries. ``?status=booked`` includes inquiries booked only through a payment."""
    try:
        inquiries = await service.list_inquiries(status=status_filter, limit=limit, offset=offset)
        return {"inquiries": inquiries, "count": len(inquiries)}
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error listing inquiries: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list inquiries"
        )


@router.get("/{inquiry_id}")
async def get_inquiry(inquiry_id: str, service: InquiryService = Depends(get_inquiry_service)):
    try:
        return await service.detail(inquiry_id)
    except JetsettersError as e:
        raise http_error(e)


@router.patch("/{inquiry_id}/status")
async def update_inquiry_status(
    inquiry_id: str,
    request: StatusUpdateRequest,
    service: InquiryService = Depends(get_inquiry_service)
):
    try:
        await service.update_status(inquiry_id, request.status)
        return await service.detail(inquiry_id)
    except JetsettersError as e:
        raise http_error(e)
