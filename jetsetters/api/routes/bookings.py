"""
Bookings API
Booking detail, supplier order linking and cancellation with refund/void.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from decimal import Decimal
import logging

from ...errors import JetsettersError
from ...services.reconciliation import ReconciliationService, booking_to_dict
from ..dependencies import get_reconciliation, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


class CancelRequest(BaseModel):
    """Request model for cancelling a booking."""
    model_config = ConfigDict(populate_by_name=True)

    reason: str
    amount: Optional[Decimal] = None  # partial refund; full reversal when omitted
    cancelled_by: str = Field("admin", alias="cancelledBy")


class SupplierOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    supplier_order_id: str = Field(alias="supplierOrderId")


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    service: ReconciliationService = Depends(get_reconciliation)
):
    try:
        booking = await service.get_booking(booking_id)
        return booking_to_dict(booking)
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error getting booking {booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get booking"
        )


@router.put("/{booking_id}/supplier-order")
async def link_supplier_order(
    booking_id: str,
    request: SupplierOrderRequest,
    service: ReconciliationService = Depends(get_reconciliation)
):
    """Attach the Amadeus flight order created for this booking."""
    try:
        booking = await service.link_supplier_order(booking_id, request.supplier_order_id)
        return booking_to_dict(booking)
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error linking supplier order to booking {booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to link supplier order"
        )


@router.post("/{booking_id}/cancel")
async def cancel_booking(
    booking_id: str,
    request: CancelRequest,
    service: ReconciliationService = Depends(get_reconciliation)
):
    """
    Cancel a booking.

    The captured payment is voided when it is untouched and a full reversal
    is requested, refunded otherwise. If the gateway cannot complete either,
    the booking is still cancelled and ``refundPending`` is true.
    """
    try:
        result = await service.cancel_booking(
            booking_id,
            reason=request.reason,
            amount=request.amount,
            cancelled_by=request.cancelled_by,
        )
        return {
            "success": True,
            "cancellation": {
                "bookingReference": result.booking_reference,
                "refundAmount": str(result.refund_amount),
                "paymentAction": result.payment_action,
                "refundPending": result.refund_pending,
                "amadeusCancelled": result.amadeus_cancelled,
            },
        }
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error cancelling booking {booking_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel booking"
        )
