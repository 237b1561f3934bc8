"""
Payments API
Checkout creation, the gateway return, status refresh and staff refund/void actions.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, Body, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field, ConfigDict, ValidationError as RequestValidationError
from typing import Optional, Dict, Any
from decimal import Decimal
from urllib.parse import urlencode
import logging
import os

from ...errors import JetsettersError, ValidationError
from ...models import PaymentStatus
from ...services.payments import payment_to_dict
from ...services.reconciliation import ReconciliationService
from ..dependencies import get_reconciliation, http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


class CheckoutRequest(BaseModel):
    """Request model for opening a hosted checkout."""
    model_config = ConfigDict(populate_by_name=True)

    quote_id: str = Field(alias="quoteId")
    amount: Decimal
    currency: str = "USD"
    order_id: Optional[str] = Field(None, alias="orderId")
    booking_type: Optional[str] = Field(None, alias="bookingType")
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    customer_name: Optional[str] = Field(None, alias="customerName")
    description: Optional[str] = None
    return_url: str = Field(alias="returnUrl")
    cancel_url: Optional[str] = Field(None, alias="cancelUrl")


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(alias="paymentId")
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


class VoidRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_id: str = Field(alias="paymentId")
    reason: Optional[str] = None


def _parse(model, payload: Dict[str, Any]):
    # JSON numbers go through str so Decimal sees the digits as sent
    if isinstance(payload.get("amount"), (int, float)):
        payload = dict(payload, amount=str(payload["amount"]))
    try:
        return model.model_validate(payload)
    except RequestValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False)
        )


def frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


@router.post("")
async def payments_action(
    payload: Dict[str, Any] = Body(...),
    action: Optional[str] = Query(None),
    service: ReconciliationService = Depends(get_reconciliation)
):
    """
    Payment actions, selected with ``?action=``:

    - none: open a hosted checkout for a quote
    - **payment-refund**: refund a completed payment (full balance unless amount is given)
    - **payment-void**: void a completed, untouched payment
    """
    try:
        if action is None:
            request = _parse(CheckoutRequest, payload)
            payment, session = await service.start_checkout(
                quote_id=request.quote_id,
                amount=request.amount,
                currency=request.currency,
                order_id=request.order_id,
                booking_type=request.booking_type,
                customer_email=request.customer_email,
                customer_name=request.customer_name,
                description=request.description,
                return_url=request.return_url,
                cancel_url=request.cancel_url,
            )
            return {
                "success": True,
                "checkoutUrl": session.checkout_url,
                "sessionId": session.session_id,
                "paymentId": str(payment.id),
                "orderId": payment.gateway_order_id,
            }

        if action == "payment-refund":
            request = _parse(RefundRequest, payload)
            payment = await service.refund_payment(request.payment_id, amount=request.amount, reason=request.reason)
            return {"success": True, "payment": payment_to_dict(payment)}

        if action == "payment-void":
            request = _parse(VoidRequest, payload)
            payment = await service.void_payment(request.payment_id, reason=request.reason)
            return {"success": True, "payment": payment_to_dict(payment)}

        raise ValidationError(f"Unknown payment action: {action}")

    except HTTPException:
        raise
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error handling payment action {action}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process payment request"
        )


@router.get("/callback")
async def payment_callback(
    order_id: str = Query(..., alias="orderId"),
    booking_type: Optional[str] = Query(None, alias="bookingType"),
    result_indicator: Optional[str] = Query(None, alias="resultIndicator"),
    service: ReconciliationService = Depends(get_reconciliation)
):
    """
    Gateway return URL. The order status is fetched from ARC Pay and the
    customer is redirected to the success or failure page accordingly.
    """
    base = frontend_url()
    try:
        payment = await service.handle_callback(order_id, result_indicator=result_indicator)
    except JetsettersError as e:
        logger.error(f"Payment callback for order {order_id} failed: {e.message}")
        return RedirectResponse(f"{base}/payment/failed?{urlencode({'reason': e.message})}", status_code=302)

    if payment.payment_status == PaymentStatus.COMPLETED.value:
        params = {"paymentId": str(payment.id)}
        if booking_type:
            params["bookingType"] = booking_type
        return RedirectResponse(f"{base}/payment/success?{urlencode(params)}", status_code=302)

    reason = payment.failure_reason or (
        "payment_pending" if payment.payment_status == PaymentStatus.PENDING.value else payment.payment_status
    )
    return RedirectResponse(f"{base}/payment/failed?{urlencode({'reason': reason})}", status_code=302)


@router.get("")
async def payments_query(
    action: str = Query(...),
    payment_id: str = Query(..., alias="paymentId"),
    service: ReconciliationService = Depends(get_reconciliation)
):
    """``?action=payment-retrieve``: refresh a payment from the gateway and return both views."""
    try:
        if action != "payment-retrieve":
            raise ValidationError(f"Unknown payment action: {action}")
        payment = await service.reconcile(payment_id=payment_id)
        return {
            "success": True,
            "payment": payment_to_dict(payment),
            "orderStatus": payment.gateway_snapshot,
        }
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error retrieving payment {payment_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve payment"
        )
