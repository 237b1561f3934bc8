"""
Pricing admin API
"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from decimal import Decimal
import logging

from ...database import get_session
from ...errors import JetsettersError
from ...services.pricing import PricingService, compute_total, policy_to_dict
from ..dependencies import http_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/pricing", tags=["Pricing"])


class PolicyUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fixed_fee: Optional[Decimal] = Field(None, alias="fixedFee")
    fee_percentage: Optional[Decimal] = Field(None, alias="feePercentage")
    port_charge: Optional[Decimal] = Field(None, alias="portCharge")
    markup_percentage: Optional[Decimal] = Field(None, alias="markupPercentage")
    updated_by: Optional[str] = Field(None, alias="updatedBy")


class PreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service_type: str = Field(alias="serviceType")
    base_amount: Decimal = Field(alias="baseAmount")


def get_pricing_service(session: AsyncSession = Depends(get_session)) -> PricingService:
    return PricingService(session)


@router.get("")
async def list_policies(service: PricingService = Depends(get_pricing_service)):
    try:
        await service.seed_defaults()
        policies = await service.list_policies()
        return {"policies": [policy_to_dict(p) for p in policies]}
    except Exception as e:
        logger.error(f"Error listing pricing policies: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to list pricing policies"
        )


@router.put("/{service_type}")
async def update_policy(
    service_type: str,
    request: PolicyUpdateRequest,
    service: PricingService = Depends(get_pricing_service)
):
    """Edit a policy. Only the fields present in the body change; existing quotes keep their snapshot."""
    try:
        values = request.model_dump(exclude_unset=True, exclude={"updated_by"})
        policy = await service.update_policy(service_type, updated_by=request.updated_by, **values)
        return policy_to_dict(policy)
    except JetsettersError as e:
        raise http_error(e)
    except Exception as e:
        logger.error(f"Error updating pricing policy {service_type}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update pricing policy"
        )


@router.post("/preview")
async def preview(request: PreviewRequest, service: PricingService = Depends(get_pricing_service)):
    """Show what a base amount would cost under the live policy without storing anything."""
    try:
        policy = await service.get_policy(request.service_type)
        figures = compute_total(request.service_type, request.base_amount, policy)
        return {
            "serviceType": policy.service_type,
            "policyVersion": policy.version,
            "breakdown": {k: str(v) for k, v in figures.items()},
        }
    except JetsettersError as e:
        raise http_error(e)
