"""
Pricing Engine Service
Turns a base price and the admin pricing policy into a taxed total with breakdown.
"""
from typing import Dict, Any, Optional, List, Union
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
import logging

from ..errors import ValidationError, NotFoundError
from ..models import PricingPolicy, ServiceType

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Defaults mirror the admin price settings screen
DEFAULT_POLICIES: Dict[str, Dict[str, Optional[str]]] = {
    ServiceType.FLIGHT.value: {"fixed_fee": "25.00", "fee_percentage": "5.0", "port_charge": None, "markup_percentage": None},
    ServiceType.HOTEL.value: {"fixed_fee": "35.00", "fee_percentage": "12.0", "port_charge": None, "markup_percentage": None},
    ServiceType.CRUISE.value: {"fixed_fee": "150.00", "fee_percentage": "8.0", "port_charge": "50.00", "markup_percentage": None},
    ServiceType.PACKAGE.value: {"fixed_fee": "0.00", "fee_percentage": "0", "port_charge": None, "markup_percentage": "10.0"},
    ServiceType.GENERAL.value: {"fixed_fee": "0.00", "fee_percentage": "0", "port_charge": None, "markup_percentage": None},
}

POLICY_FIELDS = ("fixed_fee", "fee_percentage", "port_charge", "markup_percentage")

Number = Union[Decimal, int, float, str]


def to_decimal(value: Optional[Number], field: str = "amount") -> Optional[Decimal]:
    """Coerce to Decimal without going through binary floats."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} must be a number", {"field": field, "value": str(value)})


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def normalize_service_type(service_type: str) -> str:
    try:
        return ServiceType(str(service_type).lower()).value
    except ValueError:
        raise ValidationError(
            f"Unknown service type: {service_type}",
            {"allowed": [s.value for s in ServiceType]}
        )


def _policy_value(policy: Any, field: str) -> Optional[Decimal]:
    if isinstance(policy, dict):
        raw = policy.get(field)
    else:
        raw = getattr(policy, field, None)
    return to_decimal(raw, field)


def compute_total(service_type: str, base_amount: Number, policy: Any) -> Dict[str, Decimal]:
    """
    Compute the customer total for a base price under a pricing policy.

    Pure function: no storage or network access. ``policy`` may be a
    PricingPolicy row or a plain dict with the same field names.

    total = base + fixed_fee + base * fee_percentage / 100
            (+ port_charge for cruises) (+ base * markup_percentage / 100)

    Only the final total is rounded (2 places, half-up); the intermediate
    terms are returned unrounded.
    """
    service = normalize_service_type(service_type)
    base = to_decimal(base_amount, "base_amount")
    if base is None:
        raise ValidationError("base_amount is required")
    if base < 0:
        raise ValidationError("base_amount cannot be negative", {"base_amount": str(base)})

    fixed_fee = _policy_value(policy, "fixed_fee") or Decimal("0")
    fee_percentage = _policy_value(policy, "fee_percentage") or Decimal("0")
    port_charge = _policy_value(policy, "port_charge")
    markup_percentage = _policy_value(policy, "markup_percentage")

    for field, value in (
        ("fixed_fee", fixed_fee),
        ("fee_percentage", fee_percentage),
        ("port_charge", port_charge),
        ("markup_percentage", markup_percentage),
    ):
        if value is not None and value < 0:
            raise ValidationError(f"Pricing policy {field} cannot be negative", {field: str(value)})

    percentage_fee = base * fee_percentage / Decimal(100)
    applied_port_charge = port_charge if (service == ServiceType.CRUISE.value and port_charge) else Decimal("0")
    markup = base * markup_percentage / Decimal(100) if markup_percentage else Decimal("0")

    total = round_money(base + fixed_fee + percentage_fee + applied_port_charge + markup)

    return {
        "base_amount": base,
        "fixed_fee": fixed_fee,
        "percentage_fee": percentage_fee,
        "port_charge": applied_port_charge,
        "markup": markup,
        "total": total,
    }


def policy_to_dict(policy: PricingPolicy) -> Dict[str, Any]:
    return {
        "service_type": policy.service_type,
        "fixed_fee": str(policy.fixed_fee) if policy.fixed_fee is not None else None,
        "fee_percentage": str(policy.fee_percentage) if policy.fee_percentage is not None else None,
        "port_charge": str(policy.port_charge) if policy.port_charge is not None else None,
        "markup_percentage": str(policy.markup_percentage) if policy.markup_percentage is not None else None,
        "version": policy.version,
        "updated_by": policy.updated_by,
        "updated_at": policy.updated_at.isoformat() if policy.updated_at else None,
    }


class PricingService:
    """Loads and edits the admin pricing policies."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def seed_defaults(self) -> List[PricingPolicy]:
        """Insert default policies for any service type that has none yet."""
        existing = {p.service_type for p in await self.list_policies()}
        created = []
        for service_type, values in DEFAULT_POLICIES.items():
            if service_type in existing:
                continue
            policy = PricingPolicy(
                service_type=service_type,
                fixed_fee=to_decimal(values["fixed_fee"]),
                fee_percentage=to_decimal(values["fee_percentage"]),
                port_charge=to_decimal(values["port_charge"]),
                markup_percentage=to_decimal(values["markup_percentage"]),
                version=1,
                updated_by="system",
            )
            self.session.add(policy)
            created.append(policy)
        if created:
            await self.session.commit()
            logger.info(f"Seeded {len(created)} default pricing policies")
        return created

    async def list_policies(self) -> List[PricingPolicy]:
        result = await self.session.execute(select(PricingPolicy).order_by(PricingPolicy.service_type))
        return list(result.scalars().all())

    async def get_policy(self, service_type: str) -> PricingPolicy:
        service = normalize_service_type(service_type)
        result = await self.session.execute(
            select(PricingPolicy).where(PricingPolicy.service_type == service)
        )
        policy = result.scalar_one_or_none()
        if not policy:
            # fall back to defaults so a fresh database can still quote
            await self.seed_defaults()
            result = await self.session.execute(
                select(PricingPolicy).where(PricingPolicy.service_type == service)
            )
            policy = result.scalar_one_or_none()
        if not policy:
            raise NotFoundError(f"No pricing policy for {service}")
        return policy

    async def update_policy(self, service_type: str, updated_by: Optional[str] = None, **values) -> PricingPolicy:
        """
        Edit a policy. Bumps ``version`` so quotes can tell which revision priced them.
        Existing quotes are never touched.
        """
        policy = await self.get_policy(service_type)
        changes = {}
        for field in POLICY_FIELDS:
            if field not in values:
                continue
            value = to_decimal(values[field], field)
            if value is not None and value < 0:
                raise ValidationError(f"Pricing policy {field} cannot be negative", {field: str(value)})
            if field in ("fixed_fee", "fee_percentage") and value is None:
                raise ValidationError(f"{field} is required")
            changes[field] = value

        if not changes:
            return policy

        for field, value in changes.items():
            setattr(policy, field, value)
        policy.version = (policy.version or 0) + 1
        policy.updated_by = updated_by
        await self.session.commit()
        await self.session.refresh(policy)

        logger.info(f"Pricing policy {policy.service_type} updated to v{policy.version} by {updated_by}")
        return policy

    async def price(self, service_type: str, base_amount: Number) -> Dict[str, Any]:
        """
        Price a base amount against the live policy.

        Returns the computed figures plus a snapshot of the policy values so
        the caller can store them alongside the quote.
        """
        policy = await self.get_policy(service_type)
        figures = compute_total(service_type, base_amount, policy)
        snapshot = policy_to_dict(policy)
        snapshot.pop("updated_at", None)
        snapshot.pop("updated_by", None)
        return {"figures": figures, "snapshot": snapshot}
