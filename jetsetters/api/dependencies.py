"""
Shared FastAPI dependencies and error translation for the API routes.
"""
from fastapi import Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_session
from ..errors import JetsettersError
from ..redis_service import get_redis, RedisService
from ..integrations.arc_pay import get_gateway, ArcPayGateway
from ..integrations.amadeus import get_supplier, AmadeusClient
from ..integrations.email import get_notifier, EmailNotifier
from ..services.reconciliation import ReconciliationService


def get_reconciliation(
    session: AsyncSession = Depends(get_session),
    gateway: ArcPayGateway = Depends(get_gateway),
    locks: RedisService = Depends(get_redis),
    supplier: AmadeusClient = Depends(get_supplier),
    notifier: EmailNotifier = Depends(get_notifier),
) -> ReconciliationService:
    return ReconciliationService(session, gateway, locks, supplier=supplier, notifier=notifier)


def http_error(error: JetsettersError) -> HTTPException:
    """Translate a domain error into the HTTP response the client sees."""
    return HTTPException(status_code=error.status_code, detail=error.to_dict())
