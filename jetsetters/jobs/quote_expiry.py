"""
Quote expiration sweep
Expires sent quotes past their validity and warns customers a few days ahead.
"""

import logging
import os
from datetime import datetime
from typing import Optional, Callable, Dict, Any

from ..database import async_session_factory
from ..services.quotes import QuoteService
from .periodic import PeriodicJob

logger = logging.getLogger(__name__)


async def check_quote_expiration(
    notifier=None,
    session_factory: Callable = async_session_factory,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    async with session_factory() as session:
        result = await QuoteService(session, notifier=notifier).expire_quotes(now=now)

    logger.info(
        f"⏳ Quote expiry: {len(result['expired'])} expired, "
        f"{len(result['expiring_soon'])} expiring soon"
    )
    return result


class QuoteExpirySweeper(PeriodicJob):
    name = "Quote expiry sweep"

    def __init__(self, notifier=None, session_factory: Callable = async_session_factory, interval: Optional[float] = None):
        super().__init__(interval or float(os.getenv("QUOTE_EXPIRY_INTERVAL_SECONDS", 3600)))
        self.notifier = notifier
        self.session_factory = session_factory

    async def run_once(self):
        return await check_quote_expiration(notifier=self.notifier, session_factory=self.session_factory)


def expiry_enabled() -> bool:
    return os.getenv("QUOTE_EXPIRY_ENABLED", "true").lower() == "true"
