"""
Background payment poller
Re-checks pending payments on a fixed interval so a lost gateway redirect still settles.
"""

import os
from typing import Optional, Callable

from ..database import async_session_factory
from ..services.reconciliation import ReconciliationService
from .periodic import PeriodicJob


class PaymentPoller(PeriodicJob):
    """Timer around ReconciliationService.poll_open_payments."""

    name = "Payment poller"

    def __init__(
        self,
        gateway,
        locks,
        notifier=None,
        session_factory: Callable = async_session_factory,
        interval: Optional[float] = None,
    ):
        super().__init__(interval or float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", 30)))
        self.gateway = gateway
        self.locks = locks
        self.notifier = notifier
        self.session_factory = session_factory

    async def run_once(self, limit=None):
        async with self.session_factory() as session:
            service = ReconciliationService(session, self.gateway, self.locks, notifier=self.notifier)
            return await service.poll_open_payments(limit=limit)


def poll_enabled() -> bool:
    return os.getenv("PAYMENT_POLL_ENABLED", "false").lower() == "true"
