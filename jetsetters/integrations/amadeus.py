"""
Amadeus supplier client
Only the piece the booking ledger needs: cancelling a flight order.
"""

import os
import logging
import httpx
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Any
from dotenv import load_dotenv

from ..errors import SupplierError

load_dotenv()
logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://test.api.amadeus.com"


class AmadeusClient:
    """OAuth client-credentials client for the Amadeus self-service API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.api_key = api_key or os.getenv("AMADEUS_API_KEY")
        self.api_secret = api_secret or os.getenv("AMADEUS_API_SECRET")
        self.base_url = (base_url or os.getenv("AMADEUS_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.transport = transport
        self.timeout = timeout

        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None

    async def _get_token(self, client: httpx.AsyncClient) -> str:
        if self._token and self._token_expires_at and datetime.now(timezone.utc) < self._token_expires_at:
            return self._token

        if not self.api_key or not self.api_secret:
            raise SupplierError("Missing Amadeus API credentials")

        response = await client.post(
            f"{self.base_url}/v1/security/oauth2/token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.api_key,
                "client_secret": self.api_secret,
            },
        )
        if response.status_code != 200:
            raise SupplierError(
                f"Amadeus authentication failed: {response.status_code}",
                {"response": response.text}
            )

        data = response.json()
        self._token = data["access_token"]
        # refresh a minute before the advertised expiry
        expires_in = int(data.get("expires_in", 1799))
        self._token_expires_at = datetime.now(timezone.utc) + timedelta(seconds=max(expires_in - 60, 0))
        logger.info("✅ Obtained Amadeus token")
        return self._token

    async def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """
        Cancel a flight order (``DELETE /v1/booking/flight-orders/{id}``).

        Raises SupplierError on any failure; an order Amadeus no longer
        knows about counts as already cancelled.
        """
        if not order_id:
            raise SupplierError("Supplier order id is required")

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                token = await self._get_token(client)
                response = await client.delete(
                    f"{self.base_url}/v1/booking/flight-orders/{order_id}",
                    headers={
                        "Authorization": f"Bearer {token}",
                        "Accept": "application/vnd.amadeus+json",
                    },
                )
        except httpx.HTTPError as e:
            raise SupplierError(f"Amadeus unreachable: {e}")

        if response.status_code in (200, 204):
            logger.info(f"✈️ Amadeus order {order_id} cancelled")
            return {"order_id": order_id, "status": "cancelled"}
        if response.status_code == 404:
            logger.warning(f"Amadeus order {order_id} not found, treating as cancelled")
            return {"order_id": order_id, "status": "not_found"}

        raise SupplierError(
            f"Amadeus cancel failed for {order_id}: {response.status_code}",
            {"response": response.text}
        )


# Global supplier client instance
amadeus_client: Optional[AmadeusClient] = None


def get_supplier() -> AmadeusClient:
    """Dependency for FastAPI to get the supplier client"""
    global amadeus_client
    if amadeus_client is None:
        amadeus_client = AmadeusClient()
    return amadeus_client
