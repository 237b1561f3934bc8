"""
Amadeus flight order cancellation.
"""
import httpx
import pytest

from jetsetters.errors import SupplierError
from jetsetters.integrations.amadeus import AmadeusClient


def make_client(delete_status=204, token_status=200):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/v1/security/oauth2/token":
            if token_status != 200:
                return httpx.Response(token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "tok-1", "expires_in": 1799})
        if request.method == "DELETE":
            return httpx.Response(delete_status)
        return httpx.Response(400)

    client = AmadeusClient(
        api_key="key",
        api_secret="secret",
        base_url="https://amadeus.test",
        transport=httpx.MockTransport(handler),
    )
    return client, calls


class TestCancelOrder:

    @pytest.mark.asyncio
    async def test_cancel(self):
        client, calls = make_client()
        result = await client.cancel_order("ORDER1")
        assert result == {"order_id": "ORDER1", "status": "cancelled"}
        delete = calls[-1]
        assert delete.url.path == "/v1/booking/flight-orders/ORDER1"
        assert delete.headers["Authorization"] == "Bearer tok-1"

    @pytest.mark.asyncio
    async def test_token_is_reused(self):
        client, calls = make_client()
        await client.cancel_order("ORDER1")
        await client.cancel_order("ORDER2")
        assert [c.method for c in calls] == ["POST", "DELETE", "DELETE"]

    @pytest.mark.asyncio
    async def test_missing_order_counts_as_cancelled(self):
        client, _ = make_client(delete_status=404)
        assert (await client.cancel_order("GONE"))["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        client, _ = make_client(delete_status=500)
        with pytest.raises(SupplierError):
            await client.cancel_order("ORDER1")

    @pytest.mark.asyncio
    async def test_bad_credentials_raise(self):
        client, calls = make_client(token_status=401)
        with pytest.raises(SupplierError):
            await client.cancel_order("ORDER1")
        assert [c.method for c in calls] == ["POST"]

    @pytest.mark.asyncio
    async def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = AmadeusClient(
            api_key="key", api_secret="secret", base_url="https://amadeus.test",
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(SupplierError):
            await client.cancel_order("ORDER1")
