"""Tests for the exchange and catalog HTTP endpoints."""

import asyncio
from decimal import Decimal

import pytest

from blockhaven.errors import ProviderError, ProviderUnavailable
from blockhaven.models import ExchangeStatus, User, UserType
from blockhaven.services.provider import ProviderEstimate, ProviderExchangeResult, ProviderStatus

from conftest import make_currency, make_token


CREATE_BODY = {
    "fromCurrency": "btc",
    "fromNetwork": "btc",
    "toCurrency": "eth",
    "toNetwork": "eth",
    "address": "0xabc",
    "fromAmount": "0.1",
    "flow": "standard",
}


def provider_result(**overrides) -> ProviderExchangeResult:
    fields = dict(
        id="tx1",
        payin_address="1A1zP1",
        payout_address="0xabc",
        from_currency="btc",
        from_network="btc",
        to_currency="eth",
        to_network="eth",
        flow="standard",
        type="direct",
        from_amount=Decimal("0.1"),
        to_amount=Decimal("1.8"),
    )
    fields.update(overrides)
    return ProviderExchangeResult(**fields)


class TestCatalogEndpoints:
    """Public catalog reads."""

    @pytest.mark.asyncio
    async def test_currencies(self, client, seeded_catalog):
        response = await client.get("/api/exchanges/currencies")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert [c["ticker"] for c in data["data"]] == ["btc", "eth", "usdt"]

    @pytest.mark.asyncio
    async def test_enhanced_pairs(self, client, seeded_catalog):
        response = await client.get("/api/exchanges/enhanced-pairs")
        assert response.status_code == 200
        pairs = response.json()["data"]
        assert pairs[0]["from"]["name"] == "Bitcoin"
        assert pairs[0]["flow"] == {"standard": True, "fixed-rate": True}
        assert pairs[1]["to"] == {"ticker": "usdt", "network": "trx", "name": "USDT", "image": None, "featured": False}

    @pytest.mark.asyncio
    async def test_estimate(self, client, mock_provider):
        mock_provider.get_estimated_amount.return_value = ProviderEstimate(
            from_currency="btc", to_currency="eth", from_network=None, to_network=None,
            flow="standard", type="direct", from_amount=Decimal("0.1"), to_amount=Decimal("1.8"),
        )

        response = await client.get(
            "/api/exchanges/estimate", params={"fromCurrency": "btc", "toCurrency": "eth", "fromAmount": "0.1"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["to_amount"] == 1.8

    @pytest.mark.asyncio
    async def test_estimate_requires_amount(self, client, mock_provider):
        response = await client.get("/api/exchanges/estimate", params={"fromCurrency": "btc", "toCurrency": "eth"})

        assert response.status_code == 400
        assert response.json()["success"] is False
        mock_provider.get_estimated_amount.assert_not_awaited()


class TestCreateExchange:
    """POST /api/exchanges."""

    @pytest.mark.asyncio
    async def test_create_then_lookup(self, client, mock_provider, customer_headers):
        mock_provider.create_exchange.return_value = provider_result()

        response = await client.post(
            "/api/exchanges", json=CREATE_BODY, headers={"x-forwarded-for": "198.51.100.1, 10.0.0.1"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["data"]["id"] == "tx1"
        assert body["data"]["payinAddress"] == "1A1zP1"
        assert body["data"]["persisted"] is True
        assert mock_provider.create_exchange.await_args.kwargs["client_ip"] == "198.51.100.1"

        response = await client.get("/api/exchanges/transaction/tx1", headers=customer_headers)
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "waiting"
        assert response.json()["data"]["to_amount"] == 1.8

    @pytest.mark.asyncio
    async def test_authenticated_creation_is_listed_for_owner(
        self, client, mock_provider, customer_user, customer_headers
    ):
        mock_provider.create_exchange.return_value = provider_result()

        response = await client.post("/api/exchanges", json=CREATE_BODY, headers=customer_headers)
        assert response.status_code == 201

        response = await client.get("/api/exchanges", headers=customer_headers)
        assert response.status_code == 200
        [exchange] = response.json()["data"]
        assert exchange["transaction_id"] == "tx1"
        assert exchange["user_id"] == str(customer_user.id)

    @pytest.mark.asyncio
    async def test_missing_field_is_400_envelope(self, client, mock_provider):
        body = dict(CREATE_BODY)
        del body["address"]

        response = await client.post("/api/exchanges", json=body)

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Invalid request"
        assert data["details"][0]["field"] == "address"
        mock_provider.create_exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_rejection_is_400_with_details(self, client, mock_provider):
        mock_provider.create_exchange.side_effect = ProviderError(
            "Amount is less than minimal", provider_status=400, provider_code="out_of_range"
        )

        response = await client.post("/api/exchanges", json=CREATE_BODY)

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Exchange provider rejected the request",
            "details": "Amount is less than minimal",
        }

    @pytest.mark.asyncio
    async def test_provider_timeout_is_504(self, client, mock_provider):
        mock_provider.create_exchange.side_effect = ProviderUnavailable("timed out", timed_out=True)

        response = await client.post("/api/exchanges", json=CREATE_BODY)

        assert response.status_code == 504
        assert response.json()["success"] is False


class TestExchangeReads:
    """Authenticated exchange reads and status refresh."""

    @pytest.mark.asyncio
    async def test_list_requires_auth(self, client):
        response = await client.get("/api/exchanges")
        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, client, customer_user):
        response = await client.get(
            "/api/exchanges", headers={"Authorization": f"Bearer {make_token(customer_user.id, secret='wrong')}"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, client, test_db):
        user = User(email="gone@example.com", user_type=UserType.CUSTOMER, is_active=False)
        test_db.add(user)
        await test_db.commit()

        response = await client.get("/api/exchanges", headers={"Authorization": f"Bearer {make_token(user.id)}"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_unknown_id_is_404(self, client, customer_headers):
        response = await client.get("/api/exchanges/999", headers=customer_headers)
        assert response.status_code == 404
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_get_by_local_id(self, client, mock_provider, customer_headers):
        mock_provider.create_exchange.return_value = provider_result()
        await client.post("/api/exchanges", json=CREATE_BODY)

        local_id = (await client.get("/api/exchanges/transaction/tx1", headers=customer_headers)).json()["data"]["id"]
        response = await client.get(f"/api/exchanges/{local_id}", headers=customer_headers)

        assert response.status_code == 200
        assert response.json()["data"]["transaction_id"] == "tx1"

    @pytest.mark.asyncio
    async def test_status_refresh(self, client, mock_provider, customer_headers):
        mock_provider.create_exchange.return_value = provider_result()
        await client.post("/api/exchanges", json=CREATE_BODY)
        mock_provider.get_exchange_status.return_value = ProviderStatus(
            id="tx1", status=ExchangeStatus.SENDING, to_amount=Decimal("1.79")
        )

        response = await client.put("/api/exchanges/tx1/status", headers=customer_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "sending"
        assert data["to_amount"] == 1.79
        assert data["payin_address"] == "1A1zP1"

    @pytest.mark.asyncio
    async def test_status_refresh_unknown_is_404(self, client, mock_provider, customer_headers):
        response = await client.put("/api/exchanges/missing/status", headers=customer_headers)

        assert response.status_code == 404
        mock_provider.get_exchange_status.assert_not_awaited()


class TestCatalogJobs:
    """Admin-only sync triggers."""

    @pytest.mark.asyncio
    async def test_customer_forbidden(self, client, customer_headers, mock_provider):
        response = await client.post("/api/exchanges/fetch-currencies", headers=customer_headers)

        assert response.status_code == 403
        assert response.json()["success"] is False
        mock_provider.list_currencies.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_anonymous_unauthorized(self, client):
        response = await client.post("/api/exchanges/fetch-pairs")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_fetch_currencies(self, client, admin_headers, mock_provider):
        mock_provider.list_currencies.return_value = [make_currency("btc"), make_currency("btc")]

        response = await client.post("/api/exchanges/fetch-currencies", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"]["inserted"] == 1
        assert body["data"]["duplicates"] == 1

    @pytest.mark.asyncio
    async def test_fetch_pairs_refreshes_both(self, client, admin_headers, mock_provider):
        mock_provider.list_currencies.return_value = [make_currency("btc"), make_currency("eth")]
        mock_provider.list_pairs.return_value = [
            {"fromCurrency": "btc", "fromNetwork": "btc", "toCurrency": "eth", "toNetwork": "eth",
             "flow": {"standard": True, "fixed-rate": False}},
        ]

        response = await client.post(
            "/api/exchanges/fetch-pairs", params={"fromCurrency": "btc"}, headers=admin_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["currencies"]["inserted"] == 2
        assert data["pairs"]["inserted"] == 1
        assert mock_provider.list_pairs.await_args.kwargs["from_currency"] == "btc"

    @pytest.mark.asyncio
    async def test_concurrent_fetch_is_409(self, client, admin_headers, mock_provider):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_list(*args, **kwargs):
            started.set()
            await release.wait()
            return []

        mock_provider.list_currencies.side_effect = slow_list

        first = asyncio.create_task(client.post("/api/exchanges/fetch-currencies", headers=admin_headers))
        await started.wait()

        second = await client.post("/api/exchanges/fetch-currencies", headers=admin_headers)
        assert second.status_code == 409
        assert second.json()["success"] is False

        release.set()
        assert (await first).status_code == 200
