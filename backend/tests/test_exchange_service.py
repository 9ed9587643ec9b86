"""Tests for the exchange orchestrator.

The provider is fully mocked - no real provider calls.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from blockhaven.errors import (
    NotFound,
    ProviderContractViolation,
    ProviderError,
    ProviderUnavailable,
    ValidationError,
)
from blockhaven.models import Exchange, ExchangeFlow, ExchangeStatus, ExchangeType
from blockhaven.services.exchange import ExchangeCreateRequest, ExchangeService
from blockhaven.services.provider import ProviderEstimate, ProviderExchangeResult, ProviderStatus


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


def create_request(**overrides) -> ExchangeCreateRequest:
    fields = dict(
        from_currency="BTC",
        from_network="btc",
        to_currency="eth",
        to_network="eth",
        address="0xabc",
        from_amount=Decimal("0.1"),
    )
    fields.update(overrides)
    return ExchangeCreateRequest(**fields)


def stored_exchange(transaction_id="tx1", **overrides) -> Exchange:
    fields = dict(
        transaction_id=transaction_id,
        from_currency="btc",
        from_network="btc",
        to_currency="eth",
        to_network="eth",
        from_amount=Decimal("0.1"),
        to_amount=Decimal("1.8"),
        payin_address="1A1zP1",
        payout_address="0xabc",
        flow=ExchangeFlow.STANDARD,
        type=ExchangeType.DIRECT,
        status=ExchangeStatus.WAITING,
    )
    fields.update(overrides)
    return Exchange(**fields)


async def all_exchanges(database):
    async with database.session() as session:
        return (await session.execute(select(Exchange))).scalars().all()


@pytest.fixture
def service(test_db, mock_provider):
    return ExchangeService(test_db, mock_provider, require_known_currencies=True)


class TestCreateExchange:
    """Tests for exchange creation."""

    @pytest.mark.asyncio
    async def test_success_persists_waiting_row(self, database, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result(payout_extra_id_name="Memo")

        result = await service.create_exchange(create_request(user_id="7"), client_ip="203.0.113.7")

        assert result.persisted is True
        assert result.degraded is False
        assert result.exchange.id == "tx1"

        [row] = await all_exchanges(database)
        assert row.transaction_id == "tx1"
        assert row.status == ExchangeStatus.WAITING
        assert row.payin_address == "1A1zP1"
        assert row.to_amount == Decimal("1.8")
        assert row.payout_extra_id_name == "Memo"
        assert row.user_id == "7"

    @pytest.mark.asyncio
    async def test_provider_request_is_normalized(self, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result()

        await service.create_exchange(create_request(), client_ip="203.0.113.7")

        provider_request = mock_provider.create_exchange.await_args.args[0]
        assert provider_request.from_currency == "btc"
        assert provider_request.to_amount is None
        assert mock_provider.create_exchange.await_args.kwargs["client_ip"] == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_provider_failure_writes_nothing(self, database, service, mock_provider):
        mock_provider.create_exchange.side_effect = ProviderError("Amount is less than minimal", provider_status=400)

        with pytest.raises(ProviderError):
            await service.create_exchange(create_request())

        assert await all_exchanges(database) == []

    @pytest.mark.asyncio
    async def test_provider_timeout_writes_nothing(self, database, service, mock_provider):
        mock_provider.create_exchange.side_effect = ProviderUnavailable("timed out", timed_out=True)

        with pytest.raises(ProviderUnavailable):
            await service.create_exchange(create_request())

        assert mock_provider.create_exchange.await_count == 1
        assert await all_exchanges(database) == []

    @pytest.mark.asyncio
    async def test_result_without_payin_address_rejected(self, database, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result(payin_address="")

        with pytest.raises(ProviderContractViolation):
            await service.create_exchange(create_request())

        assert await all_exchanges(database) == []

    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_provider_result(self, test_db, database, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result()
        failing_commit = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")))

        with patch.object(test_db, "commit", failing_commit):
            result = await service.create_exchange(create_request())

        assert result.persisted is False
        assert result.degraded is True
        assert "OperationalError" in result.persistence_error
        assert result.exchange.id == "tx1"
        assert result.exchange.payin_address == "1A1zP1"
        assert await all_exchanges(database) == []

    @pytest.mark.asyncio
    async def test_duplicate_transaction_id_is_degraded_not_fatal(self, test_db, database, service, mock_provider):
        test_db.add(stored_exchange("tx1"))
        await test_db.commit()
        mock_provider.create_exchange.return_value = provider_result(payin_address="bc1qnew")

        result = await service.create_exchange(create_request())

        assert result.degraded is True
        assert result.exchange.payin_address == "bc1qnew"
        [row] = await all_exchanges(database)
        assert row.payin_address == "1A1zP1"


class TestCreateValidation:
    """Invalid requests never reach the provider."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides, field", [
        ({"address": ""}, "address"),
        ({"from_network": "  "}, "from_network"),
        ({"flow": "floating"}, "flow"),
        ({"type": "sideways"}, "type"),
        ({"from_amount": Decimal("-1")}, "from_amount"),
        ({"from_amount": Decimal("1e18")}, "from_amount"),
        ({"to_amount": Decimal("2")}, "to_amount"),
        ({"type": "reverse"}, "from_amount"),
    ])
    async def test_rejected_before_provider_call(self, service, mock_provider, overrides, field):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_exchange(create_request(**overrides))

        assert field in [d["field"] for d in exc_info.value.details]
        mock_provider.create_exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reverse_with_to_amount_accepted(self, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result(type="reverse")

        result = await service.create_exchange(
            create_request(type="reverse", from_amount=None, to_amount=Decimal("1.8"))
        )

        assert result.persisted is True

    @pytest.mark.asyncio
    async def test_unknown_currency_rejected_when_catalog_loaded(self, service, mock_provider, seeded_catalog):
        with pytest.raises(ValidationError) as exc_info:
            await service.create_exchange(create_request(to_currency="doge", to_network="doge"))

        assert exc_info.value.details[0]["field"] == "to_currency"
        mock_provider.create_exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pair_only_currency_accepted(self, service, mock_provider, seeded_catalog):
        mock_provider.create_exchange.return_value = provider_result(to_currency="usdt", to_network="trx")

        result = await service.create_exchange(
            create_request(from_currency="eth", from_network="eth", to_currency="usdt", to_network="trx")
        )

        assert result.persisted is True

    @pytest.mark.asyncio
    async def test_empty_catalog_skips_currency_check(self, service, mock_provider):
        mock_provider.create_exchange.return_value = provider_result(to_currency="doge", to_network="doge")

        result = await service.create_exchange(create_request(to_currency="doge", to_network="doge"))

        assert result.persisted is True

    @pytest.mark.asyncio
    async def test_currency_check_can_be_disabled(self, test_db, mock_provider, seeded_catalog):
        mock_provider.create_exchange.return_value = provider_result(to_currency="doge", to_network="doge")
        service = ExchangeService(test_db, mock_provider, require_known_currencies=False)

        result = await service.create_exchange(create_request(to_currency="doge", to_network="doge"))

        assert result.persisted is True


class TestUpdateStatus:
    """Status refreshes only touch status and to_amount."""

    @pytest.mark.asyncio
    async def test_status_and_amount_updated(self, test_db, service, mock_provider):
        test_db.add(stored_exchange("tx1"))
        await test_db.commit()
        mock_provider.get_exchange_status.return_value = ProviderStatus(
            id="TX1",
            status=ExchangeStatus.FINISHED,
            to_amount=Decimal("1.75"),
            raw={"payinAddress": "attacker", "payoutAddress": "ATTACKER", "flow": "fixed-rate"},
        )

        exchange = await service.update_exchange_status("tx1")

        assert exchange.status == ExchangeStatus.FINISHED
        assert exchange.to_amount == Decimal("1.75")
        assert exchange.transaction_id == "tx1"
        assert exchange.payin_address == "1A1zP1"
        assert exchange.payout_address == "0xabc"
        assert exchange.flow == ExchangeFlow.STANDARD
        assert exchange.type == ExchangeType.DIRECT

    @pytest.mark.asyncio
    async def test_missing_amount_keeps_previous(self, test_db, service, mock_provider):
        test_db.add(stored_exchange("tx1"))
        await test_db.commit()
        mock_provider.get_exchange_status.return_value = ProviderStatus(id="tx1", status=ExchangeStatus.CONFIRMING)

        exchange = await service.update_exchange_status("tx1")

        assert exchange.status == ExchangeStatus.CONFIRMING
        assert exchange.to_amount == Decimal("1.8")

    @pytest.mark.asyncio
    async def test_unknown_transaction_not_found(self, service, mock_provider):
        with pytest.raises(NotFound):
            await service.update_exchange_status("missing")

        mock_provider.get_exchange_status.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_provider_failure_leaves_row_untouched(self, test_db, database, service, mock_provider):
        test_db.add(stored_exchange("tx1"))
        await test_db.commit()
        mock_provider.get_exchange_status.side_effect = ProviderContractViolation("Unknown exchange status")

        with pytest.raises(ProviderContractViolation):
            await service.update_exchange_status("tx1")

        [row] = await all_exchanges(database)
        assert row.status == ExchangeStatus.WAITING
        assert row.to_amount == Decimal("1.8")


class TestQueries:
    """Lookups and listings."""

    @pytest.mark.asyncio
    async def test_list_is_user_scoped_newest_first(self, test_db, service):
        now = datetime.utcnow()
        test_db.add_all([
            stored_exchange("old", user_id="7", created_at=now - timedelta(days=2)),
            stored_exchange("new", user_id="7", created_at=now),
            stored_exchange("other", user_id="8", created_at=now),
            stored_exchange("anonymous", created_at=now),
        ])
        await test_db.commit()

        exchanges = await service.list_exchanges("7")

        assert [e.transaction_id for e in exchanges] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_get_by_id_and_transaction_id(self, test_db, service):
        row = stored_exchange("tx1")
        test_db.add(row)
        await test_db.commit()

        assert (await service.get_exchange_by_id(row.id)).transaction_id == "tx1"
        assert (await service.get_exchange_by_transaction_id("tx1")).id == row.id

        with pytest.raises(NotFound):
            await service.get_exchange_by_id(999)
        with pytest.raises(NotFound):
            await service.get_exchange_by_transaction_id("nope")


class TestEstimate:
    """Estimate pass-through."""

    @pytest.mark.asyncio
    async def test_forwards_normalized_arguments(self, service, mock_provider):
        mock_provider.get_estimated_amount.return_value = ProviderEstimate(
            from_currency="btc", to_currency="eth", from_network="btc", to_network="eth",
            flow="standard", type="direct", from_amount=Decimal("0.1"), to_amount=Decimal("1.8"),
        )

        estimate = await service.get_estimated_amount("BTC", "eth", from_amount=Decimal("0.1"), from_network="BTC")

        assert estimate.to_amount == Decimal("1.8")
        kwargs = mock_provider.get_estimated_amount.await_args.kwargs
        assert kwargs["from_currency"] == "btc"
        assert kwargs["from_network"] == "btc"
        assert kwargs["to_network"] is None

    @pytest.mark.asyncio
    async def test_amount_required(self, service, mock_provider):
        with pytest.raises(ValidationError):
            await service.get_estimated_amount("btc", "eth")

        mock_provider.get_estimated_amount.assert_not_awaited()
