"""Exchange orchestrator - creates and tracks provider exchange transactions."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound, PersistenceError, ProviderContractViolation, ValidationError
from ..models import Exchange, ExchangeFlow, ExchangeStatus, ExchangeType
from .catalog import CatalogService
from .provider import (
    ProviderClient,
    ProviderEstimate,
    ProviderExchangeRequest,
    ProviderExchangeResult,
)

logger = logging.getLogger(__name__)

# Numeric(26, 8) leaves 18 integer digits
MAX_AMOUNT = Decimal(10) ** 18

FLOWS = [flow.value for flow in ExchangeFlow]
TYPES = [exchange_type.value for exchange_type in ExchangeType]


@dataclass
class ExchangeCreateRequest:
    """Caller-supplied exchange creation request."""
    from_currency: str
    from_network: str
    to_currency: str
    to_network: str
    address: str
    flow: str = ExchangeFlow.STANDARD.value
    type: str = ExchangeType.DIRECT.value
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    extra_id: Optional[str] = None
    refund_address: Optional[str] = None
    refund_extra_id: Optional[str] = None
    contact_email: Optional[str] = None
    rate_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


@dataclass
class ExchangeCreationResult:
    """Outcome of a creation: the provider result plus local persistence state.

    ``exchange`` is authoritative whether or not the local row was written.
    """
    exchange: ProviderExchangeResult
    persisted: bool
    record: Optional[Exchange] = None
    persistence_error: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return not self.persisted


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def _validate_amount(value: Optional[Decimal], field: str, errors: List[Dict[str, str]]) -> None:
    if value is None:
        return
    if not value.is_finite() or value <= 0:
        errors.append({"field": field, "message": "must be a positive number"})
    elif value >= MAX_AMOUNT:
        errors.append({"field": field, "message": "exceeds the maximum supported amount"})


def validate_create_request(request: ExchangeCreateRequest) -> None:
    """Reject a malformed creation request before any provider call.

    Raises:
        ValidationError: with one {field, message} entry per problem
    """
    errors: List[Dict[str, str]] = []

    for field in ("from_currency", "from_network", "to_currency", "to_network", "address"):
        if _blank(getattr(request, field)):
            errors.append({"field": field, "message": "is required"})

    if request.flow not in FLOWS:
        errors.append({"field": "flow", "message": f"must be one of {FLOWS}"})
    if request.type not in TYPES:
        errors.append({"field": "type", "message": f"must be one of {TYPES}"})

    _validate_amount(request.from_amount, "from_amount", errors)
    _validate_amount(request.to_amount, "to_amount", errors)

    # The amount belongs on the leg the direction implies
    if request.type == ExchangeType.DIRECT.value and request.to_amount is not None:
        errors.append({"field": "to_amount", "message": "only valid for reverse exchanges"})
    if request.type == ExchangeType.REVERSE.value and request.from_amount is not None:
        errors.append({"field": "from_amount", "message": "only valid for direct exchanges"})

    if errors:
        raise ValidationError("Invalid exchange request", details=errors)


class ExchangeService:
    """Composition point for exchange creation, status tracking and catalog reads."""

    def __init__(
        self,
        session: AsyncSession,
        provider: ProviderClient,
        require_known_currencies: bool = True,
    ):
        self.session = session
        self.provider = provider
        self.require_known_currencies = require_known_currencies
        self.catalog = CatalogService(session)

    async def _check_known_currencies(self, request: ExchangeCreateRequest) -> None:
        if not self.require_known_currencies or await self.catalog.is_empty():
            return

        errors = []
        legs = (
            ("from_currency", request.from_currency, request.from_network),
            ("to_currency", request.to_currency, request.to_network),
        )
        for field, ticker, network in legs:
            if not await self.catalog.is_known_currency(ticker, network):
                errors.append({"field": field, "message": f"unsupported currency {ticker}/{network}"})

        if errors:
            raise ValidationError("Unsupported currency", details=errors)

    async def create_exchange(
        self,
        request: ExchangeCreateRequest,
        client_ip: Optional[str] = None,
    ) -> ExchangeCreationResult:
        """Create an exchange at the provider, then record it locally.

        Nothing is written unless the provider call succeeds. A failed local
        write after that is logged and reported through the result, never
        raised, since the provider transaction already exists.

        Raises:
            ValidationError: request rejected before any provider call
            ProviderError, ProviderUnavailable, ProviderContractViolation:
                creation failed at the provider; nothing was persisted
        """
        validate_create_request(request)
        await self._check_known_currencies(request)

        provider_request = ProviderExchangeRequest(
            from_currency=request.from_currency.strip().lower(),
            from_network=request.from_network.strip().lower(),
            to_currency=request.to_currency.strip().lower(),
            to_network=request.to_network.strip().lower(),
            address=request.address.strip(),
            flow=request.flow,
            type=request.type,
            from_amount=request.from_amount,
            to_amount=request.to_amount,
            extra_id=request.extra_id,
            refund_address=request.refund_address,
            refund_extra_id=request.refund_extra_id,
            contact_email=request.contact_email,
            rate_id=request.rate_id,
            user_id=request.user_id,
            payload=request.payload,
        )

        result = await self.provider.create_exchange(provider_request, client_ip=client_ip)

        if _blank(result.id) or _blank(result.payin_address):
            raise ProviderContractViolation("Provider result is missing the transaction id or pay-in address")

        record = Exchange(
            transaction_id=result.id,
            from_currency=result.from_currency or provider_request.from_currency,
            from_network=result.from_network or provider_request.from_network,
            to_currency=result.to_currency or provider_request.to_currency,
            to_network=result.to_network or provider_request.to_network,
            from_amount=result.from_amount if result.from_amount is not None else request.from_amount,
            to_amount=result.to_amount if result.to_amount is not None else request.to_amount,
            payin_address=result.payin_address,
            payout_address=result.payout_address or provider_request.address,
            payin_extra_id=result.payin_extra_id,
            payout_extra_id=result.payout_extra_id or request.extra_id,
            payout_extra_id_name=result.payout_extra_id_name,
            refund_address=result.refund_address or request.refund_address,
            refund_extra_id=result.refund_extra_id or request.refund_extra_id,
            flow=ExchangeFlow(request.flow),
            type=ExchangeType(request.type),
            rate_id=result.rate_id or (request.rate_id if request.flow == ExchangeFlow.FIXED_RATE.value else None),
            user_id=request.user_id,
            contact_email=request.contact_email,
            payload=request.payload,
            status=ExchangeStatus.WAITING,
        )

        try:
            self.session.add(record)
            await self.session.commit()
            await self.session.refresh(record)
        except SQLAlchemyError as e:
            await self.session.rollback()
            message = f"{e.__class__.__name__}: {e}"
            logger.error(f"Exchange {result.id} created at provider but not saved locally: {message}")
            return ExchangeCreationResult(exchange=result, persisted=False, persistence_error=message)

        logger.info(f"Exchange {result.id} saved locally (id={record.id})")
        return ExchangeCreationResult(exchange=result, persisted=True, record=record)

    async def get_exchange_by_id(self, exchange_id: int) -> Exchange:
        try:
            exchange = await self.session.get(Exchange, exchange_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get exchange: {e.__class__.__name__}")
        if exchange is None:
            raise NotFound(f"Exchange {exchange_id} not found", details="Exchange not found")
        return exchange

    async def get_exchange_by_transaction_id(self, transaction_id: str) -> Exchange:
        try:
            result = await self.session.execute(
                select(Exchange).where(Exchange.transaction_id == transaction_id)
            )
            exchange = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get exchange: {e.__class__.__name__}")
        if exchange is None:
            raise NotFound(f"Exchange {transaction_id} not found", details="Exchange not found")
        return exchange

    async def list_exchanges(self, user_id: Optional[str]) -> List[Exchange]:
        """Exchanges owned by ``user_id``, newest first."""
        query = (
            select(Exchange)
            .where(Exchange.user_id == user_id)
            .order_by(Exchange.created_at.desc(), Exchange.id.desc())
        )
        try:
            result = await self.session.execute(query)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list exchanges: {e.__class__.__name__}")
        return list(result.scalars().all())

    async def update_exchange_status(self, transaction_id: str) -> Exchange:
        """Refresh status and to_amount from the provider.

        Identity fields and addresses are never rewritten. A provider failure
        leaves the stored row as it was.

        Raises:
            NotFound: no local row for ``transaction_id``
            ProviderError, ProviderUnavailable, ProviderContractViolation
            PersistenceError: the refreshed values could not be saved
        """
        exchange = await self.get_exchange_by_transaction_id(transaction_id)

        provider_status = await self.provider.get_exchange_status(transaction_id)

        previous = exchange.status
        exchange.status = provider_status.status
        if provider_status.to_amount is not None:
            exchange.to_amount = provider_status.to_amount

        try:
            await self.session.commit()
            await self.session.refresh(exchange)
        except SQLAlchemyError as e:
            await self.session.rollback()
            raise PersistenceError(f"Failed to update exchange {transaction_id}: {e.__class__.__name__}")

        if previous != exchange.status:
            logger.info(f"Exchange {transaction_id} status {previous.value} -> {exchange.status.value}")
        return exchange

    async def get_estimated_amount(
        self,
        from_currency: str,
        to_currency: str,
        from_amount: Optional[Decimal] = None,
        to_amount: Optional[Decimal] = None,
        from_network: Optional[str] = None,
        to_network: Optional[str] = None,
        flow: str = ExchangeFlow.STANDARD.value,
        type: str = ExchangeType.DIRECT.value,
    ) -> ProviderEstimate:
        errors: List[Dict[str, str]] = []
        if _blank(from_currency):
            errors.append({"field": "from_currency", "message": "is required"})
        if _blank(to_currency):
            errors.append({"field": "to_currency", "message": "is required"})
        if from_amount is None and to_amount is None:
            errors.append({"field": "from_amount", "message": "from_amount or to_amount is required"})
        if flow not in FLOWS:
            errors.append({"field": "flow", "message": f"must be one of {FLOWS}"})
        if type not in TYPES:
            errors.append({"field": "type", "message": f"must be one of {TYPES}"})
        _validate_amount(from_amount, "from_amount", errors)
        _validate_amount(to_amount, "to_amount", errors)
        if errors:
            raise ValidationError("Invalid estimate request", details=errors)

        return await self.provider.get_estimated_amount(
            from_currency=from_currency.strip().lower(),
            to_currency=to_currency.strip().lower(),
            from_amount=from_amount,
            to_amount=to_amount,
            from_network=from_network.strip().lower() if from_network else None,
            to_network=to_network.strip().lower() if to_network else None,
            flow=flow,
            type=type,
        )

    async def get_available_currencies(self) -> List[Dict[str, Any]]:
        return await self.catalog.list_currencies()
