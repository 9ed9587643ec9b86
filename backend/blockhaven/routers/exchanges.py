"""Exchange and catalog router."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ExchangeFlow, ExchangeStatus, ExchangeType, User, get_session
from ..services.auth import get_current_user, get_optional_user, require_admin
from ..services.catalog import CatalogService
from ..services.catalog_sync import CatalogSynchronizer
from ..services.exchange import ExchangeCreateRequest, ExchangeService
from ..services.provider import ProviderClient

router = APIRouter()


# Pydantic schemas
class ExchangeCreate(BaseModel):
    """Schema for creating an exchange."""
    from_currency: str = Field(..., alias="fromCurrency", max_length=20)
    from_network: str = Field(..., alias="fromNetwork", max_length=50)
    to_currency: str = Field(..., alias="toCurrency", max_length=20)
    to_network: str = Field(..., alias="toNetwork", max_length=50)
    address: str = Field(..., max_length=255)
    from_amount: Optional[Decimal] = Field(default=None, alias="fromAmount")
    to_amount: Optional[Decimal] = Field(default=None, alias="toAmount")
    extra_id: Optional[str] = Field(default=None, alias="extraId", max_length=255)
    refund_address: Optional[str] = Field(default=None, alias="refundAddress", max_length=255)
    refund_extra_id: Optional[str] = Field(default=None, alias="refundExtraId", max_length=255)
    contact_email: Optional[str] = Field(default=None, alias="contactEmail", max_length=255)
    flow: str = "standard"
    type: str = "direct"
    rate_id: Optional[str] = Field(default=None, alias="rateId", max_length=255)
    payload: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True


class ExchangeResponse(BaseModel):
    """Schema for a stored exchange."""
    id: int
    transaction_id: str
    from_currency: str
    from_network: str
    to_currency: str
    to_network: str
    from_amount: Optional[float]
    to_amount: Optional[float]
    payin_address: str
    payout_address: str
    payin_extra_id: Optional[str]
    payout_extra_id: Optional[str]
    payout_extra_id_name: Optional[str]
    refund_address: Optional[str]
    refund_extra_id: Optional[str]
    flow: ExchangeFlow
    type: ExchangeType
    rate_id: Optional[str]
    user_id: Optional[str]
    contact_email: Optional[str]
    status: ExchangeStatus
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


def _ok(message: str, data: Any = None) -> Dict[str, Any]:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return body


def _serialize(exchange) -> Dict[str, Any]:
    return ExchangeResponse.model_validate(exchange).model_dump(mode="json")


def client_ip(request: Request) -> Optional[str]:
    """Originating client address, honoring proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return None


def get_provider(request: Request) -> ProviderClient:
    return request.app.state.provider


def get_synchronizer(request: Request) -> CatalogSynchronizer:
    return request.app.state.synchronizer


def get_exchange_service(
    request: Request,
    session: AsyncSession = Depends(get_session),
    provider: ProviderClient = Depends(get_provider),
) -> ExchangeService:
    return ExchangeService(
        session,
        provider,
        require_known_currencies=bool(
            request.app.state.config.get("exchange.require_known_currencies", True)
        ),
    )


# Catalog reads (public)
@router.get("/currencies")
async def get_available_currencies(service: ExchangeService = Depends(get_exchange_service)):
    """Stored currencies merged with currencies known only from pairs."""
    currencies = await service.get_available_currencies()
    return _ok("Available currencies retrieved successfully", currencies)


@router.get("/enhanced-pairs")
async def get_enhanced_pairs(session: AsyncSession = Depends(get_session)):
    """Active pairs with display metadata for both legs."""
    pairs = await CatalogService(session).get_enhanced_pairs()
    return _ok("Enhanced pairs retrieved successfully", pairs)


@router.get("/estimate")
async def get_estimated_amount(
    from_currency: str = Query("", alias="fromCurrency"),
    to_currency: str = Query("", alias="toCurrency"),
    from_amount: Optional[Decimal] = Query(None, alias="fromAmount"),
    to_amount: Optional[Decimal] = Query(None, alias="toAmount"),
    from_network: Optional[str] = Query(None, alias="fromNetwork"),
    to_network: Optional[str] = Query(None, alias="toNetwork"),
    flow: str = "standard",
    type: str = "direct",
    service: ExchangeService = Depends(get_exchange_service),
):
    estimate = await service.get_estimated_amount(
        from_currency=from_currency,
        to_currency=to_currency,
        from_amount=from_amount,
        to_amount=to_amount,
        from_network=from_network,
        to_network=to_network,
        flow=flow,
        type=type,
    )
    return _ok("Estimated amount retrieved successfully", estimate.to_dict())


# Exchanges
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_exchange(
    exchange_data: ExchangeCreate,
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    """Create an exchange at the provider and record it.

    ``persisted`` is false when the provider accepted the exchange but the
    local record could not be written.
    """
    result = await service.create_exchange(
        ExchangeCreateRequest(
            from_currency=exchange_data.from_currency,
            from_network=exchange_data.from_network,
            to_currency=exchange_data.to_currency,
            to_network=exchange_data.to_network,
            address=exchange_data.address,
            flow=exchange_data.flow,
            type=exchange_data.type,
            from_amount=exchange_data.from_amount,
            to_amount=exchange_data.to_amount,
            extra_id=exchange_data.extra_id,
            refund_address=exchange_data.refund_address,
            refund_extra_id=exchange_data.refund_extra_id,
            contact_email=exchange_data.contact_email,
            rate_id=exchange_data.rate_id,
            user_id=str(user.id) if user else None,
            payload=exchange_data.payload,
        ),
        client_ip=client_ip(request),
    )

    data = result.exchange.to_dict()
    data["persisted"] = result.persisted
    return _ok("Exchange transaction created successfully", data)


@router.get("")
async def list_exchanges(
    user: User = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    """List the caller's exchanges, newest first."""
    exchanges = await service.list_exchanges(str(user.id))
    return _ok("Exchanges retrieved successfully", [_serialize(e) for e in exchanges])


@router.get("/transaction/{transaction_id}")
async def get_exchange_by_transaction_id(
    transaction_id: str,
    user: User = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    exchange = await service.get_exchange_by_transaction_id(transaction_id)
    return _ok("Exchange retrieved successfully", _serialize(exchange))


@router.get("/{exchange_id:int}")
async def get_exchange(
    exchange_id: int,
    user: User = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    exchange = await service.get_exchange_by_id(exchange_id)
    return _ok("Exchange retrieved successfully", _serialize(exchange))


@router.put("/{transaction_id}/status")
async def update_exchange_status(
    transaction_id: str,
    user: User = Depends(get_current_user),
    service: ExchangeService = Depends(get_exchange_service),
):
    """Refresh an exchange's status from the provider."""
    exchange = await service.update_exchange_status(transaction_id)
    return _ok("Exchange status updated successfully", _serialize(exchange))


# Catalog jobs (admin)
@router.post("/fetch-currencies")
async def fetch_currencies(
    admin: User = Depends(require_admin),
    synchronizer: CatalogSynchronizer = Depends(get_synchronizer),
):
    report = await synchronizer.sync_currencies()
    return _ok("Currencies fetched and stored successfully", report.to_dict())


@router.post("/fetch-pairs")
async def fetch_pairs(
    from_currency: Optional[str] = Query(None, alias="fromCurrency"),
    to_currency: Optional[str] = Query(None, alias="toCurrency"),
    from_network: Optional[str] = Query(None, alias="fromNetwork"),
    to_network: Optional[str] = Query(None, alias="toNetwork"),
    flow: Optional[str] = None,
    admin: User = Depends(require_admin),
    synchronizer: CatalogSynchronizer = Depends(get_synchronizer),
):
    """Refresh currencies, then the (optionally filtered) pair catalog."""
    reports = await synchronizer.sync_all(
        from_currency=from_currency,
        to_currency=to_currency,
        from_network=from_network,
        to_network=to_network,
        flow=flow,
    )
    data: Dict[str, Optional[Dict[str, Any]]] = {
        catalog: report.to_dict() if report else None for catalog, report in reports.items()
    }
    return _ok("Available pairs fetched and stored successfully", data)
