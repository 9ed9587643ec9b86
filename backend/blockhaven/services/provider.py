"""Client for the exchange-aggregator provider (ChangeNOW v2 API)."""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import aiohttp

from ..errors import ProviderContractViolation, ProviderError, ProviderUnavailable
from ..models import ExchangeStatus

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.changenow.io/v2"

API_KEY_HEADER = "x-changenow-api-key"
SECONDARY_API_KEY_HEADER = "x-api-key"


@dataclass
class ProviderCurrency:
    """Currency entry from the provider catalog.

    ``name`` is None when the provider sent no display name.
    """
    ticker: str
    network: str
    name: Optional[str]
    image: Optional[str] = None
    has_external_id: bool = False
    is_extra_id_supported: bool = False
    is_fiat: bool = False
    featured: bool = False
    is_stable: bool = False
    supports_fixed_rate: bool = False
    buy: bool = True
    sell: bool = True
    legacy_ticker: Optional[str] = None
    token_contract: Optional[str] = None


@dataclass
class ProviderPair:
    """A pair entry after its identity fields have been resolved."""
    from_ticker: str
    from_network: str
    to_ticker: str
    to_network: str
    standard: bool = False
    fixed_rate: bool = False


@dataclass
class ProviderExchangeRequest:
    """Normalized create-exchange request.

    Optional fields left as None are omitted from the request body.
    """
    from_currency: str
    from_network: str
    to_currency: str
    to_network: str
    address: str
    flow: str = "standard"
    type: str = "direct"
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    extra_id: Optional[str] = None
    refund_address: Optional[str] = None
    refund_extra_id: Optional[str] = None
    contact_email: Optional[str] = None
    rate_id: Optional[str] = None
    user_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "fromCurrency": self.from_currency,
            "fromNetwork": self.from_network,
            "toCurrency": self.to_currency,
            "toNetwork": self.to_network,
            "address": self.address,
            "flow": self.flow,
            "type": self.type,
        }
        optional = {
            "fromAmount": str(self.from_amount) if self.from_amount is not None else None,
            "toAmount": str(self.to_amount) if self.to_amount is not None else None,
            "extraId": self.extra_id,
            "refundAddress": self.refund_address,
            "refundExtraId": self.refund_extra_id,
            "contactEmail": self.contact_email,
            "rateId": self.rate_id if self.flow == "fixed-rate" else None,
            "userId": self.user_id,
            "payload": self.payload,
        }
        body.update({key: value for key, value in optional.items() if value not in (None, "")})
        return body


@dataclass
class ProviderExchangeResult:
    """Exchange created at the provider. Authoritative once returned."""
    id: str
    payin_address: str
    payout_address: str
    from_currency: str
    from_network: str
    to_currency: str
    to_network: str
    flow: str
    type: str
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    payin_extra_id: Optional[str] = None
    payout_extra_id: Optional[str] = None
    payout_extra_id_name: Optional[str] = None
    refund_address: Optional[str] = None
    refund_extra_id: Optional[str] = None
    rate_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fromAmount": float(self.from_amount) if self.from_amount is not None else None,
            "toAmount": float(self.to_amount) if self.to_amount is not None else None,
            "flow": self.flow,
            "type": self.type,
            "payinAddress": self.payin_address,
            "payoutAddress": self.payout_address,
            "payinExtraId": self.payin_extra_id,
            "payoutExtraId": self.payout_extra_id,
            "fromCurrency": self.from_currency,
            "toCurrency": self.to_currency,
            "fromNetwork": self.from_network,
            "toNetwork": self.to_network,
            "refundAddress": self.refund_address,
            "refundExtraId": self.refund_extra_id,
            "payoutExtraIdName": self.payout_extra_id_name,
            "rateId": self.rate_id,
        }


@dataclass
class ProviderStatus:
    """Status snapshot of a provider transaction."""
    id: str
    status: ExchangeStatus
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    payin_hash: Optional[str] = None
    payout_hash: Optional[str] = None
    refund_hash: Optional[str] = None
    valid_until: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass
class ProviderEstimate:
    """Estimated exchange amount."""
    from_currency: str
    to_currency: str
    from_network: Optional[str]
    to_network: Optional[str]
    flow: str
    type: str
    from_amount: Optional[Decimal] = None
    to_amount: Optional[Decimal] = None
    rate_id: Optional[str] = None
    valid_until: Optional[str] = None
    warning_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("from_amount", "to_amount"):
            if data[key] is not None:
                data[key] = float(data[key])
        return data


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


def _required_str(data: Dict[str, Any], key: str, context: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ProviderContractViolation(f"Invalid {context} response from provider - missing {key}")
    return str(value)


def _to_decimal(value: Any, key: str) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ProviderContractViolation(f"Invalid amount for {key}: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ProviderContractViolation(f"Invalid amount for {key}: {value!r}")


def _display_name(entry: Dict[str, Any]) -> Optional[str]:
    name = entry.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    return name.strip()[:100]


def _flag(entry: Dict[str, Any], key: str, default: bool) -> bool:
    """Capability flag; only real booleans and "true"/"false" strings count."""
    value = entry.get(key)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return default


def parse_currency(entry: Any) -> Optional[ProviderCurrency]:
    """Parse one catalog entry. Returns None for entries without a ticker."""
    if not isinstance(entry, dict):
        return None
    ticker = entry.get("ticker")
    if not isinstance(ticker, str) or not ticker.strip():
        return None

    ticker = ticker.strip().lower()
    network = str(entry.get("network") or "").strip().lower()
    return ProviderCurrency(
        ticker=ticker,
        network=network,
        name=_display_name(entry),
        image=_optional_str(entry, "image"),
        has_external_id=_flag(entry, "hasExternalId", False),
        is_extra_id_supported=_flag(entry, "isExtraIdSupported", False),
        is_fiat=_flag(entry, "isFiat", False),
        featured=_flag(entry, "featured", False),
        is_stable=_flag(entry, "isStable", False),
        supports_fixed_rate=_flag(entry, "supportsFixedRate", False),
        buy=_flag(entry, "buy", True),
        sell=_flag(entry, "sell", True),
        legacy_ticker=_optional_str(entry, "legacyTicker"),
        token_contract=_optional_str(entry, "tokenContract"),
    )


def parse_exchange_result(data: Any) -> ProviderExchangeResult:
    """Validate a create-exchange response body."""
    if not isinstance(data, dict) or not data:
        raise ProviderContractViolation("Empty response from provider")

    return ProviderExchangeResult(
        id=_required_str(data, "id", "create-exchange"),
        payin_address=_required_str(data, "payinAddress", "create-exchange"),
        payout_address=str(data.get("payoutAddress") or ""),
        from_currency=str(data.get("fromCurrency") or ""),
        from_network=str(data.get("fromNetwork") or ""),
        to_currency=str(data.get("toCurrency") or ""),
        to_network=str(data.get("toNetwork") or ""),
        flow=str(data.get("flow") or "standard"),
        type=str(data.get("type") or "direct"),
        from_amount=_to_decimal(data.get("fromAmount"), "fromAmount"),
        to_amount=_to_decimal(data.get("toAmount"), "toAmount"),
        payin_extra_id=_optional_str(data, "payinExtraId"),
        payout_extra_id=_optional_str(data, "payoutExtraId"),
        payout_extra_id_name=_optional_str(data, "payoutExtraIdName"),
        refund_address=_optional_str(data, "refundAddress"),
        refund_extra_id=_optional_str(data, "refundExtraId"),
        rate_id=_optional_str(data, "rateId"),
    )


def parse_status(data: Any) -> ProviderStatus:
    """Validate a status response body."""
    if not isinstance(data, dict) or not data:
        raise ProviderContractViolation("Empty status response from provider")

    raw_status = _required_str(data, "status", "status")
    try:
        status = ExchangeStatus(raw_status.strip().lower())
    except ValueError:
        raise ProviderContractViolation(f"Unknown exchange status from provider: {raw_status!r}")

    return ProviderStatus(
        id=_required_str(data, "id", "status"),
        status=status,
        from_amount=_to_decimal(data.get("amountFrom", data.get("fromAmount")), "fromAmount"),
        to_amount=_to_decimal(data.get("amountTo", data.get("toAmount")), "toAmount"),
        payin_hash=_optional_str(data, "payinHash"),
        payout_hash=_optional_str(data, "payoutHash"),
        refund_hash=_optional_str(data, "refundHash"),
        valid_until=_optional_str(data, "validUntil"),
        raw=data,
    )


class ProviderClient:
    """Authenticated calls against the provider.

    Holds no state besides a pooled HTTP session. Read-only calls retry
    network failures; exchange creation is never retried.
    """

    def __init__(
        self,
        api_key: str = "",
        secondary_api_key: str = "",
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = 30.0,
        retry_count: int = 3,
        retry_delay: float = 1.0,
    ):
        """Initialize the provider client.

        Args:
            api_key: Primary provider key, sent on every call
            secondary_api_key: Extra key for privileged endpoints
            base_url: Provider API root
            timeout_seconds: Total timeout per HTTP call
            retry_count: Attempts for read-only calls
            retry_delay: Base delay between read-only attempts
        """
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key or ""
        self._secondary_api_key = secondary_api_key or ""
        self.timeout_seconds = timeout_seconds
        self._retry_count = max(1, retry_count)
        self._retry_delay = retry_delay
        self._session: Optional[aiohttp.ClientSession] = None

        if not self._api_key:
            logger.warning("Provider API key is not configured; provider calls will be rejected")
        if not self._secondary_api_key:
            logger.warning("Provider secondary API key is not configured; privileged calls may be rejected")

    @classmethod
    def from_config(cls, config) -> "ProviderClient":
        return cls(
            api_key=config.get("provider.api_key", ""),
            secondary_api_key=config.get("provider.secondary_api_key", ""),
            base_url=config.get("provider.base_url", DEFAULT_BASE_URL),
            timeout_seconds=float(config.get("provider.timeout_seconds", 30.0)),
            retry_count=int(config.get("provider.retry_count", 3)),
            retry_delay=float(config.get("provider.retry_delay", 1.0)),
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
            )
        return self._session

    async def close(self) -> None:
        """Close the pooled HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self, privileged: bool, client_ip: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers[API_KEY_HEADER] = self._api_key
        if privileged and self._secondary_api_key:
            headers[SECONDARY_API_KEY_HEADER] = self._secondary_api_key
        if client_ip:
            headers["x-forwarded-for"] = client_ip
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        privileged: bool = False,
        client_ip: Optional[str] = None,
    ) -> Any:
        """Issue one HTTP call and map every failure onto the error taxonomy."""
        url = f"{self.base_url}{path}"
        headers = self._headers(privileged, client_ip)
        logger.debug(f"Provider {method} {path} (headers: {sorted(headers)})")

        try:
            async with self._get_session().request(
                method, url, params=params, json=json_body, headers=headers
            ) as resp:
                if resp.status >= 400:
                    raise await self._error_from_response(resp)
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise ProviderContractViolation(f"Provider returned a non-JSON body for {path}: {e}")
        except asyncio.TimeoutError:
            raise ProviderUnavailable(
                f"Provider request {method} {path} timed out after {self.timeout_seconds}s",
                timed_out=True,
            )
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(f"Provider request {method} {path} failed: {e.__class__.__name__}")

    @staticmethod
    async def _error_from_response(resp: aiohttp.ClientResponse) -> ProviderError:
        code = None
        message = None
        try:
            data = await resp.json(content_type=None)
        except (ValueError, aiohttp.ClientError):
            data = None

        if isinstance(data, dict):
            code = data.get("error")
            message = data.get("message") or code

        if not message:
            message = f"Provider returned HTTP {resp.status}"

        logger.error(f"Provider error {resp.status}: {code or '-'} {message}")
        return ProviderError(str(message), provider_status=resp.status, provider_code=code)

    async def _request_with_retry(self, method: str, path: str, **kwargs) -> Any:
        """Retry network failures with linear backoff. Provider errors are final."""
        last_exception: Optional[ProviderUnavailable] = None

        for attempt in range(self._retry_count):
            try:
                return await self._request(method, path, **kwargs)
            except ProviderUnavailable as e:
                last_exception = e
                if attempt + 1 < self._retry_count:
                    logger.warning(f"{e.message}, retrying... (attempt {attempt + 1})")
                    await asyncio.sleep(self._retry_delay * (attempt + 1))

        raise last_exception

    async def create_exchange(
        self,
        request: ProviderExchangeRequest,
        client_ip: Optional[str] = None,
    ) -> ProviderExchangeResult:
        """Create an exchange transaction. Never retried.

        Raises:
            ProviderError: provider rejected the request
            ProviderUnavailable: network failure or timeout
            ProviderContractViolation: success status with a malformed body
        """
        body = request.to_body()
        logger.info(
            f"Creating provider exchange {body['fromCurrency']}/{body['fromNetwork']} -> "
            f"{body['toCurrency']}/{body['toNetwork']} ({body['flow']}, {body['type']})"
        )
        data = await self._request(
            "POST", "/exchange", json_body=body, privileged=True, client_ip=client_ip
        )
        result = parse_exchange_result(data)
        logger.info(f"Provider exchange created: {result.id}")
        return result

    async def get_exchange_status(self, transaction_id: str) -> ProviderStatus:
        """Fetch the current status of a provider transaction."""
        data = await self._request_with_retry(
            "GET", "/exchange/by-id", params={"id": transaction_id}, privileged=True
        )
        return parse_status(data)

    async def list_currencies(
        self,
        active: Optional[bool] = None,
        flow: Optional[str] = None,
        buy: Optional[bool] = None,
        sell: Optional[bool] = None,
    ) -> List[ProviderCurrency]:
        """Fetch the full currency catalog.

        Entries without a ticker are dropped; duplicates are kept for the
        synchronizer to coalesce.
        """
        params: Dict[str, str] = {}
        if active is not None:
            params["active"] = "true" if active else "false"
        if flow:
            params["flow"] = flow
        if buy is not None:
            params["buy"] = "true" if buy else "false"
        if sell is not None:
            params["sell"] = "true" if sell else "false"

        data = await self._request_with_retry("GET", "/exchange/currencies", params=params or None)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProviderContractViolation("Currency list response is not a list")

        currencies = []
        dropped = 0
        for entry in data:
            currency = parse_currency(entry)
            if currency is None:
                dropped += 1
                continue
            currencies.append(currency)

        if dropped:
            logger.warning(f"Dropped {dropped} currency entries without a ticker")
        logger.info(f"Fetched {len(currencies)} currencies from provider")
        return currencies

    async def list_pairs(
        self,
        from_currency: Optional[str] = None,
        to_currency: Optional[str] = None,
        from_network: Optional[str] = None,
        to_network: Optional[str] = None,
        flow: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch the pair catalog as raw entries.

        Field naming differs between provider versions, so identity
        resolution happens in the synchronizer.
        """
        filters = {
            "fromCurrency": from_currency,
            "toCurrency": to_currency,
            "fromNetwork": from_network,
            "toNetwork": to_network,
            "flow": flow,
        }
        params = {key: value for key, value in filters.items() if value}

        data = await self._request_with_retry(
            "GET", "/exchange/available-pairs", params=params or None, privileged=True
        )
        if data is None:
            return []
        if not isinstance(data, list):
            raise ProviderContractViolation("Pair list response is not a list")

        logger.info(f"Fetched {len(data)} pairs from provider")
        return data

    async def get_estimated_amount(
        self,
        from_currency: str,
        to_currency: str,
        from_amount: Optional[Decimal] = None,
        to_amount: Optional[Decimal] = None,
        from_network: Optional[str] = None,
        to_network: Optional[str] = None,
        flow: str = "standard",
        type: str = "direct",
    ) -> ProviderEstimate:
        """Estimate the amount for a prospective exchange."""
        params: Dict[str, str] = {
            "fromCurrency": from_currency,
            "toCurrency": to_currency,
            "flow": flow,
            "type": type,
        }
        if from_amount is not None:
            params["fromAmount"] = str(from_amount)
        if to_amount is not None:
            params["toAmount"] = str(to_amount)
        if from_network:
            params["fromNetwork"] = from_network
        if to_network:
            params["toNetwork"] = to_network
        if flow == "fixed-rate":
            params["useRateId"] = "true"

        data = await self._request_with_retry("GET", "/exchange/estimated-amount", params=params)
        if not isinstance(data, dict):
            raise ProviderContractViolation("Estimated amount response is not an object")

        return ProviderEstimate(
            from_currency=str(data.get("fromCurrency") or from_currency),
            to_currency=str(data.get("toCurrency") or to_currency),
            from_network=_optional_str(data, "fromNetwork") or from_network,
            to_network=_optional_str(data, "toNetwork") or to_network,
            flow=str(data.get("flow") or flow),
            type=str(data.get("type") or type),
            from_amount=_to_decimal(data.get("fromAmount"), "fromAmount"),
            to_amount=_to_decimal(data.get("toAmount"), "toAmount"),
            rate_id=_optional_str(data, "rateId"),
            valid_until=_optional_str(data, "validUntil"),
            warning_message=_optional_str(data, "warningMessage"),
        )
