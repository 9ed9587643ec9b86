# Business Logic Services

from .config import (
    ConfigService,
    config_service,
    ConfigValidationException,
    ConfigValidationError,
)
from .logging_service import (
    SyncLoggingService,
    SyncRunLogEntry,
    configure_logging,
)
from .provider import (
    ProviderClient,
    ProviderCurrency,
    ProviderPair,
    ProviderExchangeRequest,
    ProviderExchangeResult,
    ProviderStatus,
    ProviderEstimate,
)
from .catalog import (
    CatalogService,
    catalog_key,
    synthesize_currency,
)
from .catalog_sync import (
    CatalogSynchronizer,
    SyncReport,
    resolve_pair,
)
from .exchange import (
    ExchangeService,
    ExchangeCreateRequest,
    ExchangeCreationResult,
)

__all__ = [
    # Config
    "ConfigService",
    "config_service",
    "ConfigValidationException",
    "ConfigValidationError",
    # Logging
    "SyncLoggingService",
    "SyncRunLogEntry",
    "configure_logging",
    # Provider
    "ProviderClient",
    "ProviderCurrency",
    "ProviderPair",
    "ProviderExchangeRequest",
    "ProviderExchangeResult",
    "ProviderStatus",
    "ProviderEstimate",
    # Catalog
    "CatalogService",
    "catalog_key",
    "synthesize_currency",
    "CatalogSynchronizer",
    "SyncReport",
    "resolve_pair",
    # Exchanges
    "ExchangeService",
    "ExchangeCreateRequest",
    "ExchangeCreationResult",
]
