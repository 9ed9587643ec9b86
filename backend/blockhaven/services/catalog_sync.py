"""Catalog synchronizer - reconciles local currencies and pairs with the provider.

Runs are operator-triggered and safe to repeat at any time: every insert or
update decision is keyed off the current database state, so re-running after
a partial failure simply picks up where the committed batches left off.

Design constraints:
- Provider data may contain duplicate identities; they are coalesced
  (last seen wins) before anything is written.
- Writes are applied in batches, each batch in its own transaction.
- Batches run sequentially against one shared in-memory index, so an entry
  staged in batch N is visible to the duplicate check in batch N+1.
- A pair's flow flags are only ever upgraded, never cleared, by a sync.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, bindparam, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import BlockhavenError, PersistenceError, SyncInProgress
from ..models import Currency, Database, ExchangePair
from .catalog import catalog_key
from .logging_service import SyncLoggingService, SyncRunLogEntry
from .provider import ProviderClient, ProviderCurrency, ProviderPair

logger = logging.getLogger(__name__)

CURRENCIES = "currencies"
PAIRS = "pairs"

PairKey = Tuple[str, str, str, str]

# Currency columns the synchronizer owns
CURRENCY_FIELDS = (
    "name", "image_url", "has_external_id", "is_extra_id_supported", "is_fiat",
    "featured", "is_stable", "support_fixed_rate", "buy_enabled", "sell_enabled",
    "legacy_ticker", "token_contract", "is_active",
)

# Source field names seen across provider versions, in priority order
FROM_TICKER_FIELDS = ("fromCurrency", "from_currency", "from")
FROM_NETWORK_FIELDS = ("fromNetwork", "from_network", "network")
TO_TICKER_FIELDS = ("toCurrency", "to_currency", "to")
TO_NETWORK_FIELDS = ("toNetwork", "to_network", "network")

STANDARD_FLOW_NAMES = {"standard"}
FIXED_RATE_FLOW_NAMES = {"fixed-rate", "fixed_rate", "fixedrate", "fixed"}


@dataclass
class SyncReport:
    """Operator-visible outcome of one catalog run."""
    catalog: str
    fetched: int = 0
    duplicates: int = 0
    skipped: int = 0
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    batches: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def pair_key(from_ticker: str, from_network: str, to_ticker: str, to_network: str) -> PairKey:
    return catalog_key(from_ticker, from_network) + catalog_key(to_ticker, to_network)


def dedupe_currencies(currencies: List[ProviderCurrency]) -> Dict[Tuple[str, str], ProviderCurrency]:
    """Coalesce entries sharing a (ticker, network) identity; last seen wins."""
    deduped: Dict[Tuple[str, str], ProviderCurrency] = {}
    for currency in currencies:
        key = catalog_key(currency.ticker, currency.network)
        if key in deduped:
            # Keep insertion order of the first occurrence, values of the last
            del deduped[key]
        deduped[key] = currency
    return deduped


def currency_values(currency: ProviderCurrency) -> Dict[str, Any]:
    """Column values for a new Currency row."""
    ticker, network = catalog_key(currency.ticker, currency.network)
    return {
        "ticker": ticker,
        "network": network,
        "name": currency.name or ticker.upper(),
        "image_url": currency.image,
        "has_external_id": currency.has_external_id,
        "is_extra_id_supported": currency.is_extra_id_supported,
        "is_fiat": currency.is_fiat,
        "featured": currency.featured,
        "is_stable": currency.is_stable,
        "support_fixed_rate": currency.supports_fixed_rate,
        "buy_enabled": currency.buy,
        "sell_enabled": currency.sell,
        "legacy_ticker": currency.legacy_ticker,
        "token_contract": currency.token_contract,
        "is_active": True,
    }


def merge_currency(existing: Dict[str, Any], currency: ProviderCurrency) -> Optional[Dict[str, Any]]:
    """Values to write for an existing row, or None when nothing changed.

    Optional references the provider omits (icon, legacy ticker, contract)
    never clear a locally known value, and a missing display name never
    replaces a stored one.
    """
    incoming = currency_values(currency)
    merged = {field: existing[field] for field in CURRENCY_FIELDS}

    for field in CURRENCY_FIELDS:
        value = incoming[field]
        if value is None and field in ("image_url", "legacy_ticker", "token_contract"):
            continue
        if field == "name" and not currency.name:
            continue
        merged[field] = value

    if all(merged[field] == existing[field] for field in CURRENCY_FIELDS):
        return None
    return merged


def _first_value(entry: Dict[str, Any], fields: Tuple[str, ...], nested_key: str) -> Optional[str]:
    for field in fields:
        value = entry.get(field)
        if isinstance(value, dict):
            value = value.get(nested_key) or (value.get("currency") if nested_key == "ticker" else None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _flow_names(value: Any) -> set:
    if isinstance(value, str):
        return {value}
    if isinstance(value, dict):
        return {name for name, enabled in value.items() if enabled}
    if isinstance(value, (list, tuple, set)):
        return {name for name in value if isinstance(name, str)}
    return set()


def resolve_pair(entry: Any) -> Optional[ProviderPair]:
    """Resolve a raw provider pair entry into its identity and flows.

    Returns None when either ticker cannot be resolved.
    """
    if not isinstance(entry, dict):
        return None

    from_ticker = _first_value(entry, FROM_TICKER_FIELDS, "ticker")
    to_ticker = _first_value(entry, TO_TICKER_FIELDS, "ticker")
    if not from_ticker or not to_ticker:
        return None

    # "from"/"to" may be nested objects carrying their own network
    from_network = _first_value(entry, ("from",), "network") if isinstance(entry.get("from"), dict) else None
    to_network = _first_value(entry, ("to",), "network") if isinstance(entry.get("to"), dict) else None
    from_network = from_network or _first_value(entry, FROM_NETWORK_FIELDS, "network") or ""
    to_network = to_network or _first_value(entry, TO_NETWORK_FIELDS, "network") or ""

    names = _flow_names(entry.get("flows")) | _flow_names(entry.get("flow") or entry.get("flow_type"))
    names = {name.strip().lower() for name in names}

    return ProviderPair(
        from_ticker=from_ticker.lower(),
        from_network=from_network.lower(),
        to_ticker=to_ticker.lower(),
        to_network=to_network.lower(),
        standard=bool(names & STANDARD_FLOW_NAMES),
        fixed_rate=bool(names & FIXED_RATE_FLOW_NAMES),
    )


def _chunks(items: List[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class CatalogSynchronizer:
    """Makes the local currency and pair stores reflect the provider catalog."""

    def __init__(
        self,
        database: Database,
        provider: ProviderClient,
        currency_batch_size: int = 500,
        pair_batch_size: int = 1000,
        run_logger: Optional[SyncLoggingService] = None,
    ):
        """Initialize the synchronizer.

        Args:
            database: Storage handle; each batch acquires its own session
            provider: Provider client used to fetch the catalogs
            currency_batch_size: Rows per currency write batch
            pair_batch_size: Provider entries per pair batch
            run_logger: Optional sink for operator run records
        """
        self.database = database
        self.provider = provider
        self.currency_batch_size = max(1, currency_batch_size)
        self.pair_batch_size = max(1, pair_batch_size)
        self.run_logger = run_logger
        self._locks = {CURRENCIES: asyncio.Lock(), PAIRS: asyncio.Lock()}

    @classmethod
    def from_config(cls, config, database: Database, provider: ProviderClient) -> "CatalogSynchronizer":
        log_dir = config.get("logging.directory")
        return cls(
            database,
            provider,
            currency_batch_size=int(config.get("sync.currency_batch_size", 500)),
            pair_batch_size=int(config.get("sync.pair_batch_size", 1000)),
            run_logger=SyncLoggingService(log_dir),
        )

    def is_running(self, catalog: str) -> bool:
        return self._locks[catalog].locked()

    @asynccontextmanager
    async def _single_flight(self, catalog: str):
        """Reject a second concurrent run of the same catalog."""
        lock = self._locks[catalog]
        if lock.locked():
            raise SyncInProgress(f"A {catalog} sync is already running")
        async with lock:
            yield

    @asynccontextmanager
    async def _tracked_run(self, report: SyncReport):
        """Log start/finish and append the run record, whatever the outcome."""
        started_at = datetime.utcnow()
        logger.info(f"Starting {report.catalog} sync")
        status, error = "success", None
        try:
            yield
        except BlockhavenError as e:
            status, error = "failed", e.message
            logger.error(f"{report.catalog.capitalize()} sync failed: {e.message}")
            raise
        except Exception as e:
            status, error = "failed", f"{e.__class__.__name__}: {e}"
            logger.exception(f"{report.catalog.capitalize()} sync failed unexpectedly")
            raise
        finally:
            if status == "success":
                logger.info(
                    f"{report.catalog.capitalize()} sync complete: fetched={report.fetched}, "
                    f"duplicates={report.duplicates}, skipped={report.skipped}, "
                    f"inserted={report.inserted}, updated={report.updated}, "
                    f"unchanged={report.unchanged}, batches={report.batches}"
                )
            if self.run_logger is not None:
                self.run_logger.log_run(SyncRunLogEntry(
                    started_at=started_at,
                    finished_at=datetime.utcnow(),
                    catalog=report.catalog,
                    fetched=report.fetched,
                    duplicates=report.duplicates,
                    skipped=report.skipped,
                    inserted=report.inserted,
                    updated=report.updated,
                    unchanged=report.unchanged,
                    batches=report.batches,
                    status=status,
                    error=error,
                ))
                self.run_logger.log_activity(
                    f"{report.catalog} sync {status}: inserted={report.inserted}, updated={report.updated}"
                    + (f", error={error}" if error else ""),
                    level="INFO" if status == "success" else "ERROR",
                )

    # ------------------------------------------------------------------
    # Currencies
    # ------------------------------------------------------------------

    async def sync_currencies(self) -> SyncReport:
        """Fetch, dedupe, diff and upsert the currency catalog.

        Raises:
            SyncInProgress: another currency sync is running
            ProviderError, ProviderUnavailable, ProviderContractViolation:
                the catalog could not be fetched
            PersistenceError: a write batch failed; earlier batches stay committed
        """
        async with self._single_flight(CURRENCIES):
            report = SyncReport(catalog=CURRENCIES)
            async with self._tracked_run(report):
                currencies = await self.provider.list_currencies()
                report.fetched = len(currencies)

                deduped = dedupe_currencies(currencies)
                report.duplicates = report.fetched - len(deduped)
                if report.duplicates:
                    logger.warning(f"Provider returned {report.duplicates} duplicate currency entries; last seen kept")

                existing = await self._load_currency_index()
                logger.info(f"Found {len(existing)} existing currencies in database")

                inserts: List[Dict[str, Any]] = []
                updates: List[Dict[str, Any]] = []
                for key, currency in deduped.items():
                    row = existing.get(key)
                    if row is None:
                        inserts.append(currency_values(currency))
                        continue
                    merged = merge_currency(row, currency)
                    if merged is None:
                        report.unchanged += 1
                    else:
                        updates.append({"id": row["id"], **merged})

                report.processed = len(deduped)
                await self._write_currency_batches(inserts, updates, report)
            return report

    async def _load_currency_index(self) -> Dict[Tuple[str, str], Dict[str, Any]]:
        columns = [Currency.id, Currency.ticker, Currency.network] + [
            getattr(Currency, field) for field in CURRENCY_FIELDS
        ]
        try:
            async with self.database.session() as session:
                result = await session.execute(select(*columns))
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load existing currencies: {e.__class__.__name__}")

        index: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for row in rows:
            index.setdefault(catalog_key(row["ticker"], row["network"]), dict(row))
        return index

    async def _write_currency_batches(
        self,
        inserts: List[Dict[str, Any]],
        updates: List[Dict[str, Any]],
        report: SyncReport,
    ) -> None:
        for chunk in _chunks(inserts, self.currency_batch_size):
            await self._commit_batch(insert(Currency), chunk, CURRENCIES)
            report.inserted += len(chunk)
            report.batches += 1

        for chunk in _chunks(updates, self.currency_batch_size):
            await self._commit_batch(update(Currency), chunk, CURRENCIES)
            report.updated += len(chunk)
            report.batches += 1

    async def _commit_batch(self, statement, params: List[Dict[str, Any]], catalog: str) -> None:
        """Execute one batch in its own transaction."""
        try:
            async with self.database.session() as session:
                await session.execute(statement, params)
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to write {catalog} batch of {len(params)} rows: {e.__class__.__name__}"
            )

    # ------------------------------------------------------------------
    # Pairs
    # ------------------------------------------------------------------

    async def sync_pairs(self, **filters) -> SyncReport:
        """Fetch the pair catalog and upsert it in fixed-size batches.

        Entries whose tickers cannot be resolved are skipped with a warning.

        Raises:
            SyncInProgress: another pair sync is running
            ProviderError, ProviderUnavailable, ProviderContractViolation:
                the pair list could not be fetched
            PersistenceError: a write batch failed; earlier batches stay committed
        """
        async with self._single_flight(PAIRS):
            report = SyncReport(catalog=PAIRS)
            async with self._tracked_run(report):
                raw_pairs = await self.provider.list_pairs(**filters)
                report.fetched = len(raw_pairs)

                index = await self._load_pair_index()
                seen: set = set()
                logger.info(f"Found {len(index)} existing pairs in database")

                total_batches = (len(raw_pairs) + self.pair_batch_size - 1) // self.pair_batch_size
                for number, batch in enumerate(_chunks(raw_pairs, self.pair_batch_size), start=1):
                    logger.info(f"Processing pair batch {number}/{total_batches} ({len(batch)} pairs)")
                    await self._process_pair_batch(batch, index, seen, report)
            return report

    async def _load_pair_index(self) -> Dict[PairKey, Dict[str, Any]]:
        try:
            async with self.database.session() as session:
                result = await session.execute(select(
                    ExchangePair.from_ticker,
                    ExchangePair.from_network,
                    ExchangePair.to_ticker,
                    ExchangePair.to_network,
                    ExchangePair.flow_standard,
                    ExchangePair.flow_fixed_rate,
                    ExchangePair.is_active,
                ))
                rows = result.mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load existing pairs: {e.__class__.__name__}")

        index: Dict[PairKey, Dict[str, Any]] = {}
        for row in rows:
            key = pair_key(row["from_ticker"], row["from_network"], row["to_ticker"], row["to_network"])
            index.setdefault(key, {
                "where": (row["from_ticker"], row["from_network"], row["to_ticker"], row["to_network"]),
                "flow_standard": bool(row["flow_standard"]),
                "flow_fixed_rate": bool(row["flow_fixed_rate"]),
                "is_active": bool(row["is_active"]),
                "staged": None,
            })
        return index

    async def _process_pair_batch(
        self,
        batch: List[Any],
        index: Dict[PairKey, Dict[str, Any]],
        seen: set,
        report: SyncReport,
    ) -> None:
        inserts: List[Dict[str, Any]] = []
        updates: Dict[PairKey, Dict[str, Any]] = {}

        for entry in batch:
            report.processed += 1
            pair = resolve_pair(entry)
            if pair is None:
                report.skipped += 1
                logger.warning(f"Skipping pair with missing currency info: {entry!r:.200}")
                continue

            key = pair_key(pair.from_ticker, pair.from_network, pair.to_ticker, pair.to_network)
            first_sighting = key not in seen
            if not first_sighting:
                report.duplicates += 1
            seen.add(key)
            current = index.get(key)

            if current is None:
                values = {
                    "from_ticker": pair.from_ticker,
                    "from_network": pair.from_network,
                    "to_ticker": pair.to_ticker,
                    "to_network": pair.to_network,
                    "flow_standard": pair.standard,
                    "flow_fixed_rate": pair.fixed_rate,
                    "is_active": True,
                }
                inserts.append(values)
                index[key] = {
                    "where": key,
                    "flow_standard": pair.standard,
                    "flow_fixed_rate": pair.fixed_rate,
                    "is_active": True,
                    "staged": values,
                }
                continue

            flow_standard = current["flow_standard"] or pair.standard
            flow_fixed_rate = current["flow_fixed_rate"] or pair.fixed_rate
            if (
                flow_standard == current["flow_standard"]
                and flow_fixed_rate == current["flow_fixed_rate"]
                and current["is_active"]
            ):
                if first_sighting:
                    report.unchanged += 1
                continue

            current.update(flow_standard=flow_standard, flow_fixed_rate=flow_fixed_rate, is_active=True)
            if current["staged"] is not None:
                # Still an uncommitted insert in this batch
                current["staged"].update(flow_standard=flow_standard, flow_fixed_rate=flow_fixed_rate)
                continue

            where = current["where"]
            updates[key] = {
                "k_from_ticker": where[0],
                "k_from_network": where[1],
                "k_to_ticker": where[2],
                "k_to_network": where[3],
                "v_flow_standard": flow_standard,
                "v_flow_fixed_rate": flow_fixed_rate,
            }

        if inserts:
            await self._commit_batch(insert(ExchangePair), inserts, PAIRS)
        if updates:
            await self._commit_batch(self._pair_update_statement(), list(updates.values()), PAIRS)

        for values in inserts:
            index[pair_key(values["from_ticker"], values["from_network"],
                           values["to_ticker"], values["to_network"])]["staged"] = None

        report.inserted += len(inserts)
        report.updated += len(updates)
        report.batches += 1

    @staticmethod
    def _pair_update_statement():
        table = ExchangePair.__table__
        return (
            update(table)
            .where(and_(
                table.c.from_ticker == bindparam("k_from_ticker"),
                table.c.from_network == bindparam("k_from_network"),
                table.c.to_ticker == bindparam("k_to_ticker"),
                table.c.to_network == bindparam("k_to_network"),
            ))
            .values(
                flow_standard=bindparam("v_flow_standard"),
                flow_fixed_rate=bindparam("v_flow_fixed_rate"),
                is_active=True,
            )
        )

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    async def sync_all(self, **pair_filters) -> Dict[str, Optional[SyncReport]]:
        """Refresh currencies, then pairs.

        A currency failure is logged and the pair refresh still runs; a pair
        failure propagates.
        """
        reports: Dict[str, Optional[SyncReport]] = {CURRENCIES: None, PAIRS: None}
        try:
            reports[CURRENCIES] = await self.sync_currencies()
        except BlockhavenError as e:
            logger.warning(f"Failed to fetch currencies, continuing with pairs: {e.message}")

        reports[PAIRS] = await self.sync_pairs(**pair_filters)
        return reports
