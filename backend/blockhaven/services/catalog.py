"""Catalog read service - currency listing and enhanced pairs.

Pairs are authoritative for tradability. Any (ticker, network) that a pair
references without a Currency row is listed with a synthesized minimal entry,
so consumers never see a pair leg the currency listing does not know about.
"""

import logging
from typing import Any, Dict, List, Tuple

from sqlalchemy import select, union, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from ..errors import PersistenceError
from ..models import Currency, ExchangePair

logger = logging.getLogger(__name__)


def catalog_key(ticker: str, network: str) -> Tuple[str, str]:
    """Case-insensitive currency identity."""
    return (ticker or "").strip().lower(), (network or "").strip().lower()


def synthesize_currency(ticker: str, network: str) -> Dict[str, Any]:
    """Minimal listing entry for a currency known only from pairs."""
    return {
        "id": None,
        "ticker": ticker,
        "network": network,
        "name": ticker.upper(),
        "image": None,
        "featured": False,
        "is_synthetic": True,
    }


def _leg(ticker: str, network: str, name, image, featured) -> Dict[str, Any]:
    return {
        "ticker": ticker,
        "network": network,
        "name": name or ticker.upper(),
        "image": image or None,
        "featured": bool(featured),
    }


class CatalogService:
    """Read-side queries over the currency and pair stores."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_unique_pair_currencies(self) -> List[Tuple[str, str]]:
        """Distinct (ticker, network) across both legs of every pair."""
        stmt = union(
            select(ExchangePair.from_ticker.label("ticker"), ExchangePair.from_network.label("network")),
            select(ExchangePair.to_ticker.label("ticker"), ExchangePair.to_network.label("network")),
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get unique currencies: {e.__class__.__name__}")
        return sorted((row.ticker, row.network) for row in result)

    async def list_currencies(self) -> List[Dict[str, Any]]:
        """All stored currencies plus synthesized entries for pair-only legs.

        Ordered by ticker, then network.
        """
        try:
            result = await self.session.execute(select(Currency))
            currencies = result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get available currencies: {e.__class__.__name__}")

        listing = []
        known = set()
        for currency in currencies:
            entry = currency.to_dict()
            entry["is_synthetic"] = False
            listing.append(entry)
            known.add(catalog_key(currency.ticker, currency.network))

        synthesized = 0
        for ticker, network in await self.get_unique_pair_currencies():
            key = catalog_key(ticker, network)
            if key not in known:
                listing.append(synthesize_currency(ticker, network))
                known.add(key)
                synthesized += 1

        if synthesized:
            logger.debug(f"Synthesized {synthesized} currencies that only appear in pairs")

        listing.sort(key=lambda c: (c["ticker"], c["network"]))
        return listing

    async def get_enhanced_pairs(self) -> List[Dict[str, Any]]:
        """Active pairs joined with display metadata for both legs."""
        from_currency = aliased(Currency)
        to_currency = aliased(Currency)

        stmt = (
            select(
                ExchangePair.from_ticker,
                ExchangePair.from_network,
                from_currency.name.label("from_name"),
                from_currency.image_url.label("from_image"),
                from_currency.featured.label("from_featured"),
                ExchangePair.to_ticker,
                ExchangePair.to_network,
                to_currency.name.label("to_name"),
                to_currency.image_url.label("to_image"),
                to_currency.featured.label("to_featured"),
                ExchangePair.flow_standard,
                ExchangePair.flow_fixed_rate,
            )
            .outerjoin(
                from_currency,
                and_(
                    ExchangePair.from_ticker == from_currency.ticker,
                    ExchangePair.from_network == from_currency.network,
                ),
            )
            .outerjoin(
                to_currency,
                and_(
                    ExchangePair.to_ticker == to_currency.ticker,
                    ExchangePair.to_network == to_currency.network,
                ),
            )
            .where(ExchangePair.is_active.is_(True))
            .order_by(ExchangePair.from_ticker, ExchangePair.to_ticker, ExchangePair.id)
        )

        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to get enhanced pairs: {e.__class__.__name__}")

        return [
            {
                "from": _leg(row.from_ticker, row.from_network, row.from_name, row.from_image, row.from_featured),
                "to": _leg(row.to_ticker, row.to_network, row.to_name, row.to_image, row.to_featured),
                "flow": {
                    "standard": bool(row.flow_standard),
                    "fixed-rate": bool(row.flow_fixed_rate),
                },
            }
            for row in result
        ]

    async def is_empty(self) -> bool:
        """True when neither catalog store has been populated yet."""
        try:
            currencies = await self.session.scalar(select(func.count()).select_from(Currency))
            pairs = await self.session.scalar(select(func.count()).select_from(ExchangePair))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to inspect catalog: {e.__class__.__name__}")
        return not currencies and not pairs

    async def is_known_currency(self, ticker: str, network: str) -> bool:
        """Whether (ticker, network) is in the currency store or any pair leg."""
        ticker, network = catalog_key(ticker, network)
        try:
            currency_id = await self.session.scalar(
                select(Currency.id).where(
                    func.lower(Currency.ticker) == ticker,
                    func.lower(Currency.network) == network,
                ).limit(1)
            )
            if currency_id is not None:
                return True

            pair_id = await self.session.scalar(
                select(ExchangePair.id).where(
                    (and_(func.lower(ExchangePair.from_ticker) == ticker,
                          func.lower(ExchangePair.from_network) == network))
                    | (and_(func.lower(ExchangePair.to_ticker) == ticker,
                            func.lower(ExchangePair.to_network) == network))
                ).limit(1)
            )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to look up currency: {e.__class__.__name__}")
        return pair_id is not None
