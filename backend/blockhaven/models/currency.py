"""Currency catalog model."""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Index, UniqueConstraint, func
from sqlalchemy.schema import FetchedValue

from .database import Base


class Currency(Base):
    """Tradable currency, identified by (ticker, network).

    Rows are created and updated only by the catalog synchronizer.
    """
    __tablename__ = "currencies"
    __table_args__ = (
        UniqueConstraint("ticker", "network", name="unique_currency"),
        Index("idx_currencies_ticker", "ticker"),
        Index("idx_currencies_network", "network"),
        Index("idx_currencies_active", "is_active"),
        Index("idx_currencies_featured", "featured"),
    )

    id = Column(Integer, primary_key=True, index=True)
    ticker = Column(String(20), nullable=False)
    network = Column(String(50), nullable=False)
    name = Column(String(100), nullable=False)
    image_url = Column(Text, nullable=True)

    # Provider capability flags
    has_external_id = Column(Boolean, nullable=False, default=False)
    is_extra_id_supported = Column(Boolean, nullable=False, default=False)
    is_fiat = Column(Boolean, nullable=False, default=False)
    featured = Column(Boolean, nullable=False, default=False)
    is_stable = Column(Boolean, nullable=False, default=False)
    support_fixed_rate = Column(Boolean, nullable=False, default=False)
    buy_enabled = Column(Boolean, nullable=False, default=True)
    sell_enabled = Column(Boolean, nullable=False, default=True)

    legacy_ticker = Column(String(50), nullable=True)
    token_contract = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    # Timestamps (updated_at is refreshed by a database trigger)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), server_onupdate=FetchedValue())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ticker": self.ticker,
            "network": self.network,
            "name": self.name,
            "image": self.image_url,
            "has_external_id": self.has_external_id,
            "is_extra_id_supported": self.is_extra_id_supported,
            "is_fiat": self.is_fiat,
            "featured": self.featured,
            "is_stable": self.is_stable,
            "support_fixed_rate": self.support_fixed_rate,
            "buy_enabled": self.buy_enabled,
            "sell_enabled": self.sell_enabled,
            "legacy_ticker": self.legacy_ticker,
            "token_contract": self.token_contract,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Currency(ticker={self.ticker}, network={self.network})>"
