"""Exchange pair catalog model."""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, UniqueConstraint, func
from sqlalchemy.schema import FetchedValue

from .database import Base


class ExchangePair(Base):
    """Tradable (from-ticker, from-network, to-ticker, to-network) combination.

    Authoritative for "this combination is tradable", even when one of the
    legs has no Currency row.
    """
    __tablename__ = "exchange_pairs"
    __table_args__ = (
        UniqueConstraint("from_ticker", "from_network", "to_ticker", "to_network", name="unique_pair"),
        Index("idx_pairs_from_ticker", "from_ticker"),
        Index("idx_pairs_from_network", "from_network"),
        Index("idx_pairs_to_ticker", "to_ticker"),
        Index("idx_pairs_to_network", "to_network"),
        Index("idx_pairs_active", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    from_ticker = Column(String(20), nullable=False)
    from_network = Column(String(50), nullable=False)
    to_ticker = Column(String(20), nullable=False)
    to_network = Column(String(50), nullable=False)

    # Flow availability, only ever upgraded by a sync run
    flow_standard = Column(Boolean, nullable=False, default=False)
    flow_fixed_rate = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), server_onupdate=FetchedValue())

    def __repr__(self):
        return (
            f"<ExchangePair({self.from_ticker}/{self.from_network} -> "
            f"{self.to_ticker}/{self.to_network})>"
        )
