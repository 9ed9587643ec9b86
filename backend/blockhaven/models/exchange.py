"""Exchange transaction model."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Numeric, DateTime, JSON, Enum as SQLEnum

from .database import Base


class ExchangeStatus(str, Enum):
    """Lifecycle status as reported by the provider."""
    WAITING = "waiting"
    CONFIRMING = "confirming"
    EXCHANGING = "exchanging"
    SENDING = "sending"
    FINISHED = "finished"
    FAILED = "failed"
    REFUNDED = "refunded"
    VERIFYING = "verifying"


class ExchangeFlow(str, Enum):
    """Pricing mode."""
    STANDARD = "standard"
    FIXED_RATE = "fixed-rate"


class ExchangeType(str, Enum):
    """Which leg the requested amount applies to."""
    DIRECT = "direct"
    REVERSE = "reverse"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Exchange(Base):
    """Local audit record of an exchange created at the provider.

    transaction_id is assigned by the provider and never changes; status
    refreshes only touch status and to_amount.
    """
    __tablename__ = "exchanges"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(String(100), unique=True, nullable=False, index=True)

    from_currency = Column(String(20), nullable=False)
    from_network = Column(String(50), nullable=False)
    to_currency = Column(String(20), nullable=False)
    to_network = Column(String(50), nullable=False)

    from_amount = Column(Numeric(26, 8), nullable=True)
    to_amount = Column(Numeric(26, 8), nullable=True)

    # Addresses
    payin_address = Column(String(255), nullable=False)
    payout_address = Column(String(255), nullable=False)
    payin_extra_id = Column(String(255), nullable=True)
    payout_extra_id = Column(String(255), nullable=True)
    payout_extra_id_name = Column(String(100), nullable=True)
    refund_address = Column(String(255), nullable=True)
    refund_extra_id = Column(String(255), nullable=True)

    flow = Column(SQLEnum(ExchangeFlow, values_callable=_enum_values, name="exchange_flow"),
                  nullable=False, default=ExchangeFlow.STANDARD)
    type = Column(SQLEnum(ExchangeType, values_callable=_enum_values, name="exchange_type"),
                  nullable=False, default=ExchangeType.DIRECT)
    rate_id = Column(String(255), nullable=True)

    # Ownership (anonymous exchanges have no user)
    user_id = Column(String(100), nullable=True, index=True)
    contact_email = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=True)

    status = Column(SQLEnum(ExchangeStatus, values_callable=_enum_values, name="exchange_status"),
                    nullable=False, default=ExchangeStatus.WAITING)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<Exchange(transaction_id={self.transaction_id}, status={self.status.value})>"
