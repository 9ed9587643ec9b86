# Database Models

from .database import Base, Database, DEFAULT_DATABASE_URL, get_session, _install_updated_at_triggers
from .currency import Currency
from .exchange_pair import ExchangePair
from .exchange import Exchange, ExchangeStatus, ExchangeFlow, ExchangeType
from .user import User, UserType

_install_updated_at_triggers()

__all__ = [
    "Base",
    "Database",
    "DEFAULT_DATABASE_URL",
    "get_session",
    "Currency",
    "ExchangePair",
    "Exchange",
    "ExchangeStatus",
    "ExchangeFlow",
    "ExchangeType",
    "User",
    "UserType",
]
