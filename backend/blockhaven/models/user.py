"""User model (read-only here; accounts are managed elsewhere)."""

from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Enum as SQLEnum

from .database import Base


class UserType(str, Enum):
    """User role."""
    ADMIN = "admin"
    CUSTOMER = "customer"


class User(Base):
    """Account used to scope exchanges and gate admin catalog jobs."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    user_type = Column(SQLEnum(UserType, values_callable=lambda e: [m.value for m in e], name="user_type"),
                       nullable=False, default=UserType.CUSTOMER)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.ADMIN

    def __repr__(self):
        return f"<User(id={self.id}, type={self.user_type.value})>"
