from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from checkout_portal.db.base import Base
from checkout_portal.models.mixins import Identifier, TimestampMixin


class UserRole(str, Enum):
    CUSTOMER = "customer"
    OPERATOR = "operator"
    ADMIN = "admin"


class User(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[Identifier]
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    roles: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)

    checkout_sessions: Mapped[list["CheckoutSession"]] = relationship(back_populates="user")
    zoho_link: Mapped["ZohoAccountLink | None"] = relationship(back_populates="user", uselist=False)
    signup_links: Mapped[list["SignupLink"]] = relationship(back_populates="owner")

    @property
    def is_operator(self) -> bool:
        return UserRole.OPERATOR.value in self.roles or UserRole.ADMIN.value in self.roles
