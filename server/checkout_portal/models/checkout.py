from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from checkout_portal.db.base import Base
from checkout_portal.models.mixins import Identifier, TimestampMixin


class CheckoutStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_COMPLETED = "payment_completed"
    CONTACT_CREATED = "contact_created"
    SALES_ORDER_CREATED = "sales_order_created"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses in which payment is confirmed and provisioning may run
PAYMENT_CONFIRMED_STATUSES = frozenset(
    {
        CheckoutStatus.PAYMENT_COMPLETED,
        CheckoutStatus.CONTACT_CREATED,
        CheckoutStatus.SALES_ORDER_CREATED,
    }
)


class AgreementStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    DECLINED = "declined"
    VOIDED = "voided"


TERMINAL_AGREEMENT_STATUSES = frozenset(
    {AgreementStatus.COMPLETED, AgreementStatus.DECLINED, AgreementStatus.VOIDED}
)


class CheckoutSession(TimestampMixin, Base):
    __tablename__ = "checkout_sessions"

    id: Mapped[Identifier]
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    status: Mapped[CheckoutStatus] = mapped_column(
        SAEnum(CheckoutStatus), default=CheckoutStatus.PENDING, nullable=False, index=True
    )
    module: Mapped[str | None] = mapped_column(String(120), nullable=True)
    card_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True)
    invoice_reference: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True)
    # holder token of the provisioning run currently working this session
    provisioning_claim: Mapped[str | None] = mapped_column(String(36), nullable=True)
    provisioning_claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped["User"] = relationship(back_populates="checkout_sessions")
    company_info: Mapped["CompanyInfo | None"] = relationship(
        back_populates="checkout_session", uselist=False, cascade="all,delete-orphan"
    )
    agreement: Mapped["AgreementSignatureStatus | None"] = relationship(
        back_populates="checkout_session", uselist=False, cascade="all,delete-orphan"
    )
    sales_order: Mapped["SalesOrder | None"] = relationship(
        back_populates="checkout_session", uselist=False, cascade="all,delete-orphan"
    )
    audit_logs: Mapped[list["AuditLog"]] = relationship(back_populates="checkout_session")
    events: Mapped[list["EventOutbox"]] = relationship(back_populates="checkout_session")


class CompanyInfo(TimestampMixin, Base):
    __tablename__ = "company_info"

    id: Mapped[Identifier]
    checkout_session_id: Mapped[str] = mapped_column(
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    state: Mapped[str | None] = mapped_column(String(120), nullable=True)
    zip_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    country: Mapped[str | None] = mapped_column(String(80), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(120), nullable=True)
    company_size: Mapped[str | None] = mapped_column(String(40), nullable=True)

    checkout_session: Mapped["CheckoutSession"] = relationship(back_populates="company_info")


class AgreementSignatureStatus(TimestampMixin, Base):
    __tablename__ = "agreement_signature_statuses"

    id: Mapped[Identifier]
    checkout_session_id: Mapped[str] = mapped_column(
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    provider: Mapped[str] = mapped_column(String(40), default="docusign", nullable=False)
    envelope_id: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True, index=True)
    status: Mapped[AgreementStatus] = mapped_column(
        SAEnum(AgreementStatus), default=AgreementStatus.PENDING, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    checkout_session: Mapped["CheckoutSession"] = relationship(back_populates="agreement")


class SalesOrder(TimestampMixin, Base):
    __tablename__ = "sales_orders"

    id: Mapped[Identifier]
    checkout_session_id: Mapped[str] = mapped_column(
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    external_id: Mapped[str | None] = mapped_column(String(120), unique=True, nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(precision=12, scale=2), nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    checkout_session: Mapped["CheckoutSession"] = relationship(back_populates="sales_order")
