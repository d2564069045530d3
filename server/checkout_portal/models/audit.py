from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Enum as SAEnum, ForeignKey, JSON, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from checkout_portal.db.base import Base
from checkout_portal.models.mixins import Identifier, TimestampMixin


class AuditCategory(str, Enum):
    WEBHOOK = "webhook"
    STATE_TRANSITION = "state_transition"
    PROVISIONING = "provisioning"
    MAGIC_LINK = "magic_link"
    OPERATOR_ALERT = "operator_alert"


class AuditLog(TimestampMixin, Base):
    __tablename__ = "audit_logs"

    id: Mapped[Identifier]
    checkout_session_id: Mapped[str | None] = mapped_column(
        ForeignKey("checkout_sessions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    actor: Mapped[str] = mapped_column(String(80), nullable=False, default="system")
    action: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[AuditCategory] = mapped_column(SAEnum(AuditCategory), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    critical: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    checkout_session: Mapped["CheckoutSession | None"] = relationship(back_populates="audit_logs")
