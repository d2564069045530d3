from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from checkout_portal.db.base import Base
from checkout_portal.models.mixins import Identifier


class ProcessedEvent(Base):
    """One row per admitted webhook delivery; the unique constraint is the idempotency guard."""

    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("provider", "external_event_id", name="uq_processed_event_provider_event"),)

    id: Mapped[Identifier]
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    external_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(60), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
