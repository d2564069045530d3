from __future__ import annotations

from enum import Enum

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.errors import DuplicateEvent
from checkout_portal.core.logging import get_logger
from checkout_portal.models.ledger import ProcessedEvent

logger = get_logger(__name__)


class Admission(str, Enum):
    ADMITTED = "admitted"
    ALREADY_PROCESSED = "already_processed"


async def admit(
    session: AsyncSession,
    provider: str,
    external_event_id: str,
    *,
    kind: str,
    correlation_id: str | None = None,
) -> Admission:
    """
    Record a webhook delivery in the ledger, or report that it was seen before.

    The insert runs in a SAVEPOINT so a unique-constraint violation only
    discards the ledger row; the caller's transaction stays usable. The row
    becomes durable when the caller commits together with the state change.
    """
    try:
        async with session.begin_nested():
            session.add(
                ProcessedEvent(
                    provider=provider,
                    external_event_id=external_event_id,
                    event_kind=kind,
                    correlation_id=correlation_id,
                )
            )
    except IntegrityError:
        logger.info("idempotency.duplicate", provider=provider, event_id=external_event_id)
        return Admission.ALREADY_PROCESSED

    logger.debug("idempotency.admitted", provider=provider, event_id=external_event_id)
    return Admission.ADMITTED


async def admit_once(
    session: AsyncSession,
    provider: str,
    external_event_id: str,
    *,
    kind: str,
    correlation_id: str | None = None,
) -> None:
    """``admit`` for callers that treat a redelivery as an error; raises ``DuplicateEvent``."""
    admission = await admit(session, provider, external_event_id, kind=kind, correlation_id=correlation_id)
    if admission is Admission.ALREADY_PROCESSED:
        raise DuplicateEvent(
            f"{provider} event {external_event_id} was already processed",
            provider=provider,
            correlation_id=correlation_id,
        )
