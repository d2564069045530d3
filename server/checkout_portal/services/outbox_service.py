from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from checkout_portal.core.logging import get_logger
from checkout_portal.models.checkout import CheckoutSession
from checkout_portal.models.event import EventOutbox, EventStatus
from checkout_portal.models.mixins import as_utc

logger = get_logger(__name__)

MAX_DISPATCH_ATTEMPTS = 5


class CustomerNotification:
    PAYMENT_CONFIRMED = "checkout.payment_confirmed"
    PAYMENT_FAILED = "checkout.payment_failed"
    ORDER_CANCELLED = "checkout.order_cancelled"
    REFUND_PROCESSED = "checkout.refund_processed"
    COMPLETED = "checkout.completed"


async def enqueue_event(
    session: AsyncSession,
    *,
    checkout_session_id: str | None,
    event_type: str,
    payload: dict,
    channel: str = "email",
    schedule_in_seconds: int = 0,
) -> EventOutbox:
    event = EventOutbox(
        checkout_session_id=checkout_session_id,
        event_type=event_type,
        payload=payload,
        channel=channel,
        next_run_at=datetime.now(timezone.utc) + timedelta(seconds=schedule_in_seconds),
    )
    session.add(event)
    await session.flush()
    logger.info("event.outbox.enqueued", event_type=event_type, channel=channel)
    return event


async def enqueue_customer_notification(
    session: AsyncSession,
    checkout: CheckoutSession,
    event_type: str,
    *,
    recipient: str | None,
    **details,
) -> EventOutbox:
    payload = {"checkout_session_id": checkout.id, "status": checkout.status.value, "recipient": recipient, **details}
    return await enqueue_event(session, checkout_session_id=checkout.id, event_type=event_type, payload=payload)


async def dispatch_pending_events(
    session: AsyncSession,
    handler: Callable[[EventOutbox], Awaitable[None]] | None = None,
    *,
    limit: int = 100,
) -> int:
    """
    Deliver due outbox events; failed deliveries are rescheduled with linear
    backoff until ``MAX_DISPATCH_ATTEMPTS`` is reached.
    """
    now = datetime.now(timezone.utc)
    result = await session.execute(
        select(EventOutbox)
        .where(
            or_(
                EventOutbox.status == EventStatus.PENDING,
                (EventOutbox.status == EventStatus.FAILED) & (EventOutbox.attempts < MAX_DISPATCH_ATTEMPTS),
            )
        )
        .order_by(EventOutbox.next_run_at)
        .limit(limit)
    )
    events = [event for event in result.scalars().all() if as_utc(event.next_run_at) <= now]
    dispatched = 0
    for event in events:
        try:
            if handler is not None:
                await handler(event)
        except Exception as exc:  # handler failures are recorded on the row and retried later
            event.status = EventStatus.FAILED
            event.attempts += 1
            event.last_error = str(exc)
            event.next_run_at = now + timedelta(seconds=30 * event.attempts)
            logger.warning("event.outbox.failed", event_id=event.id, error=str(exc))
            continue

        event.status = EventStatus.DISPATCHED
        event.attempts += 1
        event.last_error = None
        dispatched += 1
        logger.info("event.outbox.dispatched", event_type=event.event_type, channel=event.channel)
    await session.flush()
    return dispatched
