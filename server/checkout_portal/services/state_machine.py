from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from checkout_portal.core.logging import get_logger
from checkout_portal.models.audit import AuditCategory, AuditLog
from checkout_portal.models.checkout import (
    TERMINAL_AGREEMENT_STATUSES,
    AgreementSignatureStatus,
    AgreementStatus,
    CheckoutSession,
    CheckoutStatus,
)
from checkout_portal.services.normalizer import EventKind

logger = get_logger(__name__)


ALLOWED_TRANSITIONS: dict[CheckoutStatus, tuple[CheckoutStatus, ...]] = {
    CheckoutStatus.PENDING: (
        CheckoutStatus.PAYMENT_COMPLETED,
        CheckoutStatus.PAYMENT_FAILED,
        CheckoutStatus.CANCELLED,
    ),
    CheckoutStatus.PAYMENT_FAILED: (CheckoutStatus.PAYMENT_COMPLETED,),
    CheckoutStatus.PAYMENT_COMPLETED: (
        CheckoutStatus.CONTACT_CREATED,
        CheckoutStatus.REFUNDED,
        CheckoutStatus.CANCELLED,
    ),
    CheckoutStatus.CONTACT_CREATED: (CheckoutStatus.SALES_ORDER_CREATED,),
    CheckoutStatus.SALES_ORDER_CREATED: (CheckoutStatus.COMPLETED,),
    CheckoutStatus.COMPLETED: (),
    CheckoutStatus.CANCELLED: (),
    CheckoutStatus.REFUNDED: (),
}

AGREEMENT_SEVERITY: dict[AgreementStatus, int] = {
    AgreementStatus.PENDING: 0,
    AgreementStatus.SENT: 1,
    AgreementStatus.PARTIALLY_SIGNED: 2,
    AgreementStatus.COMPLETED: 3,
    AgreementStatus.DECLINED: 3,
    AgreementStatus.VOIDED: 3,
}

AGREEMENT_EVENT_TARGETS: dict[EventKind, AgreementStatus] = {
    EventKind.AGREEMENT_SENT: AgreementStatus.SENT,
    EventKind.AGREEMENT_PARTIALLY_SIGNED: AgreementStatus.PARTIALLY_SIGNED,
    EventKind.AGREEMENT_COMPLETED: AgreementStatus.COMPLETED,
    EventKind.AGREEMENT_DECLINED: AgreementStatus.DECLINED,
    EventKind.AGREEMENT_VOIDED: AgreementStatus.VOIDED,
}


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None
    changed: bool = False


@dataclass(slots=True)
class SessionGuards:
    """Facts about related records the session transitions depend on."""

    has_company_info: bool = False
    has_account_link: bool = False
    agreement_completed: bool = False

    @classmethod
    def for_session(cls, checkout: CheckoutSession, *, has_account_link: bool) -> "SessionGuards":
        agreement = checkout.agreement
        return cls(
            has_company_info=checkout.company_info is not None,
            has_account_link=has_account_link,
            agreement_completed=agreement is not None and agreement.status == AgreementStatus.COMPLETED,
        )


class AgreementOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    CONFLICT = "conflict"


@dataclass(slots=True)
class AgreementTransition:
    outcome: AgreementOutcome
    previous: AgreementStatus
    current: AgreementStatus
    reason: str | None = None

    @property
    def became_completed(self) -> bool:
        return self.outcome is AgreementOutcome.APPLIED and self.current == AgreementStatus.COMPLETED


def _can_transition(current: CheckoutStatus, target: CheckoutStatus) -> bool:
    allowed: Iterable[CheckoutStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def advance_session(checkout: CheckoutSession, target: CheckoutStatus, guards: SessionGuards) -> TransitionResult:
    if checkout.status == target:
        return TransitionResult(succeeded=True)

    if not _can_transition(checkout.status, target):
        return TransitionResult(False, f"status transition {checkout.status.value} -> {target.value} not permitted")

    if target == CheckoutStatus.CONTACT_CREATED and not guards.has_company_info:
        return TransitionResult(False, "company info is required before the CRM contact is recorded")
    if target == CheckoutStatus.SALES_ORDER_CREATED and not guards.has_account_link:
        return TransitionResult(False, "a CRM account link is required before the sales order is recorded")
    if target == CheckoutStatus.COMPLETED and not guards.agreement_completed:
        return TransitionResult(False, "agreement must be completed before the session completes")

    checkout.status = target
    return TransitionResult(succeeded=True, changed=True)


def apply_agreement_event(
    agreement: AgreementSignatureStatus,
    kind: EventKind,
    at: datetime | None = None,
) -> AgreementTransition:
    """
    Move the agreement forward by event severity.

    Lower or equal severity is a no-op, so redeliveries and late ``sent``
    events never regress the stored status. Once a terminal status is stored,
    a different terminal event is a conflict and nothing changes.
    """
    target = AGREEMENT_EVENT_TARGETS.get(kind)
    current = agreement.status
    if target is None:
        return AgreementTransition(AgreementOutcome.CONFLICT, current, current, f"{kind.value} is not an agreement event")

    if current in TERMINAL_AGREEMENT_STATUSES:
        if target == current or target not in TERMINAL_AGREEMENT_STATUSES:
            return AgreementTransition(AgreementOutcome.NOOP, current, current)
        return AgreementTransition(
            AgreementOutcome.CONFLICT,
            current,
            current,
            f"agreement already {current.value}; refusing {target.value}",
        )

    if AGREEMENT_SEVERITY[target] <= AGREEMENT_SEVERITY[current]:
        return AgreementTransition(AgreementOutcome.NOOP, current, current)

    now = at or datetime.now(timezone.utc)
    agreement.status = target
    agreement.last_event_at = now
    if target == AgreementStatus.COMPLETED and agreement.completed_at is None:
        agreement.completed_at = now
    return AgreementTransition(AgreementOutcome.APPLIED, current, target)


def record_transition_audit(
    checkout: CheckoutSession,
    *,
    actor: str,
    session,
    action: str = "checkout.status.transition",
    details: dict | None = None,
) -> None:
    entry = AuditLog(
        checkout_session_id=checkout.id,
        actor=actor,
        action=action,
        category=AuditCategory.STATE_TRANSITION,
        details={"status": checkout.status.value, **(details or {})},
        critical=False,
    )
    session.add(entry)
