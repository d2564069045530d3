from checkout_portal.services import (
    audit_service,
    checkout_service,
    idempotency,
    magic_link_service,
    normalizer,
    outbox_service,
    provisioning_service,
    reconciliation_service,
    state_machine,
    user_service,
)

__all__ = [
    "audit_service",
    "checkout_service",
    "idempotency",
    "magic_link_service",
    "normalizer",
    "outbox_service",
    "provisioning_service",
    "reconciliation_service",
    "state_machine",
    "user_service",
]
