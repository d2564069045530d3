from checkout_portal.models.audit import AuditCategory, AuditLog
from checkout_portal.models.checkout import (
    PAYMENT_CONFIRMED_STATUSES,
    TERMINAL_AGREEMENT_STATUSES,
    AgreementSignatureStatus,
    AgreementStatus,
    CheckoutSession,
    CheckoutStatus,
    CompanyInfo,
    SalesOrder,
)
from checkout_portal.models.crm import SignupLink, ZohoAccountLink
from checkout_portal.models.event import EventOutbox, EventStatus
from checkout_portal.models.ledger import ProcessedEvent
from checkout_portal.models.user import User, UserRole

__all__ = [
    "AuditCategory",
    "AuditLog",
    "PAYMENT_CONFIRMED_STATUSES",
    "TERMINAL_AGREEMENT_STATUSES",
    "AgreementSignatureStatus",
    "AgreementStatus",
    "CheckoutSession",
    "CheckoutStatus",
    "CompanyInfo",
    "SalesOrder",
    "SignupLink",
    "ZohoAccountLink",
    "EventOutbox",
    "EventStatus",
    "ProcessedEvent",
    "User",
    "UserRole",
]
