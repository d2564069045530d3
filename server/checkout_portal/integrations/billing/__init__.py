"""
Billing integration modules

Card payments (Stripe) and invoices (Zoho Billing) behind one interface.
"""

from .base import (
    BillingCustomer,
    BillingError,
    BillingLineItem,
    BillingProvider,
    BillingType,
    InvoiceRequest,
    InvoiceResult,
    PaymentResult,
    PaymentStatus,
    PaymentStatusResult,
    RefundResult,
)
from .stripe_adapter import StripeAdapter
from .zoho_billing_adapter import ZohoBillingAdapter

__all__ = [
    "BillingCustomer",
    "BillingError",
    "BillingLineItem",
    "BillingProvider",
    "BillingType",
    "InvoiceRequest",
    "InvoiceResult",
    "PaymentResult",
    "PaymentStatus",
    "PaymentStatusResult",
    "RefundResult",
    "StripeAdapter",
    "ZohoBillingAdapter",
]
