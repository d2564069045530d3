"""
Billing Provider Base Classes and Interfaces

Card payments (Stripe) and invoiced orders (Zoho Billing) are both exposed
through ``BillingProvider`` so checkout code can attach either reference to
a session without knowing which provider produced it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class BillingType(str, Enum):
    """Supported billing providers."""
    STRIPE = "stripe"
    ZOHO_BILLING = "zoho_billing"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""
    PENDING = "pending"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


@dataclass
class BillingLineItem:
    """Single billed line."""
    name: str
    rate: Decimal
    quantity: int = 1
    description: Optional[str] = None


@dataclass
class BillingCustomer:
    """Customer information for billing."""
    email: str
    name: Optional[str] = None
    company: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


@dataclass
class InvoiceRequest:
    """Payable document requested for a checkout session."""
    checkout_session_id: str
    customer: BillingCustomer
    amount: Decimal
    currency: str = "USD"
    line_items: List[BillingLineItem] = field(default_factory=list)
    notes: Optional[str] = None


@dataclass
class InvoiceResult:
    """
    Result of creating a payable document.

    ``reference`` is the payment-intent id for Stripe and the invoice id for
    Zoho Billing; ``client_secret`` is only set for card payments.
    """
    reference: str
    billing_type: BillingType
    amount: Decimal
    currency: str
    status: PaymentStatus
    client_secret: Optional[str] = None
    created_at: Optional[datetime] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class PaymentResult:
    """Result of a capture."""
    success: bool
    transaction_id: str
    amount: Optional[Decimal]
    currency: Optional[str]
    status: PaymentStatus
    billing_type: BillingType
    processed_at: Optional[datetime] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class RefundResult:
    """Result of a refund operation."""
    success: bool
    refund_id: str
    reference: str
    amount: Optional[Decimal]
    status: PaymentStatus
    billing_type: BillingType
    reason: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


@dataclass
class PaymentStatusResult:
    """Current state of a payment or invoice."""
    reference: str
    status: PaymentStatus
    billing_type: BillingType
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    provider_response: Optional[Dict[str, Any]] = None


class BillingError(Exception):
    """Billing provider specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        reference: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.provider_response = provider_response
        self.reference = reference


class BillingProvider(ABC):
    """Abstract base class for billing adapters."""

    def __init__(self, **config):
        self.config = config
        self.billing_type = self._get_billing_type()

    @abstractmethod
    def _get_billing_type(self) -> BillingType:
        pass

    @abstractmethod
    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        """
        Create the payable document for a checkout session.

        Raises:
            BillingError: If the provider rejects the request
        """

    @abstractmethod
    async def capture_payment(self, reference: str, amount: Optional[Decimal] = None) -> PaymentResult:
        """
        Capture an authorized payment or record payment against an invoice.

        Raises:
            BillingError: If capture fails
        """

    @abstractmethod
    async def refund_payment(
        self,
        reference: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """
        Refund a payment (None amount means full refund).

        Raises:
            BillingError: If refund fails
        """

    @abstractmethod
    async def get_payment_status(self, reference: str) -> PaymentStatusResult:
        """
        Query the provider for the current payment state.

        Raises:
            BillingError: If the query fails
        """

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate and parse a webhook body.

        Raises:
            BillingError: If the signature is missing or invalid, or the body
                is not JSON
        """

    async def close(self) -> None:
        """Release network resources held by the adapter."""
