"""
CRM Base Classes and Interfaces

Defines the contract the provisioning orchestrator and the magic-link
redemption path use to talk to the CRM. Only these five capabilities are
consumed; everything else about the CRM stays behind the adapter.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


class CRMType(str, Enum):
    """Supported CRM types."""
    ZOHO = "zoho"


class RelatedEntity(str, Enum):
    """CRM modules that can be searched for records related to a contact."""
    CONTACTS = "Contacts"
    SALES_ORDERS = "Sales_Orders"
    DEALS = "Deals"
    TASKS = "Tasks"
    NOTES = "Notes"


@dataclass
class ContactFields:
    """Contact fields pushed to the CRM when provisioning."""
    last_name: str
    first_name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "US"
    industry: Optional[str] = None
    description: Optional[str] = None
    lead_source: str = "Website Checkout"


@dataclass
class SalesOrderLineItem:
    """Single product line on a CRM sales order."""
    name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    description: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass
class SalesOrderRequest:
    """Everything needed to create a sales order besides the contact id."""
    subject: str
    amount: Decimal
    currency: str = "USD"
    line_items: List[SalesOrderLineItem] = field(default_factory=list)
    description: Optional[str] = None
    reference: Optional[str] = None


class CRMError(Exception):
    """CRM provider specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        provider_response: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.status_code = status_code
        self.provider_response = provider_response


class CRMClient(ABC):
    """Abstract base class for CRM adapters."""

    def __init__(self, **config):
        self.config = config
        self.crm_type = self._get_crm_type()

    @abstractmethod
    def _get_crm_type(self) -> CRMType:
        pass

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a contact record.

        Returns:
            The contact record, or None when the CRM has no such contact

        Raises:
            CRMError: If the CRM call fails
        """

    @abstractmethod
    async def create_contact(self, fields: ContactFields) -> str:
        """
        Create a contact.

        Returns:
            The CRM id of the new contact

        Raises:
            CRMError: If creation fails
        """

    @abstractmethod
    async def update_contact(self, contact_id: str, fields: ContactFields) -> str:
        """
        Update an existing contact in place.

        Returns:
            The CRM id of the updated contact

        Raises:
            CRMError: If the update fails
        """

    @abstractmethod
    async def create_sales_order(self, contact_id: str, order: SalesOrderRequest) -> str:
        """
        Create a sales order owned by a contact.

        Returns:
            The CRM id of the new sales order

        Raises:
            CRMError: If creation fails
        """

    @abstractmethod
    async def search_related(self, entity: RelatedEntity, criteria: str) -> List[Dict[str, Any]]:
        """
        Search a CRM module with provider criteria syntax.

        Returns:
            Matching records (empty when none match)

        Raises:
            CRMError: If the search fails
        """

    async def close(self) -> None:
        """Release network resources held by the adapter."""
