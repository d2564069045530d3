"""
CRM integration modules
"""

from .base import (
    ContactFields,
    CRMClient,
    CRMError,
    CRMType,
    RelatedEntity,
    SalesOrderLineItem,
    SalesOrderRequest,
)
from .zoho_adapter import ZohoCRMAdapter

__all__ = [
    "ContactFields",
    "CRMClient",
    "CRMError",
    "CRMType",
    "RelatedEntity",
    "SalesOrderLineItem",
    "SalesOrderRequest",
    "ZohoCRMAdapter",
]
