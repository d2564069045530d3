from checkout_portal.schemas.auth import TokenResponse
from checkout_portal.schemas.checkout import (
    CheckoutSessionCreate,
    CheckoutSessionRead,
    CompanyInfoUpsert,
    PaymentStartRequest,
    PaymentStartResponse,
    ProvisioningResultRead,
    RefundRequest,
    RefundResponse,
    SigningRequest,
    SigningResponse,
    SweepRequest,
    SweepResponse,
)
from checkout_portal.schemas.magic_link import CrmDataResponse, ErrorResponse, MagicLinkCreate, MagicLinkRead
from checkout_portal.schemas.user import UserCreate, UserRead, UserUpdate
from checkout_portal.schemas.webhook import WebhookAck

__all__ = [
    "TokenResponse",
    "CheckoutSessionCreate",
    "CheckoutSessionRead",
    "CompanyInfoUpsert",
    "PaymentStartRequest",
    "PaymentStartResponse",
    "ProvisioningResultRead",
    "RefundRequest",
    "RefundResponse",
    "SigningRequest",
    "SigningResponse",
    "SweepRequest",
    "SweepResponse",
    "CrmDataResponse",
    "ErrorResponse",
    "MagicLinkCreate",
    "MagicLinkRead",
    "UserCreate",
    "UserRead",
    "UserUpdate",
    "WebhookAck",
]
