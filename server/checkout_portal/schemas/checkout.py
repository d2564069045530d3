from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, EmailStr, Field

from checkout_portal.integrations.billing import BillingType
from checkout_portal.models.checkout import AgreementStatus, CheckoutStatus
from checkout_portal.schemas.common import ORMModel, Timestamped


class CheckoutSessionCreate(BaseModel):
    module: str | None = Field(default=None, max_length=120)
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class CompanyInfoUpsert(BaseModel):
    company_name: str = Field(min_length=1, max_length=255)
    contact_name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=40)
    address: str | None = Field(default=None, max_length=255)
    city: str | None = Field(default=None, max_length=120)
    state: str | None = Field(default=None, max_length=120)
    zip_code: str | None = Field(default=None, max_length=20)
    country: str | None = Field(default=None, max_length=80)
    industry: str | None = Field(default=None, max_length=120)
    company_size: str | None = Field(default=None, max_length=40)


class CompanyInfoRead(ORMModel):
    company_name: str
    contact_name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    country: str | None = None
    industry: str | None = None
    company_size: str | None = None


class AgreementRead(ORMModel):
    provider: str
    envelope_id: str | None = None
    status: AgreementStatus
    completed_at: datetime | None = None
    last_event_at: datetime | None = None


class SalesOrderRead(ORMModel):
    external_id: str | None = None
    amount: Decimal
    currency: str


class CheckoutSessionRead(Timestamped):
    id: str
    user_id: str
    status: CheckoutStatus
    module: str | None = None
    card_last4: str | None = None
    payment_reference: str | None = None
    invoice_reference: str | None = None
    company_info: CompanyInfoRead | None = None
    agreement: AgreementRead | None = None
    sales_order: SalesOrderRead | None = None


class SigningRequest(BaseModel):
    return_url: str = Field(min_length=1, max_length=2048)


class SigningResponse(BaseModel):
    url: str
    envelope_id: str
    expires_at: datetime | None = None


class PaymentStartRequest(BaseModel):
    provider: BillingType = BillingType.STRIPE


class PaymentStartResponse(BaseModel):
    provider: BillingType
    reference: str
    client_secret: str | None = None
    amount: Decimal
    currency: str


class PaymentStatusRead(BaseModel):
    provider: BillingType
    reference: str
    status: str
    amount: Decimal | None = None
    currency: str | None = None


class CaptureRequest(BaseModel):
    provider: BillingType = BillingType.STRIPE
    amount: Decimal | None = Field(default=None, gt=0)


class CaptureResponse(BaseModel):
    transaction_id: str
    status: str
    amount: Decimal | None = None


class RefundRequest(BaseModel):
    provider: BillingType = BillingType.STRIPE
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=120)


class RefundResponse(BaseModel):
    refund_id: str
    reference: str
    amount: Decimal | None = None
    status: str


class ProvisioningResultRead(BaseModel):
    checkout_session_id: str
    status: CheckoutStatus
    steps_performed: List[str] = Field(default_factory=list)
    contact_id: str | None = None
    sales_order_id: str | None = None
    skipped: bool = False


class SweepRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=500)


class SweepItem(BaseModel):
    checkout_session_id: str
    outcome: str
    status: CheckoutStatus | None = None
    error: str | None = None


class SweepResponse(BaseModel):
    examined: int
    completed: int
    failed: int
    items: List[SweepItem] = Field(default_factory=list)
