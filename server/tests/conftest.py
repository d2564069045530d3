"""
Shared fixtures for the checkout portal test suite.

Every test gets a fresh in-memory SQLite database; provider collaborators are
in-memory fakes that record their calls.
"""

import asyncio
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from checkout_portal.core.identity import Identity
from checkout_portal.db.base import Base
from checkout_portal.integrations.crm import ContactFields, CRMClient, CRMError, CRMType, RelatedEntity, SalesOrderRequest
from checkout_portal.integrations.esignature import ESignatureProvider, ESignatureType, SignerInfo, SigningUrlInfo
from checkout_portal.models import (
    AgreementSignatureStatus,
    AgreementStatus,
    CheckoutSession,
    CheckoutStatus,
    CompanyInfo,
    SalesOrder,
    User,
    ZohoAccountLink,
)
from checkout_portal.services.checkout_service import get_checkout_session


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite with SAVEPOINT support (pysqlite's implicit BEGIN is disabled)."""
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


class FakeCRM(CRMClient):
    """In-memory Zoho CRM stand-in."""

    def __init__(self):
        super().__init__()
        self.contacts: Dict[str, Dict[str, Any]] = {}
        self.sales_orders: Dict[str, Dict[str, Any]] = {}
        self.related: Dict[RelatedEntity, List[Dict[str, Any]]] = {}
        self.calls: List[str] = []
        self.failures: Dict[str, Exception] = {}
        self.hang_on: set[str] = set()
        self.delays: Dict[str, float] = {}
        self.on_call: Dict[str, Callable[[], Awaitable[None]]] = {}

    def _get_crm_type(self) -> CRMType:
        return CRMType.ZOHO

    async def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        if operation in self.hang_on:
            await asyncio.sleep(5)
        if operation in self.delays:
            await asyncio.sleep(self.delays[operation])
        if operation in self.on_call:
            await self.on_call[operation]()
        if operation in self.failures:
            raise self.failures[operation]

    def count(self, operation: str) -> int:
        return self.calls.count(operation)

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        await self._enter("get_contact")
        return self.contacts.get(contact_id)

    async def create_contact(self, fields: ContactFields) -> str:
        await self._enter("create_contact")
        contact_id = f"contact-{len(self.contacts) + 1}"
        self.contacts[contact_id] = {"id": contact_id, "Email": fields.email, "Last_Name": fields.last_name}
        return contact_id

    async def update_contact(self, contact_id: str, fields: ContactFields) -> str:
        await self._enter("update_contact")
        self.contacts[contact_id] = {"id": contact_id, "Email": fields.email, "Last_Name": fields.last_name}
        return contact_id

    async def create_sales_order(self, contact_id: str, order: SalesOrderRequest) -> str:
        await self._enter("create_sales_order")
        order_id = f"so-{len(self.sales_orders) + 1}"
        self.sales_orders[order_id] = {"id": order_id, "contact_id": contact_id, "subject": order.subject}
        return order_id

    async def search_related(self, entity: RelatedEntity, criteria: str) -> List[Dict[str, Any]]:
        await self._enter(f"search_{entity.name.lower()}")
        if entity is RelatedEntity.CONTACTS:
            return [contact for contact in self.contacts.values() if f":{contact['Email']})" in criteria]
        return list(self.related.get(entity, []))


class FakeSigner(ESignatureProvider):
    def __init__(self, envelope_id: str = "env-1"):
        super().__init__()
        self.envelope_id = envelope_id
        self.requests: List[Dict[str, Any]] = []

    def _get_provider_type(self) -> ESignatureType:
        return ESignatureType.DOCUSIGN

    async def create_envelope_signing_url(
        self, signer: SignerInfo, template_fields: Dict[str, str], return_url: str, **kwargs
    ) -> SigningUrlInfo:
        self.requests.append({"signer": signer, "fields": template_fields, "return_url": return_url})
        return SigningUrlInfo(url=f"https://sign.example.com/{self.envelope_id}", envelope_id=self.envelope_id)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        raise NotImplementedError


@pytest.fixture
def fake_crm() -> FakeCRM:
    return FakeCRM()


@pytest.fixture
def fake_signer() -> FakeSigner:
    return FakeSigner()


@pytest.fixture
def crm_error():
    return lambda code="api_error": CRMError("CRM unavailable", code, "zoho_crm", status_code=503)


@pytest_asyncio.fixture
async def customer(db_session) -> User:
    user = User(email="ada@example.com", full_name="Ada Lovelace", hashed_password="x", roles=["customer"])
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def identity(customer) -> Identity:
    return Identity.from_user(customer)


@pytest_asyncio.fixture
async def make_checkout(db_session, customer):
    """
    Build a checkout session in a given state.

    The defaults describe a session that has been paid but whose agreement
    has only been sent.
    """
    user_id, email = customer.id, customer.email

    async def _make(
        *,
        status: CheckoutStatus = CheckoutStatus.PAYMENT_COMPLETED,
        agreement_status: AgreementStatus = AgreementStatus.SENT,
        envelope_id: Optional[str] = "env-1",
        payment_reference: Optional[str] = "pi_123",
        invoice_reference: Optional[str] = None,
        with_company: bool = True,
        sales_order_external_id: Optional[str] = None,
        contact_id: Optional[str] = None,
    ) -> CheckoutSession:
        checkout = CheckoutSession(
            user_id=user_id,
            status=status,
            module="Zoho Integration",
            payment_reference=payment_reference,
            invoice_reference=invoice_reference,
            company_info=(
                CompanyInfo(company_name="Analytical Engines Ltd", contact_name="Ada Lovelace", email=email)
                if with_company
                else None
            ),
            agreement=AgreementSignatureStatus(
                status=agreement_status,
                envelope_id=envelope_id,
                completed_at=datetime.now(timezone.utc) if agreement_status == AgreementStatus.COMPLETED else None,
            ),
            sales_order=SalesOrder(amount=Decimal("499.00"), currency="USD", external_id=sales_order_external_id),
        )
        db_session.add(checkout)
        if contact_id is not None:
            db_session.add(ZohoAccountLink(user_id=user_id, contact_id=contact_id))
        await db_session.commit()
        return checkout

    return _make


@pytest.fixture
def reload(db_session):
    """Re-read a session and its sub-records from the database."""

    async def _reload(checkout_id: str) -> CheckoutSession:
        db_session.expire_all()
        return await get_checkout_session(db_session, checkout_id)

    return _reload
