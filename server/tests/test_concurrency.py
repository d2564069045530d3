"""
Concurrent redemption and provisioning against a file-backed SQLite database,
so every task works through its own connection.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkout_portal.core.errors import StateConflictError, UsageExceeded
from checkout_portal.core.identity import Identity
from checkout_portal.db.base import Base
from checkout_portal.models import (
    AgreementSignatureStatus,
    AgreementStatus,
    AuditCategory,
    AuditLog,
    CheckoutSession,
    CheckoutStatus,
    CompanyInfo,
    SalesOrder,
    SignupLink,
    User,
    ZohoAccountLink,
)
from checkout_portal.services.checkout_service import get_checkout_session
from checkout_portal.services.magic_link_service import consume_signup_link, issue_signup_link
from checkout_portal.services.provisioning_service import provision_checkout


@pytest_asyncio.fixture
async def file_sessions(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def buyer(file_sessions) -> User:
    async with file_sessions() as session:
        user = User(email="ada@example.com", full_name="Ada Lovelace", hashed_password="x", roles=["customer"])
        session.add(user)
        await session.commit()
        return user


@pytest_asyncio.fixture
async def paid_and_signed(file_sessions, buyer) -> str:
    async with file_sessions() as session:
        checkout = CheckoutSession(
            user_id=buyer.id,
            status=CheckoutStatus.PAYMENT_COMPLETED,
            module="Zoho Integration",
            payment_reference="pi_123",
            company_info=CompanyInfo(
                company_name="Analytical Engines Ltd", contact_name="Ada Lovelace", email=buyer.email
            ),
            agreement=AgreementSignatureStatus(
                status=AgreementStatus.COMPLETED,
                envelope_id="env-1",
                completed_at=datetime.now(timezone.utc),
            ),
            sales_order=SalesOrder(amount=Decimal("499.00"), currency="USD"),
        )
        session.add(checkout)
        await session.commit()
        return checkout.id


class TestConcurrentProvisioning:
    async def test_overlapping_runs_provision_once(self, file_sessions, paid_and_signed, fake_crm):
        fake_crm.delays["create_contact"] = 0.2

        async def run():
            async with file_sessions() as session:
                return await provision_checkout(session, paid_and_signed, crm=fake_crm)

        results = await asyncio.gather(run(), run())

        assert fake_crm.count("create_contact") == 1
        assert fake_crm.count("create_sales_order") == 1
        assert len(fake_crm.contacts) == 1
        assert sum(result.steps_performed.count("contact") for result in results) == 1
        async with file_sessions() as session:
            stored = await get_checkout_session(session, paid_and_signed)
            assert stored.status == CheckoutStatus.COMPLETED
            assert stored.provisioning_claim is None
            assert await session.scalar(select(func.count()).select_from(ZohoAccountLink)) == 1

    async def test_live_claim_makes_a_run_skip(self, file_sessions, paid_and_signed, fake_crm):
        async with file_sessions() as session:
            stored = await get_checkout_session(session, paid_and_signed)
            stored.provisioning_claim = "other-run"
            stored.provisioning_claimed_at = datetime.now(timezone.utc)
            await session.commit()

            result = await provision_checkout(session, paid_and_signed, crm=fake_crm)

        assert result.skipped
        assert fake_crm.calls == []

    async def test_stale_claim_is_taken_over(self, file_sessions, paid_and_signed, fake_crm):
        async with file_sessions() as session:
            stored = await get_checkout_session(session, paid_and_signed)
            stored.provisioning_claim = "crashed-run"
            stored.provisioning_claimed_at = datetime.now(timezone.utc) - timedelta(days=1)
            await session.commit()

            result = await provision_checkout(session, paid_and_signed, crm=fake_crm)

        assert not result.skipped
        assert result.status == CheckoutStatus.COMPLETED
        assert fake_crm.count("create_contact") == 1

    async def test_link_taken_by_concurrent_run_is_a_conflict(self, file_sessions, buyer, paid_and_signed, fake_crm):
        async def link_from_other_run():
            async with file_sessions() as other:
                other.add(ZohoAccountLink(user_id=buyer.id, contact_id="contact-other-run"))
                await other.commit()

        fake_crm.on_call["create_contact"] = link_from_other_run

        async with file_sessions() as session:
            with pytest.raises(StateConflictError) as excinfo:
                await provision_checkout(session, paid_and_signed, crm=fake_crm)

        assert excinfo.value.error_code == "provisioning_race"
        async with file_sessions() as session:
            stored = await get_checkout_session(session, paid_and_signed)
            assert stored.status == CheckoutStatus.PAYMENT_COMPLETED
            assert stored.provisioning_claim is None
            alert = (
                await session.execute(select(AuditLog).where(AuditLog.category == AuditCategory.OPERATOR_ALERT))
            ).scalars().one()
            assert alert.action == "provisioning.step_failed"
            assert alert.details["error_code"] == "provisioning_race"


class TestConcurrentRedemption:
    @pytest_asyncio.fixture
    async def single_use_code(self, file_sessions, buyer) -> str:
        async with file_sessions() as session:
            session.add(ZohoAccountLink(user_id=buyer.id, contact_id="contact-42"))
            await session.commit()
            link = await issue_signup_link(session, Identity.from_user(buyer), max_uses=1)
            await session.commit()
            return link.login_code

    async def test_single_use_link_is_redeemed_once(self, file_sessions, single_use_code):
        async def redeem():
            async with file_sessions() as session:
                return await consume_signup_link(session, "contact-42", single_use_code)

        results = await asyncio.gather(redeem(), redeem(), return_exceptions=True)

        assert len([result for result in results if isinstance(result, SignupLink)]) == 1
        assert len([result for result in results if isinstance(result, UsageExceeded)]) == 1
        async with file_sessions() as session:
            stored = (await session.execute(select(SignupLink))).scalars().one()
            assert stored.usage_count == 1
            assert stored.is_active is False
