"""
HTTP surface tests: webhooks with real signature checks, the magic-link
routes and the checkout session flow.
"""

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from checkout_portal.api.dependencies.auth import get_current_user
from checkout_portal.api.dependencies.database import get_db
from checkout_portal.api.dependencies.providers import (
    get_crm_client,
    get_signature_provider,
    get_stripe_billing,
    get_zoho_billing,
)
from checkout_portal.api.dependencies.redis import get_redis_client
from checkout_portal.api.routes.magic_links import REDEMPTION_ERRORS
from checkout_portal.core.errors import RedemptionError
from checkout_portal.integrations.billing import StripeAdapter, ZohoBillingAdapter
from checkout_portal.integrations.crm import RelatedEntity
from checkout_portal.integrations.esignature import DocuSignAdapter
from checkout_portal.main import app
from checkout_portal.models import AgreementStatus, CheckoutStatus, SignupLink, User, ZohoAccountLink

STRIPE_SECRET = "whsec_test"
DOCUSIGN_SECRET = "docusign-connect-key"
ZOHO_SECRET = "zoho-billing-key"


def stripe_signature(payload: bytes, secret: str = STRIPE_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    return f"t={timestamp},v1={hmac.new(secret.encode('utf-8'), signed, hashlib.sha256).hexdigest()}"


def docusign_signature(payload: bytes, secret: str = DOCUSIGN_SECRET) -> str:
    return base64.b64encode(hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()).decode("ascii")


def zoho_signature(payload: bytes, secret: str = ZOHO_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def as_body(data) -> bytes:
    return json.dumps(data).encode("utf-8")


@pytest.fixture
def signature_provider(fake_signer):
    """Real DocuSign verification with the fake envelope creator."""
    adapter = DocuSignAdapter(
        base_url="https://demo.docusign.net",
        account_id=None,
        access_token=None,
        webhook_secret=DOCUSIGN_SECRET,
    )
    adapter.create_envelope_signing_url = fake_signer.create_envelope_signing_url
    return adapter


@pytest.fixture
def auth_state(customer):
    return {"user": customer}


@pytest.fixture
def act_as(auth_state):
    return lambda user: auth_state.update(user=user)


@pytest_asyncio.fixture
async def client(db_session, fake_crm, signature_provider, auth_state):
    async def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_crm_client] = lambda: fake_crm
    app.dependency_overrides[get_signature_provider] = lambda: signature_provider
    app.dependency_overrides[get_stripe_billing] = lambda: StripeAdapter(api_key=None, webhook_secret=STRIPE_SECRET)
    app.dependency_overrides[get_zoho_billing] = lambda: ZohoBillingAdapter(
        base_url="https://billing.example.com", organization_id=None, auth_token=None, webhook_secret=ZOHO_SECRET
    )
    app.dependency_overrides[get_redis_client] = lambda: None
    app.dependency_overrides[get_current_user] = lambda: auth_state["user"]

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http:
        yield http

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def operator(db_session):
    user = User(email="ops@example.com", full_name="Grace Hopper", hashed_password="x", roles=["operator"])
    db_session.add(user)
    await db_session.commit()
    return user


async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestWebhookRoutes:
    async def test_docusign_completed_provisions(self, client, make_checkout, reload, fake_crm):
        checkout = await make_checkout()
        checkout_id = checkout.id
        body = as_body({"event": "envelope-completed", "eventId": "ds-1", "data": {"envelopeId": "env-1"}})

        response = await client.post(
            "/webhooks/docusign", content=body, headers={"X-DocuSign-Signature-1": docusign_signature(body)}
        )
        replay = await client.post(
            "/webhooks/docusign", content=body, headers={"X-DocuSign-Signature-1": docusign_signature(body)}
        )

        assert response.status_code == 200
        assert response.json() == {"received": True, "outcome": "processed"}
        assert replay.json()["outcome"] == "duplicate"
        assert (await reload(checkout_id)).status == CheckoutStatus.COMPLETED
        assert fake_crm.count("create_sales_order") == 1

    @pytest.mark.parametrize("headers", [{}, {"X-DocuSign-Signature-1": "bm90LXZhbGlk"}])
    async def test_docusign_bad_signature(self, client, make_checkout, reload, headers):
        checkout = await make_checkout()
        checkout_id = checkout.id
        body = as_body({"event": "envelope-completed", "eventId": "ds-1", "data": {"envelopeId": "env-1"}})

        response = await client.post("/webhooks/docusign", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json() == {"error": "Invalid signature"}
        assert (await reload(checkout_id)).agreement.status == AgreementStatus.SENT

    async def test_signed_non_json_body_is_acknowledged_as_invalid(self, client):
        body = b"not json"

        response = await client.post(
            "/webhooks/docusign", content=body, headers={"X-DocuSign-Signature-1": docusign_signature(body)}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "invalid"

    async def test_stripe_payment_succeeded(self, client, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING)
        checkout_id = checkout.id
        body = as_body(
            {
                "id": "evt_1",
                "object": "event",
                "type": "payment_intent.succeeded",
                "data": {"object": {"id": "pi_123", "object": "payment_intent", "amount": 49900}},
            }
        )

        response = await client.post("/webhooks/stripe", content=body, headers={"Stripe-Signature": stripe_signature(body)})

        assert response.status_code == 200
        assert response.json()["outcome"] == "processed"
        assert (await reload(checkout_id)).status == CheckoutStatus.PAYMENT_COMPLETED

    async def test_stripe_signature_with_wrong_secret(self, client):
        body = as_body({"id": "evt_1", "object": "event", "type": "payment_intent.succeeded", "data": {"object": {}}})

        response = await client.post(
            "/webhooks/stripe", content=body, headers={"Stripe-Signature": stripe_signature(body, "whsec_other")}
        )

        assert response.status_code == 401

    async def test_zoho_invoice_paid(self, client, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING, payment_reference=None, invoice_reference="inv-1")
        checkout_id = checkout.id
        body = as_body({"event_id": "zb-1", "event_type": "invoice.paid", "data": {"invoice_id": "inv-1"}})

        response = await client.post(
            "/webhooks/zoho-billing", content=body, headers={"X-Zoho-Webhook-Signature": zoho_signature(body)}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "processed"
        assert (await reload(checkout_id)).status == CheckoutStatus.PAYMENT_COMPLETED

    async def test_zoho_bad_signature(self, client):
        body = as_body({"event_id": "zb-1", "event_type": "invoice.paid", "data": {"invoice_id": "inv-1"}})

        response = await client.post(
            "/webhooks/zoho-billing", content=body, headers={"X-Zoho-Webhook-Signature": zoho_signature(body, "nope")}
        )

        assert response.status_code == 401

    async def test_unknown_envelope_is_acknowledged(self, client):
        body = as_body({"event": "envelope-completed", "eventId": "ds-5", "data": {"envelopeId": "env-404"}})

        response = await client.post(
            "/webhooks/docusign", content=body, headers={"X-DocuSign-Signature-1": docusign_signature(body)}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "not_found"


class TestRedemptionErrorMapping:
    @pytest.mark.parametrize("error_class", RedemptionError.__subclasses__())
    def test_every_redemption_error_has_a_response(self, error_class):
        assert error_class.error_code in REDEMPTION_ERRORS


class TestMagicLinkRoutes:
    @pytest_asyncio.fixture
    async def linked(self, db_session, customer, fake_crm):
        db_session.add(ZohoAccountLink(user_id=customer.id, contact_id="contact-42"))
        await db_session.commit()
        fake_crm.contacts["contact-42"] = {"id": "contact-42", "Email": customer.email}

    async def test_issue_and_redeem(self, client, linked):
        created = await client.post("/magic-links", json={"max_uses": 1})

        assert created.status_code == 201
        link = created.json()
        assert link["url"].endswith(f"/crm-data/contact-42/{link['login_code']}")

        first = await client.get(f"/crm-data/contact-42/{link['login_code']}")
        second = await client.get(f"/crm-data/contact-42/{link['login_code']}")

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert first.json()["data"]["contact"]["id"] == "contact-42"
        assert first.json()["data"]["salesOrders"] == []
        assert second.status_code == 429
        assert second.json() == {"error": "Link has reached its maximum uses"}

    async def test_related_records_on_request(self, client, linked, fake_crm):
        fake_crm.related[RelatedEntity.SALES_ORDERS] = [{"id": "so-1"}]
        link = (await client.post("/magic-links", json={})).json()

        response = await client.get(
            f"/crm-data/contact-42/{link['login_code']}", params={"includeSalesOrders": "true"}
        )

        assert response.status_code == 200
        assert response.json()["data"]["salesOrders"] == [{"id": "so-1"}]
        assert fake_crm.count("search_sales_orders") == 1
        assert fake_crm.count("search_deals") == 0

    async def test_issue_without_contact(self, client):
        response = await client.post("/magic-links", json={})

        assert response.status_code == 409

    async def test_unknown_link(self, client, linked):
        response = await client.get("/crm-data/contact-42/unknown")

        assert response.status_code == 404
        assert response.json() == {"error": "Invalid or unknown link"}

    async def test_expired_link(self, client, db_session, linked):
        link = (await client.post("/magic-links", json={})).json()
        stored = (
            await db_session.execute(select(SignupLink).where(SignupLink.login_code == link["login_code"]))
        ).scalars().one()
        stored.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
        await db_session.commit()

        response = await client.get(f"/crm-data/contact-42/{link['login_code']}")

        assert response.status_code == 410

    async def test_crm_outage(self, client, linked, fake_crm, crm_error):
        link = (await client.post("/magic-links", json={})).json()
        fake_crm.failures["get_contact"] = crm_error()

        response = await client.get(f"/crm-data/contact-42/{link['login_code']}")

        assert response.status_code == 502


class TestCheckoutRoutes:
    async def test_session_flow_up_to_signing(self, client, fake_signer):
        created = await client.post("/checkout-sessions", json={"module": "Zoho Integration", "amount": "499.00"})
        assert created.status_code == 201
        checkout_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        saved = await client.put(
            f"/checkout-sessions/{checkout_id}/company-info",
            json={"company_name": "Analytical Engines Ltd", "contact_name": "Ada Lovelace", "email": "ada@example.com"},
        )
        assert saved.status_code == 200
        assert saved.json()["company_info"]["company_name"] == "Analytical Engines Ltd"

        signing = await client.post(
            f"/checkout-sessions/{checkout_id}/agreement", json={"return_url": "https://portal.example.com/done"}
        )
        assert signing.status_code == 200
        assert signing.json()["envelope_id"] == "env-1"
        assert fake_signer.requests[0]["fields"]["checkout_session_id"] == checkout_id

        fetched = await client.get(f"/checkout-sessions/{checkout_id}")
        assert fetched.json()["agreement"]["envelope_id"] == "env-1"

        listed = await client.get("/checkout-sessions")
        assert [item["id"] for item in listed.json()] == [checkout_id]

    async def test_signing_requires_company_info(self, client):
        created = await client.post("/checkout-sessions", json={"amount": "10.00"})

        response = await client.post(
            f"/checkout-sessions/{created.json()['id']}/agreement", json={"return_url": "https://portal.example.com"}
        )

        assert response.status_code == 409

    async def test_unknown_session(self, client):
        response = await client.get("/checkout-sessions/missing")

        assert response.status_code == 404

    async def test_manual_provision_of_unsigned_session(self, client, make_checkout):
        checkout = await make_checkout()

        response = await client.post(f"/checkout-sessions/{checkout.id}/provision")

        assert response.status_code == 409

    async def test_manual_provision(self, client, make_checkout):
        checkout = await make_checkout(agreement_status=AgreementStatus.COMPLETED)

        response = await client.post(f"/checkout-sessions/{checkout.id}/provision")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        assert response.json()["steps_performed"] == ["contact", "sales_order", "complete"]


class TestOperatorRoutes:
    async def test_sweep_requires_operator(self, client):
        response = await client.post("/provisioning/sweep", json={})

        assert response.status_code == 403

    async def test_sweep(self, client, act_as, operator, make_checkout):
        checkout = await make_checkout(agreement_status=AgreementStatus.COMPLETED)
        checkout_id = checkout.id
        act_as(operator)

        response = await client.post("/provisioning/sweep", json={"limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["examined"] == 1
        assert body["completed"] == 1
        assert body["items"][0]["checkout_session_id"] == checkout_id

    async def test_dispatch_events(self, client, act_as, operator, make_checkout):
        await make_checkout(agreement_status=AgreementStatus.COMPLETED)
        act_as(operator)
        await client.post("/provisioning/sweep", json={})

        response = await client.post("/events/dispatch")

        assert response.status_code == 200
        assert response.json() == {"dispatched": 1}
