"""
Webhook pipeline tests, driven through process_webhook with decoded payloads.
"""

import pytest
from sqlalchemy import func, select

from checkout_portal.models import (
    AgreementStatus,
    AuditCategory,
    AuditLog,
    CheckoutStatus,
    EventOutbox,
    ProcessedEvent,
)
from checkout_portal.schemas.webhook import WebhookOutcome
from checkout_portal.services.normalizer import Provider
from checkout_portal.services.reconciliation_service import process_webhook


def envelope_event(event="envelope-completed", envelope_id="env-1", event_id="ds-1"):
    return {
        "event": event,
        "eventId": event_id,
        "generatedDateTime": "2026-10-18T10:00:00Z",
        "data": {"envelopeId": envelope_id},
    }


def payment_intent_event(event_type="payment_intent.succeeded", intent_id="pi_123", event_id="evt_1", **extra):
    return {
        "id": event_id,
        "type": event_type,
        "created": 1760000000,
        "data": {"object": {"id": intent_id, "object": "payment_intent", "amount": 49900, **extra}},
    }


async def alerts(db_session, action):
    result = await db_session.execute(
        select(AuditLog).where(AuditLog.category == AuditCategory.OPERATOR_ALERT, AuditLog.action == action)
    )
    return result.scalars().all()


async def outbox_types(db_session):
    return sorted((await db_session.execute(select(EventOutbox.event_type))).scalars().all())


class TestAgreementWebhooks:
    async def test_duplicate_envelope_completed_provisions_once(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout()
        checkout_id = checkout.id

        first = await process_webhook(db_session, Provider.DOCUSIGN, envelope_event(), crm=fake_crm)
        second = await process_webhook(db_session, Provider.DOCUSIGN, envelope_event(), crm=fake_crm)

        assert first.outcome is WebhookOutcome.PROCESSED
        assert first.provisioning.status == CheckoutStatus.COMPLETED
        assert second.outcome is WebhookOutcome.DUPLICATE
        assert fake_crm.count("create_contact") == 1
        assert fake_crm.count("create_sales_order") == 1

        stored = await reload(checkout_id)
        assert stored.status == CheckoutStatus.COMPLETED
        assert stored.agreement.status == AgreementStatus.COMPLETED
        ledger_rows = await db_session.scalar(select(func.count()).select_from(ProcessedEvent))
        assert ledger_rows == 1

    async def test_late_sent_does_not_regress_completed_agreement(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING)
        checkout_id = checkout.id

        completed = await process_webhook(db_session, Provider.DOCUSIGN, envelope_event(event_id="ds-1"), crm=fake_crm)
        late = await process_webhook(
            db_session, Provider.DOCUSIGN, envelope_event("envelope-sent", event_id="ds-0"), crm=fake_crm
        )

        assert completed.outcome is WebhookOutcome.PROCESSED
        assert late.outcome is WebhookOutcome.IGNORED
        stored = await reload(checkout_id)
        assert stored.agreement.status == AgreementStatus.COMPLETED
        assert stored.agreement.completed_at is not None
        assert stored.status == CheckoutStatus.PENDING
        assert fake_crm.calls == []

    async def test_declined_after_completed_is_a_conflict(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING, agreement_status=AgreementStatus.COMPLETED)
        checkout_id = checkout.id

        result = await process_webhook(
            db_session, Provider.DOCUSIGN, envelope_event("envelope-declined", event_id="ds-9"), crm=fake_crm
        )

        assert result.outcome is WebhookOutcome.CONFLICT
        assert result.checkout_session_id == checkout_id
        stored = await reload(checkout_id)
        assert stored.agreement.status == AgreementStatus.COMPLETED
        assert len(await alerts(db_session, "webhook.state_conflict")) == 1

    async def test_unknown_envelope_is_acknowledged_and_alerted(self, db_session, fake_crm, make_checkout):
        await make_checkout()

        result = await process_webhook(
            db_session, Provider.DOCUSIGN, envelope_event(envelope_id="env-unknown"), crm=fake_crm
        )
        redelivery = await process_webhook(
            db_session, Provider.DOCUSIGN, envelope_event(envelope_id="env-unknown"), crm=fake_crm
        )

        assert result.outcome is WebhookOutcome.NOT_FOUND
        assert redelivery.outcome is WebhookOutcome.DUPLICATE
        (alert,) = await alerts(db_session, "webhook.correlation_missing")
        assert alert.critical
        assert alert.details["correlation_id"] == "env-unknown"
        assert fake_crm.calls == []

    async def test_partial_signature_only_updates_agreement(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout()
        checkout_id = checkout.id

        result = await process_webhook(
            db_session, Provider.DOCUSIGN, envelope_event("recipient-completed", event_id="ds-2"), crm=fake_crm
        )

        assert result.outcome is WebhookOutcome.PROCESSED
        assert result.provisioning is None
        stored = await reload(checkout_id)
        assert stored.agreement.status == AgreementStatus.PARTIALLY_SIGNED
        assert stored.status == CheckoutStatus.PAYMENT_COMPLETED

    async def test_provider_failure_keeps_agreement_and_reports(self, db_session, fake_crm, crm_error, make_checkout, reload):
        checkout = await make_checkout()
        checkout_id = checkout.id
        fake_crm.failures["create_contact"] = crm_error()

        result = await process_webhook(db_session, Provider.DOCUSIGN, envelope_event(), crm=fake_crm)

        assert result.outcome is WebhookOutcome.PROVIDER_ERROR
        assert result.detail == "api_error"
        stored = await reload(checkout_id)
        assert stored.agreement.status == AgreementStatus.COMPLETED
        assert stored.status == CheckoutStatus.PAYMENT_COMPLETED
        assert len(await alerts(db_session, "provisioning.step_failed")) == 1


class TestPaymentWebhooks:
    async def test_payment_before_signature_waits_for_agreement(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING)
        checkout_id = checkout.id
        payload = payment_intent_event(charges={"data": [{"payment_method_details": {"card": {"last4": "4242"}}}]})

        paid = await process_webhook(db_session, Provider.STRIPE, payload, crm=fake_crm)

        assert paid.outcome is WebhookOutcome.PROCESSED
        assert paid.provisioning is None
        stored = await reload(checkout_id)
        assert stored.status == CheckoutStatus.PAYMENT_COMPLETED
        assert stored.card_last4 == "4242"
        assert await outbox_types(db_session) == ["checkout.payment_confirmed"]

        signed = await process_webhook(db_session, Provider.DOCUSIGN, envelope_event(), crm=fake_crm)

        assert signed.outcome is WebhookOutcome.PROCESSED
        assert signed.provisioning.status == CheckoutStatus.COMPLETED
        assert (await reload(checkout_id)).status == CheckoutStatus.COMPLETED

    async def test_payment_after_signature_provisions(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING, agreement_status=AgreementStatus.COMPLETED)
        checkout_id = checkout.id

        result = await process_webhook(db_session, Provider.STRIPE, payment_intent_event(), crm=fake_crm)

        assert result.outcome is WebhookOutcome.PROCESSED
        assert result.provisioning.steps_performed == ["contact", "sales_order", "complete"]
        assert (await reload(checkout_id)).status == CheckoutStatus.COMPLETED
        assert await outbox_types(db_session) == ["checkout.completed", "checkout.payment_confirmed"]

    async def test_repeated_payment_success_is_ignored(self, db_session, fake_crm, make_checkout):
        await make_checkout(status=CheckoutStatus.PAYMENT_COMPLETED)

        result = await process_webhook(db_session, Provider.STRIPE, payment_intent_event(event_id="evt_2"), crm=fake_crm)

        assert result.outcome is WebhookOutcome.IGNORED
        assert await outbox_types(db_session) == []

    async def test_payment_failed_notifies_customer(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING)
        checkout_id = checkout.id
        payload = payment_intent_event(
            "payment_intent.payment_failed", last_payment_error={"message": "card declined"}
        )

        result = await process_webhook(db_session, Provider.STRIPE, payload, crm=fake_crm)

        assert result.outcome is WebhookOutcome.PROCESSED
        assert (await reload(checkout_id)).status == CheckoutStatus.PAYMENT_FAILED
        (notification,) = (await db_session.execute(select(EventOutbox))).scalars().all()
        assert notification.event_type == "checkout.payment_failed"
        assert notification.payload["reason"] == "card declined"
        assert notification.payload["recipient"] == "ada@example.com"

    async def test_payment_for_cancelled_session_is_a_conflict(self, db_session, fake_crm, make_checkout):
        checkout = await make_checkout(status=CheckoutStatus.CANCELLED)
        checkout_id = checkout.id

        result = await process_webhook(db_session, Provider.STRIPE, payment_intent_event(), crm=fake_crm)

        assert result.outcome is WebhookOutcome.CONFLICT
        (alert,) = await alerts(db_session, "webhook.state_conflict")
        assert alert.checkout_session_id == checkout_id

    async def test_refund_moves_session_to_refunded(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PAYMENT_COMPLETED)
        checkout_id = checkout.id
        payload = {
            "id": "evt_r1",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_1", "object": "charge", "payment_intent": "pi_123", "amount_refunded": 49900}},
        }

        result = await process_webhook(db_session, Provider.STRIPE, payload, crm=fake_crm)

        assert result.outcome is WebhookOutcome.PROCESSED
        assert (await reload(checkout_id)).status == CheckoutStatus.REFUNDED
        assert await outbox_types(db_session) == ["checkout.refund_processed"]

    async def test_unknown_payment_intent(self, db_session, fake_crm, make_checkout):
        await make_checkout()

        result = await process_webhook(
            db_session, Provider.STRIPE, payment_intent_event(intent_id="pi_other"), crm=fake_crm
        )

        assert result.outcome is WebhookOutcome.NOT_FOUND


class TestZohoBillingWebhooks:
    async def test_invoice_paid_correlates_by_invoice(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING, payment_reference=None, invoice_reference="inv-1")
        checkout_id = checkout.id
        payload = {"event_id": "zb-1", "event_type": "invoice.paid", "data": {"invoice_id": "inv-1", "amount": 499}}

        result = await process_webhook(db_session, Provider.ZOHO_BILLING, payload, crm=fake_crm)

        assert result.outcome is WebhookOutcome.PROCESSED
        assert (await reload(checkout_id)).status == CheckoutStatus.PAYMENT_COMPLETED

    async def test_invoice_voided_cancels_once(self, db_session, fake_crm, make_checkout, reload):
        checkout = await make_checkout(status=CheckoutStatus.PENDING, payment_reference=None, invoice_reference="inv-1")
        checkout_id = checkout.id

        first = await process_webhook(
            db_session,
            Provider.ZOHO_BILLING,
            {"event_id": "zb-2", "event_type": "invoice.voided", "data": {"invoice_id": "inv-1"}},
            crm=fake_crm,
        )
        second = await process_webhook(
            db_session,
            Provider.ZOHO_BILLING,
            {"event_id": "zb-3", "event_type": "invoice.voided", "data": {"invoice_id": "inv-1"}},
            crm=fake_crm,
        )

        assert first.outcome is WebhookOutcome.PROCESSED
        assert second.outcome is WebhookOutcome.IGNORED
        assert (await reload(checkout_id)).status == CheckoutStatus.CANCELLED
        assert await outbox_types(db_session) == ["checkout.order_cancelled"]


class TestUnprocessableDeliveries:
    async def test_unhandled_event_type_leaves_no_ledger_row(self, db_session, fake_crm):
        payload = {"id": "evt_x", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}

        result = await process_webhook(db_session, Provider.STRIPE, payload, crm=fake_crm)

        assert result.outcome is WebhookOutcome.IGNORED
        assert await db_session.scalar(select(func.count()).select_from(ProcessedEvent)) == 0

    @pytest.mark.parametrize(
        "payload",
        [
            {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}},
            {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}},
        ],
    )
    async def test_malformed_payload_is_invalid(self, db_session, fake_crm, payload):
        result = await process_webhook(db_session, Provider.STRIPE, payload, crm=fake_crm)

        assert result.outcome is WebhookOutcome.INVALID
        assert result.detail
