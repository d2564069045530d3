"""
DocuSign adapter tests: Connect signature verification and configuration guards.
"""

import json

import pytest

from checkout_portal.integrations.esignature import DocuSignAdapter, ESignatureType, SignatureError, SignerInfo
from checkout_portal.integrations.esignature.docusign_adapter import compute_connect_signature


class TestDocuSignAdapter:
    @pytest.fixture
    def docusign_config(self):
        return {
            "base_url": "https://demo.docusign.net/",
            "account_id": "123456789",
            "access_token": "test_access_token",
            "template_id": "tmpl-1",
            "webhook_secret": "connect-key",
        }

    @pytest.fixture
    def docusign_adapter(self, docusign_config):
        return DocuSignAdapter(**docusign_config)

    def test_adapter_initialization(self, docusign_adapter):
        assert docusign_adapter.provider_type == ESignatureType.DOCUSIGN
        assert docusign_adapter.envelopes_endpoint == (
            "https://demo.docusign.net/restapi/v2.1/accounts/123456789/envelopes"
        )
        # Session is created lazily
        assert docusign_adapter._session is None

    def test_valid_connect_signature(self, docusign_adapter):
        body = json.dumps({"event": "envelope-completed", "data": {"envelopeId": "env-1"}}).encode()

        parsed = docusign_adapter.verify_webhook(body, compute_connect_signature(body, "connect-key"))

        assert parsed["data"]["envelopeId"] == "env-1"

    def test_signature_over_different_body(self, docusign_adapter):
        signature = compute_connect_signature(b'{"event": "envelope-sent"}', "connect-key")

        with pytest.raises(SignatureError) as excinfo:
            docusign_adapter.verify_webhook(b'{"event": "envelope-completed"}', signature)

        assert excinfo.value.error_code == "webhook_signature_invalid"

    def test_missing_signature(self, docusign_adapter):
        with pytest.raises(SignatureError) as excinfo:
            docusign_adapter.verify_webhook(b"{}", None)

        assert excinfo.value.error_code == "webhook_signature_missing"

    def test_signed_body_that_is_not_json(self, docusign_adapter):
        body = b"<xml/>"

        with pytest.raises(SignatureError) as excinfo:
            docusign_adapter.verify_webhook(body, compute_connect_signature(body, "connect-key"))

        assert excinfo.value.error_code == "webhook_json_invalid"

    async def test_signing_requires_configuration(self, docusign_config):
        adapter = DocuSignAdapter(**{**docusign_config, "template_id": None})

        with pytest.raises(SignatureError) as excinfo:
            await adapter.create_envelope_signing_url(
                SignerInfo(name="Ada Lovelace", email="ada@example.com", client_user_id="u-1"),
                {"company_name": "Engines"},
                "https://portal.example.com/done",
            )

        assert excinfo.value.error_code == "NOT_CONFIGURED"
