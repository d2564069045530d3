"""
DocuSign E-signature Adapter

Creates template envelopes with embedded signing and verifies DocuSign
Connect webhook signatures.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from checkout_portal.core.logging import get_logger

from .base import (
    ESignatureProvider,
    ESignatureType,
    SignatureError,
    SignerInfo,
    SigningUrlInfo,
)

logger = get_logger(__name__)


def compute_connect_signature(payload: bytes, secret: str) -> str:
    """Return the base64 HMAC-SHA256 DocuSign Connect sends in X-DocuSign-Signature-1."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


class DocuSignAdapter(ESignatureProvider):
    """DocuSign e-signature adapter."""

    def __init__(
        self,
        base_url: str,
        account_id: Optional[str],
        access_token: Optional[str],
        template_id: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: float = 10.0,
        **config
    ):
        """
        Initialize DocuSign adapter.

        Args:
            base_url: DocuSign base URL (demo or production)
            account_id: DocuSign account ID
            access_token: OAuth 2.0 access token
            template_id: Agreement template used for every envelope
            webhook_secret: Connect HMAC key
            timeout_seconds: Total timeout for each API call
        """
        super().__init__(base_url=base_url, account_id=account_id, template_id=template_id, **config)
        self.base_url = base_url.rstrip('/')
        self.account_id = account_id
        self.access_token = access_token
        self.template_id = template_id
        self.webhook_secret = webhook_secret

        self.envelopes_endpoint = f"{self.base_url}/restapi/v2.1/accounts/{self.account_id}/envelopes"

        # Session is created lazily to avoid event loop issues during initialization
        self._session: Optional[aiohttp.ClientSession] = None
        self._timeout = ClientTimeout(total=timeout_seconds, connect=min(timeout_seconds, 5.0))

    def _get_provider_type(self) -> ESignatureType:
        return ESignatureType.DOCUSIGN

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                    "Accept": "application/json"
                }
            )
        return self._session

    async def create_envelope_signing_url(
        self,
        signer: SignerInfo,
        template_fields: Dict[str, str],
        return_url: str,
        **kwargs
    ) -> SigningUrlInfo:
        if not (self.access_token and self.account_id and self.template_id):
            raise SignatureError("DocuSign is not configured", "NOT_CONFIGURED", "docusign")

        envelope_payload = {
            "templateId": self.template_id,
            "status": "sent",
            "emailSubject": kwargs.get("email_subject", "Please sign your order agreement"),
            "templateRoles": [
                {
                    "roleName": signer.role_name,
                    "name": signer.name,
                    "email": signer.email,
                    "clientUserId": signer.client_user_id,
                    "tabs": {
                        "textTabs": [
                            {"tabLabel": label, "value": value}
                            for label, value in template_fields.items()
                        ]
                    },
                }
            ],
        }

        try:
            async with self.session.post(self.envelopes_endpoint, json=envelope_payload) as response:
                await self._handle_api_error(response, "create_envelope")
                envelope_data = await response.json()

            envelope_id = envelope_data.get("envelopeId")
            if not envelope_id:
                raise SignatureError("No envelope id returned", "NO_ENVELOPE_ID", "docusign")

            view_payload = {
                "returnUrl": return_url,
                "authenticationMethod": "none",
                "userName": signer.name,
                "email": signer.email,
                "clientUserId": signer.client_user_id,
            }
            async with self.session.post(
                f"{self.envelopes_endpoint}/{envelope_id}/views/recipient", json=view_payload
            ) as response:
                await self._handle_api_error(response, "create_recipient_view")
                view_data = await response.json()

        except aiohttp.ClientError as e:
            logger.error("docusign.request.failed", error=str(e))
            raise SignatureError(
                message=f"Failed to create signing session: {e}",
                error_code="api_error",
                provider="docusign"
            ) from e

        url = view_data.get("url")
        if not url:
            raise SignatureError("No signing URL returned", "NO_URL_RETURNED", "docusign", envelope_id=envelope_id)

        logger.info("docusign.envelope.created", envelope_id=envelope_id)
        return SigningUrlInfo(
            url=url,
            envelope_id=envelope_id,
            # Recipient views are valid for five minutes after creation
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
        )

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise SignatureError("Webhook secret not configured", "webhook_secret_missing", "docusign")
        if not signature:
            raise SignatureError("Missing webhook signature", "webhook_signature_missing", "docusign")

        expected = compute_connect_signature(payload, self.webhook_secret)
        if not hmac.compare_digest(expected, signature.strip()):
            raise SignatureError("Invalid webhook signature", "webhook_signature_invalid", "docusign")

        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SignatureError(f"Invalid webhook JSON: {e}", "webhook_json_invalid", "docusign") from e

    async def _handle_api_error(self, response: aiohttp.ClientResponse, operation: str):
        """Map a DocuSign error response to SignatureError."""
        if response.status in [200, 201, 204]:
            return

        error_message = f"DocuSign API error in {operation}"
        error_code = "api_error"

        try:
            error_data = await response.json()
            error_message = error_data.get("message", error_message)
            error_code = error_data.get("errorCode", error_code)
        except (aiohttp.ContentTypeError, json.JSONDecodeError):
            error_message = await response.text() or error_message

        if response.status == 401:
            raise SignatureError("Authentication failed - check access token", "AUTH_ERROR", "docusign")
        elif response.status == 404:
            raise SignatureError("Template or envelope not found", "NOT_FOUND", "docusign")
        elif response.status == 429:
            retry_after = response.headers.get('Retry-After', '60')
            raise SignatureError(f"Rate limit exceeded, retry after {retry_after}s", "RATE_LIMIT", "docusign")
        elif response.status >= 500:
            raise SignatureError("DocuSign server error", "SERVER_ERROR", "docusign")
        else:
            raise SignatureError(error_message, error_code, "docusign")

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
