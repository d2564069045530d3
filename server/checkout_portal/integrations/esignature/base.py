"""
E-signature Base Classes and Interfaces

Defines the contract the checkout flow uses to start a signing ceremony and
to authenticate signature-provider webhooks.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class ESignatureType(str, Enum):
    """Supported e-signature provider types."""
    DOCUSIGN = "docusign"


@dataclass
class SignerInfo:
    """The person asked to sign the agreement."""
    name: str
    email: str
    client_user_id: str
    role_name: str = "Customer"


@dataclass
class SigningUrlInfo:
    """Information for embedded signing."""
    url: str
    envelope_id: str
    expires_at: Optional[datetime] = None
    recipient_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class SignatureError(Exception):
    """E-signature provider specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        envelope_id: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.provider_response = provider_response
        self.envelope_id = envelope_id


class ESignatureProvider(ABC):
    """Abstract base class for e-signature providers."""

    def __init__(self, **config):
        self.config = config
        self.provider_type = self._get_provider_type()

    @abstractmethod
    def _get_provider_type(self) -> ESignatureType:
        pass

    @abstractmethod
    async def create_envelope_signing_url(
        self,
        signer: SignerInfo,
        template_fields: Dict[str, str],
        return_url: str,
        **kwargs
    ) -> SigningUrlInfo:
        """
        Create an envelope from the agreement template and open an embedded
        signing view for the signer.

        Args:
            signer: Who signs
            template_fields: Text tab values prefilled on the template
            return_url: Where the provider redirects after the ceremony

        Returns:
            SigningUrlInfo carrying the signing URL and the envelope id

        Raises:
            SignatureError: If envelope creation or the signing view fails
        """

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate and parse a webhook body.

        Raises:
            SignatureError: If the signature is missing or invalid, or the
                body is not JSON
        """

    async def close(self) -> None:
        """Release network resources held by the adapter."""
