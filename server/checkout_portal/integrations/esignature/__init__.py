"""
E-signature integration modules
"""

from .base import (
    ESignatureProvider,
    ESignatureType,
    SignatureError,
    SignerInfo,
    SigningUrlInfo,
)
from .docusign_adapter import DocuSignAdapter

__all__ = [
    "DocuSignAdapter",
    "ESignatureProvider",
    "ESignatureType",
    "SignatureError",
    "SignerInfo",
    "SigningUrlInfo",
]
