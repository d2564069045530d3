"""
Error taxonomy for the reconciliation core.

Webhook-path errors are converted into acknowledgements by the pipeline;
only ``AuthenticityError`` is ever surfaced to a provider as a rejection.
"""

from typing import Any, Dict, Optional


class ReconciliationError(Exception):
    """Base class for typed failures raised by the reconciliation core."""

    error_code = "reconciliation_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        correlation_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_message = message
        if error_code is not None:
            self.error_code = error_code
        self.provider = provider
        self.correlation_id = correlation_id
        self.details = details or {}


class WebhookValidationError(ReconciliationError):
    """Webhook payload is malformed or lacks its correlation id."""

    error_code = "invalid_payload"


class AuthenticityError(ReconciliationError):
    """Webhook signature is missing or does not verify."""

    error_code = "invalid_signature"


class DuplicateEvent(ReconciliationError):
    """The (provider, event id) pair was already admitted."""

    error_code = "duplicate_event"


class NotFoundError(ReconciliationError):
    """The local record correlated with an event does not exist."""

    error_code = "not_found"


class ProviderCallError(ReconciliationError):
    """A downstream provider call timed out or failed."""

    error_code = "provider_error"


class StateConflictError(ReconciliationError):
    """The requested change violates the lifecycle ordering."""

    error_code = "state_conflict"


class NoLinkedContact(ReconciliationError):
    """The user has no CRM contact to bind a magic link to."""

    error_code = "no_linked_contact"


class RedemptionError(ReconciliationError):
    error_code = "redemption_error"


class LinkNotFound(RedemptionError):
    error_code = "not_found"


class LinkExpired(RedemptionError):
    error_code = "expired"


class UsageExceeded(RedemptionError):
    error_code = "usage_exceeded"
