from enum import Enum

from pydantic import BaseModel


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PROVIDER_ERROR = "provider_error"


class WebhookAck(BaseModel):
    received: bool = True
    outcome: WebhookOutcome
