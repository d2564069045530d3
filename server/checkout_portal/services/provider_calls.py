from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from checkout_portal.core.errors import ProviderCallError
from checkout_portal.core.logging import get_logger
from checkout_portal.integrations.billing import BillingError
from checkout_portal.integrations.crm import CRMError
from checkout_portal.integrations.esignature import SignatureError

logger = get_logger(__name__)

T = TypeVar("T")

ADAPTER_ERRORS = (CRMError, SignatureError, BillingError)


async def call_provider(
    awaitable: Awaitable[T],
    *,
    provider: str,
    operation: str,
    timeout: float,
    correlation_id: str | None = None,
) -> T:
    """
    Await a single provider call with an upper time bound.

    Timeouts and adapter errors become ``ProviderCallError``; nothing is
    retried here.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.warning("provider.call.timeout", provider=provider, operation=operation, timeout=timeout)
        raise ProviderCallError(
            f"{provider} {operation} timed out after {timeout}s",
            error_code="timeout",
            provider=provider,
            correlation_id=correlation_id,
            details={"operation": operation},
        ) from exc
    except ADAPTER_ERRORS as exc:
        logger.warning(
            "provider.call.failed",
            provider=provider,
            operation=operation,
            error_code=exc.error_code,
            error=exc.error_message,
        )
        raise ProviderCallError(
            f"{provider} {operation} failed",
            error_code=exc.error_code or "provider_error",
            provider=provider,
            correlation_id=correlation_id,
            details={"operation": operation, "provider_message": exc.error_message},
        ) from exc
