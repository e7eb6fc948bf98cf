"""
HTTP error mapping shared by provider adapters.

429, 5xx and network failures are transient. Every other non-2xx status
(401/403 for rejected credentials or consent, 400/404 for bad requests) is
permanent.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx

from ..errors import ProviderPermanentError, ProviderTransientError

logger = logging.getLogger(__name__)


def _retry_after(response: httpx.Response) -> Optional[int]:
    value = response.headers.get("Retry-After")
    if value and value.isdigit():
        return int(value)
    return None


def raise_for_provider_status(response: httpx.Response, provider_id: str, operation: str) -> None:
    """Translate a non-2xx provider response into the engine's error types."""
    if response.is_success:
        return

    status = response.status_code
    # Response bodies go to the log only; they never reach user-facing messages
    logger.error(f"{provider_id} {operation} failed - Status: {status}, Body: {response.text[:500]}")

    context = {"provider_id": provider_id, "operation": operation, "status_code": status}

    if status == 429 or status >= 500:
        raise ProviderTransientError(
            f"{provider_id} {operation} returned {status}",
            context=context,
            retry_after=_retry_after(response)
        )

    raise ProviderPermanentError(
        f"{provider_id} {operation} returned {status}",
        context=context
    )


@asynccontextmanager
async def provider_call(provider_id: str, operation: str):
    """Wrap an httpx exchange so network failures surface as transient errors."""
    try:
        yield
    except httpx.TimeoutException as e:
        raise ProviderTransientError(
            f"{provider_id} {operation} timed out",
            context={"provider_id": provider_id, "operation": operation},
            original_exception=e
        )
    except httpx.TransportError as e:
        raise ProviderTransientError(
            f"{provider_id} {operation} network error: {e}",
            context={"provider_id": provider_id, "operation": operation},
            original_exception=e
        )
