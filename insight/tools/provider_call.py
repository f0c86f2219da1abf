"""Bounded external calls.

Every call to an embedding, rerank, synthesis or storage provider goes
through ``call_provider`` so it carries a timeout and fails with a typed
error. A timeout is reported as ``ProviderTimeout``; any other failure as
``ProviderRejected``. Cancellation is never converted.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, TypeVar

import structlog

from libs.common.errors import InsightError, ProviderRejected, ProviderTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_provider(provider: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a provider call with a timeout and typed failures.

    Args:
        provider: Short provider label used in errors and logs (e.g. "embedding")
        awaitable: The provider coroutine
        timeout: Timeout in seconds

    Returns:
        The provider's result

    Raises:
        ProviderTimeout: The call did not finish in time
        ProviderRejected: The call raised
    """
    start_time = time.time()
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Provider call timed out", provider=provider, timeout_s=timeout)
        raise ProviderTimeout(provider, timeout)
    except InsightError:
        raise
    except Exception as e:
        logger.warning(
            "Provider call failed",
            provider=provider,
            error=str(e),
            error_type=type(e).__name__,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        raise ProviderRejected(provider, str(e) or type(e).__name__) from e
