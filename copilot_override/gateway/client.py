from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from copilot_override.errors import RequestTimeout, UpstreamTransportFailure
from copilot_override.gateway.context import InboundContext
from copilot_override.gateway.rate_limiter import TokenBucketRateLimiter
from copilot_override.metrics import RequestMetrics

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    multiplier: float = 2.0


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    delay = policy.initial_delay_seconds * (policy.multiplier ** max(0, attempt - 1))
    return min(delay, policy.max_delay_seconds)


def request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    error_repr = repr(exc)
    details: dict[str, Any] = {
        "error": str(exc).strip() or error_repr,
        "error_type": exc.__class__.__name__.strip() or "RequestError",
        "is_timeout": isinstance(exc, httpx.TimeoutException),
    }
    try:
        request = exc.request
    except RuntimeError:
        request = None
    if isinstance(request, httpx.Request):
        details["request_method"] = request.method
        details["request_url"] = str(request.url)
    return details


class ResilientClient:
    """Sends upstream requests behind the shared rate limiter with retries.

    Only transport failures are retried. Any HTTP response, whatever its
    status, is returned to the caller unread.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        rate_limiter: TokenBucketRateLimiter,
        retry_policy: RetryPolicy | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: RequestMetrics | None = None,
    ) -> None:
        self.client = client
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.metrics = metrics
        self._sleep = sleep

    async def admit(self, context: InboundContext, *, route: str) -> None:
        try:
            await context.guard(self.rate_limiter.acquire())
        except RequestTimeout:
            logger.info("proxy_admission_cancelled route=%s", route)
            raise

    async def send(
        self,
        request: httpx.Request,
        context: InboundContext,
        *,
        route: str,
        admitted: bool = False,
    ) -> httpx.Response:
        if not admitted:
            await self.admit(context, route=route)

        policy = self.retry_policy
        total_attempts = max(1, policy.max_attempts)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await context.guard(self.client.send(request, stream=True))
            except httpx.RequestError as exc:
                details = request_error_details(exc)
                if attempt >= total_attempts:
                    if self.metrics is not None:
                        self.metrics.record_upstream_failure(route)
                    logger.error(
                        "proxy_upstream_failed route=%s attempts=%d method=%s url=%s "
                        "is_timeout=%s error_type=%s error=%s",
                        route,
                        attempt,
                        details.get("request_method", request.method),
                        details.get("request_url", request.url),
                        details["is_timeout"],
                        details["error_type"],
                        details["error"],
                    )
                    raise UpstreamTransportFailure(
                        f"Could not reach upstream ({details['error_type']}): "
                        f"{details['error']}",
                        attempts=attempt,
                        cause=exc,
                    ) from exc

                if self.metrics is not None:
                    self.metrics.record_upstream_retry(route)
                delay = backoff_delay(attempt, policy)
                logger.warning(
                    "proxy_retry route=%s attempt=%d/%d delay=%.2f url=%s is_timeout=%s "
                    "error_type=%s error=%s",
                    route,
                    attempt,
                    total_attempts,
                    delay,
                    details.get("request_url", request.url),
                    details["is_timeout"],
                    details["error_type"],
                    details["error"],
                )
                await context.guard(self._sleep(delay))
