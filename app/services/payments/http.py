"""Bounded-time HTTP client shared by the provider adapters."""

import logging
import time
from typing import Any, Callable

import httpx

from app.metrics import PROVIDER_CALL_DURATION
from app.services.payments.errors import ProviderError, ProviderTimeout, ProviderUnavailable

logger = logging.getLogger(__name__)


class ProviderHttpClient:
    """HTTP client with a per-attempt timeout, one bounded retry and a total budget.

    Transport failures and 5xx answers are retried with exponential backoff.
    4xx answers are the provider rejecting the request and raise
    ``ProviderError`` immediately. When attempts or the time budget run out a
    ``ProviderTimeout`` (or ``ProviderUnavailable`` for non-timeout failures)
    is raised so callers never wait indefinitely.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        timeout: float = 2.0,
        max_attempts: int = 2,
        backoff_seconds: float = 0.5,
        total_budget_seconds: float = 5.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.total_budget_seconds = total_budget_seconds
        self.transport = transport
        self.sleep = sleep
        self.clock = clock

    def request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        json_body: dict[str, Any] | None = None,
        content: bytes | str | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        sign: Callable[[], dict[str, str]] | None = None,
    ) -> httpx.Response:
        """Send a request; ``sign`` is called per attempt for fresh auth headers."""
        url = f"{self.base_url}{path}"
        started = self.clock()
        last_error: Exception | None = None
        timed_out = False

        for attempt in range(self.max_attempts):
            remaining = self.total_budget_seconds - (self.clock() - started)
            if remaining <= 0:
                timed_out = True
                break
            request_headers = dict(headers or {})
            if sign is not None:
                request_headers.update(sign())
            attempt_started = self.clock()
            try:
                with httpx.Client(
                    timeout=min(self.timeout, remaining), transport=self.transport
                ) as client:
                    response = client.request(
                        method,
                        url,
                        json=json_body,
                        content=content,
                        params=params,
                        headers=request_headers,
                    )
            except httpx.TimeoutException as exc:
                timed_out = True
                last_error = exc
                self._observe(operation, "timeout", attempt_started)
                logger.warning(
                    "%s %s timed out (attempt %d/%d)",
                    self.provider,
                    operation,
                    attempt + 1,
                    self.max_attempts,
                )
            except httpx.TransportError as exc:
                timed_out = False
                last_error = exc
                self._observe(operation, "transport_error", attempt_started)
                logger.warning(
                    "%s %s transport error (attempt %d/%d): %s",
                    self.provider,
                    operation,
                    attempt + 1,
                    self.max_attempts,
                    exc,
                )
            else:
                self._observe(operation, str(response.status_code), attempt_started)
                if response.status_code < 500:
                    if response.status_code >= 400:
                        logger.error(
                            "%s %s rejected: %s - %s",
                            self.provider,
                            operation,
                            response.status_code,
                            response.text[:500],
                        )
                        raise ProviderError(
                            self.provider,
                            f"{self.provider} API error: {response.status_code}",
                            status_code=response.status_code,
                        )
                    return response
                timed_out = False
                last_error = ProviderUnavailable(
                    self.provider, f"{self.provider} API error: {response.status_code}"
                )
                logger.warning(
                    "%s %s server error %s (attempt %d/%d)",
                    self.provider,
                    operation,
                    response.status_code,
                    attempt + 1,
                    self.max_attempts,
                )

            if attempt < self.max_attempts - 1:
                delay = self.backoff_seconds * (2**attempt)
                if self.clock() - started + delay >= self.total_budget_seconds:
                    timed_out = True
                    break
                self.sleep(delay)

        if timed_out:
            raise ProviderTimeout(self.provider) from last_error
        raise ProviderUnavailable(self.provider) from last_error

    def _observe(self, operation: str, status: str, attempt_started: float) -> None:
        PROVIDER_CALL_DURATION.labels(
            provider=self.provider, operation=operation, status=status
        ).observe(max(0.0, self.clock() - attempt_started))
