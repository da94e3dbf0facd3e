"""
HTTP client with retry, backoff and a redacting request logger.

Used by the HTTP/SSE MCP transports and the httpx-based LLM providers.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from mcpbridge.core.errors import Cancelled, TransportError

logger = logging.getLogger(__name__)

REDACTED_HEADERS = ("authorization", "x-api-key", "api-key", "proxy-authorization", "cookie")


def redact_headers(headers: Any) -> Dict[str, str]:
    """Copy ``headers`` with credential values masked."""
    result = {}
    for key, value in dict(headers).items():
        if key.lower() in REDACTED_HEADERS:
            result[key] = "[REDACTED]"
        else:
            result[key] = value
    return result


def log_request(request: httpx.Request) -> None:
    """httpx request hook: log method, URL, headers and body at DEBUG."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    body = b""
    try:
        body = request.content
    except httpx.RequestNotRead:
        pass
    logger.debug(
        "HTTP %s %s headers=%s body=%s",
        request.method,
        request.url,
        redact_headers(request.headers),
        body[:2048].decode(errors="replace"),
    )


def is_retryable_status(status_code: int) -> bool:
    """5xx and 429 are retryable; everything else is final."""
    return status_code == 429 or status_code >= 500


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter."""

    max_attempts: int = 3
    base_backoff: float = 0.5
    max_backoff: float = 5.0
    multiplier: float = 2.0

    @classmethod
    def from_config(cls, retry: Any) -> "RetryPolicy":
        return cls(
            max_attempts=retry.max_attempts,
            base_backoff=retry.base_backoff,
            max_backoff=retry.max_backoff,
            multiplier=retry.backoff_multiplier,
        )

    def backoff(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based), jitter included."""
        current = min(self.base_backoff * (self.multiplier ** (attempt - 1)), self.max_backoff)
        return current + random.uniform(0, current / 2)


class RetryingClient:
    """
    Thin wrapper around ``httpx.Client`` that retries transport errors,
    5xx and 429 responses according to a RetryPolicy.

    Example:
        >>> client = RetryingClient(timeout=30, policy=RetryPolicy())
        >>> response = client.request("POST", url, json=body)
    """

    def __init__(
        self,
        timeout: float = 30.0,
        policy: Optional[RetryPolicy] = None,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=timeout,
            headers=headers,
            transport=transport,
            event_hooks={"request": [log_request]},
        )

    @property
    def client(self) -> httpx.Client:
        return self._client

    def request(
        self,
        method: str,
        url: str,
        cancel: Optional[threading.Event] = None,
        **kwargs,
    ) -> httpx.Response:
        """
        Send a request, retrying per the policy.

        Returns:
            The final response (any status).

        Raises:
            TransportError: If every attempt failed at the transport level.
            Cancelled: If ``cancel`` is set between attempts.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"{method} {url} cancelled")
            try:
                response = self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt, self.policy.max_attempts, exc)
            else:
                if not is_retryable_status(response.status_code) or attempt == self.policy.max_attempts:
                    return response
                logger.warning(
                    "%s %s returned %d (attempt %d/%d)",
                    method, url, response.status_code, attempt, self.policy.max_attempts,
                )
                response.close()

            if attempt < self.policy.max_attempts:
                delay = self.policy.backoff(attempt)
                if cancel is not None:
                    if cancel.wait(delay):
                        raise Cancelled(f"{method} {url} cancelled")
                else:
                    self._sleep(delay)

        raise TransportError(f"{method} {url} failed after {self.policy.max_attempts} attempts: {last_error}", cause=last_error)

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self.request("POST", url, **kwargs)

    def get(self, url: str, **kwargs) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def close(self) -> None:
        self._client.close()
