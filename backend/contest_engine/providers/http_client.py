import asyncio
import logging
import time
from typing import Optional
from urllib.parse import urlparse

import httpx

from contest_engine.config import settings
from contest_engine.errors import ExternalServiceError

logger = logging.getLogger("contest_engine.http_client")

# Retryable HTTP status codes
_RETRYABLE_STATUSES = {429, 500, 502, 503, 504}
_MAX_DELAY_SECONDS = 30.0


def decode_json(resp: httpx.Response, provider: str) -> dict:
    """Decode a JSON object body; anything else is a provider failure."""
    try:
        data = resp.json()
    except ValueError as exc:
        raise ExternalServiceError(f"{provider} returned a non-JSON body: {exc}", provider=provider)
    if not isinstance(data, dict):
        raise ExternalServiceError(f"{provider} returned {type(data).__name__}, expected an object", provider=provider)
    return data


class CircuitBreaker:
    """Simple circuit breaker for external API calls."""

    def __init__(self, failure_threshold: int = 3, recovery_timeout: int = 300):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.is_open = False

    def record_success(self) -> None:
        self.failure_count = 0
        self.is_open = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold and not self.is_open:
            self.is_open = True
            logger.warning("Circuit breaker OPEN after %d failures", self.failure_count)

    def can_attempt(self) -> bool:
        if not self.is_open:
            return True
        # Half-open after the recovery timeout
        if self.last_failure_time and (time.time() - self.last_failure_time > self.recovery_timeout):
            logger.info("Circuit breaker half-open, allowing retry")
            return True
        return False


def _parse_retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def _safe_url(url: str) -> str:
    """Strip query params (may contain API keys) for safe logging."""
    parsed = urlparse(str(url))
    return f"{parsed.scheme}://{parsed.netloc}{parsed.path}"


class ResilientClient:
    """httpx.AsyncClient wrapper with timeout, retry/backoff and circuit breaker.

    Every failure mode that survives the retry budget (network error, open
    circuit, retryable status on the last attempt) is raised as
    ExternalServiceError so callers can fall back to cached data or defer.
    """

    def __init__(
        self,
        name: str,
        base_url: str = "",
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        headers: Optional[dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout if timeout is not None else settings.EXTERNAL_CALL_TIMEOUT_SECONDS,
            headers=headers,
            transport=transport,
        )
        self._name = name
        self._max_retries = settings.EXTERNAL_CALL_MAX_RETRIES if max_retries is None else max_retries
        self._base_delay = settings.EXTERNAL_CALL_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.circuit = CircuitBreaker()

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if not self.circuit.can_attempt():
            raise ExternalServiceError(f"{self._name}: circuit open", provider=self._name)

        last_error = ""
        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "[%s] Network error on %s %s (attempt %d/%d): %s",
                    self._name, method, _safe_url(url),
                    attempt + 1, self._max_retries + 1, exc,
                )
                delay = self._base_delay * (2 ** attempt)
            else:
                if resp.status_code not in _RETRYABLE_STATUSES:
                    self.circuit.record_success()
                    return resp
                last_error = f"HTTP {resp.status_code}"
                logger.warning(
                    "[%s] Retryable status %d on %s %s (attempt %d/%d)",
                    self._name, resp.status_code, method, _safe_url(url),
                    attempt + 1, self._max_retries + 1,
                )
                delay = _parse_retry_after(resp)
                if delay is None:
                    delay = self._base_delay * (2 ** attempt)

            if attempt < self._max_retries:
                await asyncio.sleep(min(delay, _MAX_DELAY_SECONDS))

        self.circuit.record_failure()
        logger.error(
            "[%s] All %d attempts failed for %s %s: %s",
            self._name, self._max_retries + 1, method, _safe_url(url), last_error,
        )
        raise ExternalServiceError(f"{self._name}: {last_error}", provider=self._name)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()
