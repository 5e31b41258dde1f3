"""
Provider HTTP Client

Thin async client for every external provider call (mailbox API, language
model, crawler). Responsibilities:
- Per-call timeout well under the invocation budget
- Status classification into the provider exception hierarchy
- 429 detection with Retry-After respect (seconds or HTTP-date)
- Per-host block so a throttled host is not hammered by sibling calls
- Minimum spacing between requests to the same host

Retries are NOT done here. A retry loop that sleeps must weigh every delay
against the invocation's remaining budget, so it lives in
mailrelay.core.resilience where the Deadline is known.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from mailrelay.core.exceptions import (
    ProviderConfigurationError,
    ProviderPermanentError,
    ProviderRateLimitError,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

# Truncate provider bodies before they reach logs
LOG_BODY_CHARS = 300


@dataclass
class RateLimitConfig:
    """Per-host request spacing."""
    min_request_interval: float = 0.0  # Minimum seconds between requests


@dataclass
class StatusPolicy:
    """How HTTP statuses map onto the provider exception hierarchy."""
    transient_status_codes: tuple = (408, 500, 502, 503, 504)
    fatal_status_codes: tuple = (400, 401, 403, 404, 410, 422)


@dataclass
class HostState:
    """Tracks state for a specific host."""
    last_request_time: float = 0.0
    # Set when we receive a 429; every request to the host fails fast until then
    blocked_until: Optional[float] = None


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """
    Parse a Retry-After header value into a delay in seconds.

    Accepts delta-seconds ("5", "2.5") or an HTTP-date. Returns None when the
    value is missing or unparseable; never returns a negative delay.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (ValueError, TypeError):
        return None
    if dt is None:
        return None
    current = now if now is not None else time.time()
    return max(0.0, dt.timestamp() - current)


class ResilientHTTPClient:
    """
    Async HTTP client for provider calls.

    Usage:
        async with ResilientHTTPClient(provider="mail") as client:
            response = await client.get("https://api.example.com/messages")
    """

    def __init__(
        self,
        provider: str,
        rate_limit_config: Optional[RateLimitConfig] = None,
        status_policy: Optional[StatusPolicy] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.provider = provider
        self.rate_limit_config = rate_limit_config or RateLimitConfig()
        self.status_policy = status_policy or StatusPolicy()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}
        self._lock = asyncio.Lock()

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                follow_redirects=True,
                transport=self._transport,
            )
        return self

    async def close(self):
        """Close the client. Use this when not using context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _check_preflight_block(self, host: str) -> None:
        """Fail fast while a host is blocked by an earlier 429."""
        state = self._get_host_state(host)
        now = time.time()
        if state.blocked_until and now < state.blocked_until:
            wait_time = state.blocked_until - now
            logger.info(f"[PRE-FLIGHT] {host}: Blocked for another {wait_time:.1f}s")
            raise ProviderRateLimitError(
                f"{self.provider} blocked after earlier 429",
                retry_after_seconds=wait_time,
                provider=self.provider,
            )
        state.blocked_until = None

    async def _respect_min_interval(self, host: str) -> None:
        cfg = self.rate_limit_config
        if cfg.min_request_interval <= 0:
            return
        async with self._lock:
            state = self._get_host_state(host)
            elapsed = time.time() - state.last_request_time
            if elapsed < cfg.min_request_interval:
                wait_time = cfg.min_request_interval - elapsed
                logger.debug(f"[RATE_LIMIT] {host}: Throttling {wait_time:.2f}s (min interval)")
                await asyncio.sleep(wait_time)
            state.last_request_time = time.time()

    def _classify(self, response: httpx.Response, host: str) -> None:
        """Raise the matching provider error for a non-success response."""
        status = response.status_code
        if status < 400:
            return

        body = response.text[:LOG_BODY_CHARS] if response.content else ""

        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            state = self._get_host_state(host)
            if retry_after is not None:
                state.blocked_until = time.time() + retry_after
            logger.warning(
                f"[429] {host}: Rate limited by {self.provider}"
                + (f", retry after {retry_after:.1f}s" if retry_after is not None else "")
            )
            raise ProviderRateLimitError(
                f"{self.provider} rate limited",
                retry_after_seconds=retry_after,
                provider=self.provider,
                body=body,
            )

        if status in self.status_policy.fatal_status_codes:
            logger.error(f"[HTTP] {host}: Fatal status {status} from {self.provider}: {body}")
            raise ProviderPermanentError(
                f"{self.provider} rejected request with status {status}",
                provider=self.provider,
                status_code=status,
                body=body,
            )

        if status in self.status_policy.transient_status_codes or status >= 500:
            logger.warning(f"[HTTP] {host}: Transient status {status} from {self.provider}")
            raise ProviderTransientError(
                f"{self.provider} returned status {status}",
                provider=self.provider,
                status_code=status,
                body=body,
            )

        logger.error(f"[HTTP] {host}: Unexpected status {status} from {self.provider}: {body}")
        raise ProviderPermanentError(
            f"{self.provider} returned unexpected status {status}",
            provider=self.provider,
            status_code=status,
            body=body,
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Make one HTTP request.

        Returns:
            httpx.Response on 2xx/3xx

        Raises:
            ProviderRateLimitError: 429 or host still blocked
            ProviderTransientError: timeout, connection error, 5xx
            ProviderPermanentError: non-retryable 4xx
        """
        if not self._client:
            await self.init()

        host = self._get_host(url)
        self._check_preflight_block(host)
        await self._respect_min_interval(host)

        logger.debug(f"[HTTP] {method} {url}")
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"[HTTP] {host}: Timeout calling {self.provider}")
            raise ProviderTransientError(
                f"{self.provider} timed out", provider=self.provider
            ) from e
        except httpx.TransportError as e:
            logger.warning(f"[HTTP] {host}: Transport error calling {self.provider}: {e}")
            raise ProviderTransientError(
                f"{self.provider} connection failed", provider=self.provider
            ) from e

        self._classify(response, host)
        return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)


def require_credential(value: str, provider: str, name: str) -> str:
    """Missing credentials are a permanent configuration error, not a retry."""
    if not value:
        raise ProviderConfigurationError(
            f"{name} is not configured for {provider}",
            provider=provider,
        )
    return value
