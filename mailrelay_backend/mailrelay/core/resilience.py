"""
Resilience Layer

Retry/backoff for provider calls, budget-aware:
- Exponential backoff with jitter: min(base * 2^attempt + jitter, cap)
- Provider-supplied delays (Retry-After header, "retry in 12s" hints) win
  over computed backoff
- A delay longer than the invocation's remaining budget is never slept
  in-process; the caller gets RateLimited(delay) and relays instead
- Permanent and configuration errors propagate immediately

The outcome of call_with_retry() is one of Success | RateLimited | Exhausted.
"""
import asyncio
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from mailrelay.core.exceptions import (
    MalformedResponseError,
    ProviderRateLimitError,
    ProviderTransientError,
)
from mailrelay.core.utils import Deadline

logger = logging.getLogger(__name__)

_RETRY_HINT_RE = re.compile(
    r"retry\s+(?:in|after)\s+(\d+(?:\.\d+)?)\s*(ms|milliseconds?|s|secs?|seconds?)?",
    re.IGNORECASE,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 5
    base_delay: float = 2.0           # Base delay in seconds
    max_delay: float = 60.0           # Maximum delay cap
    exponential_base: float = 2.0
    jitter_seconds: float = 1.0       # Uniform random jitter added before the cap

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter_seconds=settings.RETRY_JITTER_SECONDS,
        )


@dataclass
class Success:
    value: Any
    attempts: int = 1


@dataclass
class RateLimited:
    """Throttled and the next attempt does not fit in this invocation."""
    delay_seconds: float
    error: Optional[Exception] = None

    @property
    def delay_ms(self) -> int:
        return int(round(self.delay_seconds * 1000))


@dataclass
class Exhausted:
    """Non-throttling failure that retries could not clear."""
    error: Exception
    attempts: int


CallOutcome = Union[Success, RateLimited, Exhausted]


def exponential_backoff(
    attempt: int,
    config: Optional[RetryConfig] = None,
    rng: Callable[[], float] = random.random,
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
    """
    cfg = config or RetryConfig()
    delay = cfg.base_delay * (cfg.exponential_base ** attempt)
    delay += rng() * cfg.jitter_seconds
    return min(delay, cfg.max_delay)


def parse_retry_hint(text: Optional[str]) -> Optional[float]:
    """
    Pull a retry delay out of a provider error message.

    Handles "Please retry in 12s", "retry after 3.5 seconds", "retry in 800ms".
    """
    if not text:
        return None
    match = _RETRY_HINT_RE.search(text)
    if not match:
        return None
    value = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    if unit.startswith("m"):
        value = value / 1000.0
    return value


def _throttle_delay(error: ProviderRateLimitError, attempt: int, config: RetryConfig, rng) -> float:
    if error.retry_after_seconds is not None:
        return float(error.retry_after_seconds)
    hinted = parse_retry_hint(error.details.get("body") or error.message)
    if hinted is not None:
        return hinted
    return exponential_backoff(attempt, config, rng)


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    *,
    deadline: Deadline,
    config: Optional[RetryConfig] = None,
    call_timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    label: str = "call",
) -> CallOutcome:
    """
    Execute an async provider call with budget-aware retries.

    Args:
        fn: Zero-arg async callable
        deadline: Remaining invocation budget; delays past it are not slept
        config: Retry configuration
        call_timeout: Per-attempt timeout in seconds
        sleep: Injectable sleep (tests)
        rng: Injectable jitter source (tests)
        label: Log tag

    Returns:
        Success(value) | RateLimited(delay_seconds) | Exhausted(error)

    Raises:
        ProviderPermanentError / ProviderConfigurationError and anything
        else that is not a transient provider failure
    """
    cfg = config or RetryConfig()
    attempt = 0

    while True:
        throttled = False
        try:
            if call_timeout:
                value = await asyncio.wait_for(fn(), timeout=call_timeout)
            else:
                value = await fn()
            return Success(value=value, attempts=attempt + 1)
        except ProviderRateLimitError as e:
            throttled = True
            last_error: Exception = e
            delay = _throttle_delay(e, attempt, cfg, rng)
        except (ProviderTransientError, asyncio.TimeoutError) as e:
            last_error = e
            delay = exponential_backoff(attempt, cfg, rng)
        except MalformedResponseError as e:
            # Adapters already re-ask once at temperature 0; another identical
            # call will not parse either.
            logger.warning(f"[Retry:{label}] Malformed response, not retrying: {e.message}")
            return Exhausted(error=e, attempts=attempt + 1)

        if attempt >= cfg.max_retries:
            logger.warning(
                f"[Retry:{label}] Giving up after {attempt + 1} attempts: {last_error}"
            )
            if throttled:
                return RateLimited(delay_seconds=delay, error=last_error)
            return Exhausted(error=last_error, attempts=attempt + 1)

        remaining = deadline.remaining()
        if delay > remaining:
            logger.info(
                f"[Retry:{label}] Delay {delay:.1f}s exceeds remaining budget "
                f"{remaining:.1f}s, handing off to continuation"
            )
            if throttled:
                return RateLimited(delay_seconds=delay, error=last_error)
            return Exhausted(error=last_error, attempts=attempt + 1)

        logger.debug(
            f"[Retry:{label}] Attempt {attempt + 1}/{cfg.max_retries + 1} failed: {last_error}, "
            f"waiting {delay:.1f}s"
        )
        await sleep(delay)
        attempt += 1
