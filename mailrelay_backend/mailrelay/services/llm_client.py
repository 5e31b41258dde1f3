"""
LLM Client

Chat completions for classification and FAQ extraction, plus defensive
parsing of model output.

Provider failures are mapped onto the relay exception hierarchy so the
Resilience Layer can weigh them against the invocation budget; the SDK's
own retries are disabled for the same reason.
"""
import json
import logging
import re
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from mailrelay.core.config import resolve_settings
from mailrelay.core.exceptions import (
    MalformedResponseError,
    ProviderPermanentError,
    ProviderRateLimitError,
    ProviderTransientError,
)
from mailrelay.core.http_client import parse_retry_after, require_credential

logger = logging.getLogger(__name__)

PROVIDER = "llm"

_FENCED_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

# Wrapper keys models sometimes put around the array we asked for
_ARRAY_WRAPPER_KEYS = ("results", "items", "data", "classifications", "faqs")


def _loads(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def extract_json(text: Optional[str], opener: str = "[", closer: str = "]") -> Any:
    """
    Parse JSON out of model output.

    Tries, in order: the whole text, a fenced ```json block, the outermost
    opener..closer span. Raises MalformedResponseError when none parse.
    """
    if not text or not text.strip():
        raise MalformedResponseError("Empty model output", raw=text)

    stripped = text.strip()
    parsed = _loads(stripped)
    if parsed is not None:
        return parsed

    for block in _FENCED_RE.findall(stripped):
        parsed = _loads(block.strip())
        if parsed is not None:
            return parsed

    start = stripped.find(opener)
    end = stripped.rfind(closer)
    if start != -1 and end > start:
        parsed = _loads(stripped[start:end + 1])
        if parsed is not None:
            return parsed

    raise MalformedResponseError("Model output is not valid JSON", raw=text)


def extract_json_array(text: Optional[str]) -> List[Any]:
    """Like extract_json, but the result must be (or wrap) a list."""
    parsed = extract_json(text, "[", "]")
    if isinstance(parsed, dict):
        for key in _ARRAY_WRAPPER_KEYS:
            if isinstance(parsed.get(key), list):
                return parsed[key]
    if not isinstance(parsed, list):
        raise MalformedResponseError(
            f"Expected a JSON array, got {type(parsed).__name__}", raw=text
        )
    return parsed


class LLMClient:
    """Thin async wrapper over the chat completions API."""

    def __init__(self, settings=None, client: Optional[AsyncOpenAI] = None):
        self.settings = resolve_settings(settings)
        self.model = self.settings.LLM_MODEL
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            api_key = require_credential(self.settings.LLM_API_KEY, PROVIDER, "LLM_API_KEY")
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.settings.LLM_API_BASE or None,
                timeout=self.settings.PER_CALL_TIMEOUT_SECONDS,
                max_retries=0,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> str:
        """Return the assistant message text, raising relay errors on failure."""
        client = self._get_client()
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.RateLimitError as e:
            retry_after = parse_retry_after(e.response.headers.get("retry-after")) if e.response is not None else None
            logger.warning("[429] LLM rate limited" + (f", retry after {retry_after:.1f}s" if retry_after else ""))
            raise ProviderRateLimitError(
                "LLM rate limited",
                retry_after_seconds=retry_after,
                provider=PROVIDER,
                body=str(e),
            ) from e
        except (openai.APITimeoutError, openai.APIConnectionError) as e:
            logger.warning(f"[HTTP] LLM connection problem: {e}")
            raise ProviderTransientError("LLM connection failed", provider=PROVIDER) from e
        except openai.APIStatusError as e:
            if e.status_code >= 500 or e.status_code == 408:
                logger.warning(f"[HTTP] LLM transient status {e.status_code}")
                raise ProviderTransientError(
                    f"LLM returned status {e.status_code}",
                    provider=PROVIDER,
                    status_code=e.status_code,
                    body=str(e),
                ) from e
            logger.error(f"[HTTP] LLM rejected request with status {e.status_code}: {e}")
            raise ProviderPermanentError(
                f"LLM rejected request with status {e.status_code}",
                provider=PROVIDER,
                status_code=e.status_code,
                body=str(e),
            ) from e

        if not response.choices:
            raise MalformedResponseError("LLM returned no choices")
        return (response.choices[0].message.content or "").strip()

    async def complete_json_array(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float = 0.2,
        max_tokens: int = 2000,
    ) -> List[Any]:
        """
        Complete and parse a JSON array.

        On a parse failure the call is repeated once at temperature 0; a
        second failure raises MalformedResponseError.
        """
        text = await self.complete(system_prompt, user_prompt, temperature, max_tokens)
        try:
            return extract_json_array(text)
        except MalformedResponseError:
            logger.info("[LLM] Unparseable output, retrying once at temperature 0")

        text = await self.complete(system_prompt, user_prompt, 0.0, max_tokens)
        return extract_json_array(text)
