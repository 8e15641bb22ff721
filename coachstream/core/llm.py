"""
Coachstream Provider Client

Async client for OpenAI-compatible chat-completion providers.

- open_stream(): opens a streamed completion and hands back the raw response;
  any non-2xx or transport failure surfaces as ProviderUnavailable so the
  fallback executor can move on. No retry happens here.
- complete(): non-streaming call with exponential backoff (200ms doubling,
  capped at 2s, 3 retries). This is the only retrying call in the engine.

Usage:
    client = ProviderClient(config.providers, config.provider_key)
    async with client.open_stream("gateway", model, messages, 2500) as response:
        async for chunk in response.aiter_bytes():
            ...
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from .config import ProviderConfig
from .errors import ProviderUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
RETRY_BASE_SECONDS = 0.2
RETRY_CAP_SECONDS = 2.0
MAX_RETRIES = 3


def backoff_delay(attempt: int, base: float = RETRY_BASE_SECONDS, cap: float = RETRY_CAP_SECONDS) -> float:
    """Delay before retry number `attempt` (0-based)."""
    return min(cap, base * (2 ** attempt))


class ProviderClient:
    """Async client for a set of OpenAI-compatible providers."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        key_lookup: Callable[[str], Optional[str]],
        transport: Optional[httpx.AsyncBaseTransport] = None,
        temperature: float = DEFAULT_TEMPERATURE,
    ):
        """Initialize the provider client.

        Args:
            providers: Provider name -> connection settings
            key_lookup: Returns the credential for a provider name, or None
            transport: Optional httpx transport (tests inject a MockTransport)
            temperature: Sampling temperature for every request
        """
        self.providers = providers
        self.key_lookup = key_lookup
        self.transport = transport
        self.temperature = temperature
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self.transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def is_configured(self, provider: str) -> bool:
        return provider in self.providers and bool(self.key_lookup(provider))

    def configured(self) -> Dict[str, bool]:
        """Credential presence per provider, for the health endpoint."""
        return {name: self.is_configured(name) for name in self.providers}

    def _prepare(
        self,
        provider: str,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
        stream: bool,
        temperature: Optional[float] = None,
    ):
        settings = self.providers.get(provider)
        if settings is None:
            raise ProviderUnavailable(provider, message="unknown provider")
        key = self.key_lookup(provider)
        if not key:
            raise ProviderUnavailable(provider, message="no credential")

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        url = f"{settings.base_url.rstrip('/')}/chat/completions"
        headers = {"Authorization": f"Bearer {key}"}
        return url, payload, headers, httpx.Timeout(settings.timeout)

    @asynccontextmanager
    async def open_stream(
        self,
        provider: str,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int,
    ) -> AsyncIterator[httpx.Response]:
        """Open a streamed completion.

        Raises:
            ProviderUnavailable: no credential, transport failure or non-2xx
        """
        url, payload, headers, timeout = self._prepare(provider, model, messages, max_tokens, stream=True)
        client = await self._get_client()
        request = client.build_request("POST", url, json=payload, headers=headers, timeout=timeout)

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning(f"[LLM] {provider} request failed: {e}")
            raise ProviderUnavailable(provider, message=str(e)) from e

        try:
            if not 200 <= response.status_code < 300:
                body = await response.aread()
                logger.warning(
                    f"[LLM] {provider} returned {response.status_code}: "
                    f"{body[:200].decode('utf-8', errors='replace')}"
                )
                raise ProviderUnavailable(provider, status=response.status_code)
            yield response
        finally:
            await response.aclose()

    async def complete(
        self,
        provider: str,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 2000,
        temperature: Optional[float] = None,
        retries: int = MAX_RETRIES,
    ) -> str:
        """Non-streaming completion with exponential backoff on retryable failures.

        Returns:
            The assistant message content

        Raises:
            ProviderUnavailable: non-retryable status, or retries exhausted
        """
        url, payload, headers, timeout = self._prepare(
            provider, model, messages, max_tokens, stream=False, temperature=temperature
        )
        client = await self._get_client()

        attempt = 0
        while True:
            try:
                response = await client.post(url, json=payload, headers=headers, timeout=timeout)
                if not 200 <= response.status_code < 300:
                    raise ProviderUnavailable(provider, status=response.status_code)
                data = response.json()
                return data["choices"][0]["message"].get("content") or ""
            except httpx.HTTPError as e:
                error = ProviderUnavailable(provider, message=str(e))
            except ProviderUnavailable as e:
                error = e

            if not error.retryable or attempt >= retries:
                logger.error(f"[LLM] {provider} completion failed after {attempt + 1} attempts: {error}")
                raise error

            delay = backoff_delay(attempt)
            logger.info(f"[LLM] {provider} retry {attempt + 1}/{retries} in {delay:.1f}s ({error})")
            await asyncio.sleep(delay)
            attempt += 1
