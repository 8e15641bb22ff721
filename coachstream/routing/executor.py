"""
Fallback Executor

Walks a provider chain until one provider accepts the request.

- providers without a credential are skipped (not counted as failures)
- 2xx: use this provider, stop walking
- any other outcome advances to the next provider, subject to the policy:
    ADVANCE_ON_ANY_FAILURE  every failure advances (streaming path)
    STOP_ON_NON_RETRYABLE   a non-retryable status (4xx other than 402/429)
                            ends the walk immediately
- an exhausted chain raises ProviderChainExhausted carrying every attempt

Every real attempt is recorded on the injected CircuitBreaker.
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional

import httpx

from ..core.breaker import CircuitBreaker
from ..core.errors import ProviderChainExhausted, ProviderUnavailable
from ..core.llm import ProviderClient
from .router import ModelChoice, ModelRouter

logger = logging.getLogger(__name__)


class FallbackPolicy(Enum):
    ADVANCE_ON_ANY_FAILURE = "advance_on_any_failure"
    STOP_ON_NON_RETRYABLE = "stop_on_non_retryable"


@dataclass
class Attempt:
    provider: str
    model: str
    outcome: str  # ok | skipped | failed
    status: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "provider": self.provider,
            "model": self.model,
            "outcome": self.outcome,
            "status": self.status,
            "error": self.error,
        }


@dataclass
class StreamSession:
    """An open upstream stream and how it was obtained."""
    provider: str
    model: str
    response: httpx.Response
    attempts: List[Attempt] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return any(a.outcome == "failed" for a in self.attempts)


class FallbackExecutor:
    """Provider fallback over a ProviderClient."""

    def __init__(
        self,
        client: ProviderClient,
        router: ModelRouter,
        breaker: CircuitBreaker,
        policy: FallbackPolicy = FallbackPolicy.ADVANCE_ON_ANY_FAILURE,
    ):
        self.client = client
        self.router = router
        self.breaker = breaker
        self.policy = policy

    def _should_stop(self, error: ProviderUnavailable, policy: FallbackPolicy) -> bool:
        return policy is FallbackPolicy.STOP_ON_NON_RETRYABLE and not error.retryable

    def _record_failure(self, attempts: List[Attempt], provider: str, model: str, error: ProviderUnavailable):
        self.breaker.record_error()
        attempts.append(Attempt(provider, model, "failed", status=error.status, error=error.message))
        logger.warning(f"[FALLBACK] {provider}/{model} failed: {error.message}")

    @asynccontextmanager
    async def open_stream(
        self,
        choice: ModelChoice,
        messages: List[Dict[str, str]],
        max_tokens: int,
        policy: Optional[FallbackPolicy] = None,
    ) -> AsyncIterator[StreamSession]:
        """Open a streamed completion on the first provider in the chain that accepts it.

        Raises:
            ProviderChainExhausted: no provider accepted the request
        """
        policy = policy or self.policy
        attempts: List[Attempt] = []

        for provider in self.router.fallback_chain(choice.provider):
            model = self.router.model_for(provider, choice)
            if not self.client.is_configured(provider):
                logger.warning(f"[FALLBACK] {provider} has no credential, skipping")
                attempts.append(Attempt(provider, model, "skipped", error="no credential"))
                continue

            logger.info(f"[FALLBACK] Trying {provider}/{model}")
            stack = AsyncExitStack()
            try:
                response = await stack.enter_async_context(
                    self.client.open_stream(provider, model, messages, max_tokens)
                )
            except ProviderUnavailable as e:
                await stack.aclose()
                self._record_failure(attempts, provider, model, e)
                if self._should_stop(e, policy):
                    raise ProviderChainExhausted(f"{provider} rejected the request", attempts=attempts)
                continue

            self.breaker.record_success()
            attempts.append(Attempt(provider, model, "ok", status=response.status_code))
            logger.info(f"[FALLBACK] Streaming from {provider}/{model}")
            try:
                yield StreamSession(provider=provider, model=model, response=response, attempts=attempts)
            finally:
                await stack.aclose()
            return

        raise ProviderChainExhausted(attempts=attempts)

    async def complete(
        self,
        choice: ModelChoice,
        messages: List[Dict[str, str]],
        max_tokens: int = 2000,
        policy: FallbackPolicy = FallbackPolicy.STOP_ON_NON_RETRYABLE,
        temperature: Optional[float] = None,
    ) -> str:
        """Non-streaming completion across the chain (each provider call retries with backoff)."""
        attempts: List[Attempt] = []

        for provider in self.router.fallback_chain(choice.provider):
            model = self.router.model_for(provider, choice)
            if not self.client.is_configured(provider):
                attempts.append(Attempt(provider, model, "skipped", error="no credential"))
                continue
            try:
                content = await self.client.complete(
                    provider, model, messages, max_tokens=max_tokens, temperature=temperature
                )
            except ProviderUnavailable as e:
                self._record_failure(attempts, provider, model, e)
                if self._should_stop(e, policy):
                    raise ProviderChainExhausted(f"{provider} rejected the request", attempts=attempts)
                continue

            self.breaker.record_success()
            return content

        raise ProviderChainExhausted(attempts=attempts)
