"""
Turn Relay

Owns one turn from request to final event. `run()` is an async generator of
client events; the HTTP layer frames each one as SSE and sends it as soon as
it is yielded, so the relay only reads the next upstream chunk once the
previous delta has been handed off.

    received        trace row created, `thinking/start` sent
    context_loaded  loaders settled, one `thinking` per module, `context_ready`
    prompt_built    analysis, persona resolution, prompt, routing
    streaming       provider accepted; every delta forwarded as `content`
    completed       output persisted, `done` with timing metrics

Any failure moves the trace to `failed` and sends one `error` event. A client
disconnect cancels the generator: the upstream response is closed by its
context manager and the trace is failed with `client_disconnected`.

Post-turn work (conversation persistence, memory pipeline) is handed to the
task executor only after `completed`.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import pytz

from ..context.aggregator import ContextAggregator, ContextBundle
from ..context.signals import (
    MIN_MAX_TOKENS,
    ConversationAnalysis,
    analyze_message,
    detail_level_instruction,
    detect_mood,
    detect_question_complexity,
    detect_topic,
    requires_tool_execution,
    time_of_day,
    tool_execution_reason,
)
from ..core.database import utcnow
from ..core.errors import CoachEngineError, StreamReadError
from ..core.tasks import TaskExecutor
from ..memory.conversations import ConversationStore
from ..memory.pipeline import MemoryPipeline
from ..persona.directive import build_directive
from ..persona.models import PersonaContext
from ..persona.resolver import resolve
from ..prompt.assembler import PromptBudgets, PromptInputs, assemble
from ..routing.executor import FallbackExecutor
from ..routing.router import ModelRouter, RoutingContext
from . import traces as trace_status
from .sse import UpstreamDecoder
from .traces import TraceStore

logger = logging.getLogger(__name__)

ANALYSIS_MAX_CHARS = 150
DISCONNECTED = "client_disconnected"
RESEARCH_REASON = "research_scientific_evidence"


@dataclass
class TurnRequest:
    user_id: str
    coach_id: str
    text: str
    trace_id: str
    has_images: bool = False
    research_plus: bool = False


@dataclass
class TurnMetrics:
    first_token_ms: Optional[int] = None
    total_tokens: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "firstTokenMs": self.first_token_ms,
            "totalTokens": self.total_tokens,
            "durationMs": self.duration_ms,
        }


class TurnRelay:
    """The per-turn state machine."""

    def __init__(
        self,
        aggregator: ContextAggregator,
        router: ModelRouter,
        fallback: FallbackExecutor,
        traces: TraceStore,
        conversations: ConversationStore,
        pipeline: Optional[MemoryPipeline],
        tasks: TaskExecutor,
        budgets: Optional[PromptBudgets] = None,
        timezone: str = "UTC",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.aggregator = aggregator
        self.router = router
        self.fallback = fallback
        self.traces = traces
        self.conversations = conversations
        self.pipeline = pipeline
        self.tasks = tasks
        self.budgets = budgets or PromptBudgets()
        self.tz = pytz.timezone(timezone)
        self.clock = clock

    # =========================================================================
    # Redirect
    # =========================================================================

    def redirect_reason(self, turn: TurnRequest) -> Optional[str]:
        """Why this turn must go to the tool-executing endpoint, or None."""
        if turn.research_plus:
            return RESEARCH_REASON
        if requires_tool_execution(turn.text):
            return tool_execution_reason(turn.text)
        return None

    def redirect(self, turn: TurnRequest, reason: str):
        """Record a redirected turn; its trace is finalized as failed."""
        self.traces.start(turn.trace_id, turn.user_id, turn.coach_id, turn.text)
        self.traces.fail(turn.trace_id, f"redirected:{reason}")
        logger.info(f"[RELAY] {turn.trace_id} redirected to blocking endpoint ({reason})")

    # =========================================================================
    # Turn
    # =========================================================================

    async def run(self, turn: TurnRequest) -> AsyncIterator[Dict[str, Any]]:
        started = time.monotonic()
        trace_id = turn.trace_id
        await asyncio.to_thread(self.traces.start, trace_id, turn.user_id, turn.coach_id, turn.text)

        try:
            yield {"type": "thinking", "step": "start", "message": "Thinking...", "done": False}

            # Context
            outcomes = []
            async for outcome in self.aggregator.settle(turn.user_id, turn.coach_id, turn.text):
                outcomes.append(outcome)
                if outcome.loaded:
                    yield {"type": "thinking", "step": outcome.name, "message": outcome.message, "done": True}
            bundle = ContextBundle.from_outcomes(outcomes, turn.coach_id)
            yield {"type": "thinking", "step": "start", "message": "Composing answer...", "done": True}
            yield {"type": "context_ready", "loadedModules": bundle.loaded_modules, "traceId": trace_id}
            await asyncio.to_thread(
                self.traces.advance, trace_id, trace_status.CONTEXT_LOADED, loaded_modules=bundle.loaded_modules,
            )
            logger.info(f"[RELAY] {trace_id} context loaded: {', '.join(bundle.loaded_modules) or '(none)'}")

            # Analysis
            analysis: Optional[ConversationAnalysis] = None
            if len(turn.text) < ANALYSIS_MAX_CHARS:
                yield {"type": "thinking", "step": "analyze", "message": "Analyzing intent...", "done": False}
                analysis = analyze_message(turn.text)
                yield {"type": "thinking", "step": "analyze", "message": f"Intent: {analysis.intent}", "done": True}

            # Prompt and routing
            tenure_days = await self._tenure_days(turn.user_id)
            system_prompt = self.build_prompt(turn, bundle, analysis, tenure_days)
            choice = self.router.classify(turn.text, RoutingContext(
                has_images=turn.has_images,
                message_length=len(turn.text),
                conversation_length=len(bundle.history),
            ))
            choice, semantic_max_tokens = self.router.apply_analysis(choice, analysis)
            max_tokens = max(semantic_max_tokens or detect_question_complexity(turn.text)[1], MIN_MAX_TOKENS)

            routing = choice.to_dict()
            routing["maxTokens"] = max_tokens
            routing["breaker"] = self.fallback.breaker.status().to_dict()
            if analysis is not None:
                routing["semantic"] = analysis.to_dict()
            await asyncio.to_thread(
                self.traces.advance, trace_id, trace_status.PROMPT_BUILT,
                prompt_snapshot=system_prompt, routing=routing,
            )

            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": turn.text},
            ]

            # Streaming
            output: List[str] = []
            metrics = TurnMetrics()
            async with self.fallback.open_stream(choice, messages, max_tokens) as session:
                routing["used"] = {"provider": session.provider, "model": session.model}
                routing["attempts"] = [a.to_dict() for a in session.attempts]
                await asyncio.to_thread(
                    self.traces.advance,
                    trace_id, trace_status.STREAMING,
                    provider=session.provider, model=session.model, routing=routing,
                )

                decoder = UpstreamDecoder()
                try:
                    async for chunk in session.response.aiter_bytes():
                        for delta in decoder.feed(chunk):
                            if metrics.first_token_ms is None:
                                metrics.first_token_ms = int((time.monotonic() - started) * 1000)
                                logger.info(f"[RELAY] {trace_id} first token at {metrics.first_token_ms}ms")
                            metrics.total_tokens += 1
                            output.append(delta)
                            yield {"type": "content", "delta": delta}
                except httpx.HTTPError as e:
                    raise StreamReadError(f"Upstream stream broke: {e}") from e

                for delta in decoder.flush():
                    metrics.total_tokens += 1
                    output.append(delta)
                    yield {"type": "content", "delta": delta}

            # Completed
            full_response = "".join(output)
            metrics.duration_ms = int((time.monotonic() - started) * 1000)
            await asyncio.to_thread(
                self.traces.complete,
                trace_id, full_response,
                first_token_ms=metrics.first_token_ms,
                total_tokens=metrics.total_tokens,
                duration_ms=metrics.duration_ms,
            )
            logger.info(
                f"[RELAY] {trace_id} completed via {session.provider}/{session.model}: "
                f"tokens={metrics.total_tokens} duration={metrics.duration_ms}ms"
            )
            await self.after_turn(turn, full_response)
            yield {"type": "done", "traceId": trace_id, "metrics": metrics.to_dict()}

        except (asyncio.CancelledError, GeneratorExit):
            self.traces.fail(trace_id, DISCONNECTED, duration_ms=int((time.monotonic() - started) * 1000))
            logger.info(f"[RELAY] {trace_id} client disconnected")
            raise
        except CoachEngineError as e:
            self.traces.fail(trace_id, f"{e.code}: {e.message}", duration_ms=int((time.monotonic() - started) * 1000))
            logger.error(f"[RELAY] {trace_id} failed: {e.message}")
            yield {"type": "error", "error": e.message if e.user_visible else "Internal error", "traceId": trace_id}
        except Exception as e:
            self.traces.fail(trace_id, str(e) or type(e).__name__, duration_ms=int((time.monotonic() - started) * 1000))
            logger.error(f"[RELAY] {trace_id} failed: {e}", exc_info=True)
            yield {"type": "error", "error": "Internal error", "traceId": trace_id}

    def build_prompt(
        self,
        turn: TurnRequest,
        bundle: ContextBundle,
        analysis: Optional[ConversationAnalysis] = None,
        tenure_days: Optional[int] = None,
    ) -> str:
        now = self.clock().astimezone(self.tz)

        ctx = PersonaContext(
            topic=detect_topic(turn.text),
            mood=detect_mood(turn.text),
            time_of_day=time_of_day(now),
            tenure_days=tenure_days,
            detail_level=analysis.required_detail_level if analysis else None,
        )
        resolved = resolve(bundle.persona, ctx)
        if resolved.applied_modifiers:
            logger.info(f"[RELAY] Persona modifiers: {', '.join(resolved.applied_modifiers)}")

        prompt = assemble(PromptInputs(
            coach_name=turn.coach_id.upper(),
            now=now,
            persona_directive=build_directive(resolved) if "persona" in bundle.loaded_modules else "",
            health_summary=bundle.health_summary,
            insights=bundle.insights,
            knowledge=bundle.knowledge,
            metrics=bundle.metrics,
            history=bundle.history,
        ), self.budgets)

        if analysis is not None:
            prompt += "\n\n" + detail_level_instruction(analysis.required_detail_level, analysis.intent)
        return prompt

    async def _tenure_days(self, user_id: str) -> Optional[int]:
        try:
            return await self.aggregator.sources.load_tenure_days(user_id, self.clock())
        except Exception as e:
            logger.warning(f"[RELAY] Tenure lookup failed: {e}")
            return None

    # =========================================================================
    # Post-turn
    # =========================================================================

    async def after_turn(self, turn: TurnRequest, response: str):
        """Hand conversation persistence and memory extraction to the task executor."""

        async def save_conversation():
            await asyncio.to_thread(
                self.conversations.add_turn, turn.user_id, turn.coach_id, turn.text, response, trace_id=turn.trace_id,
            )

        await self.tasks.submit("save_conversation", save_conversation)

        if self.pipeline is not None:
            async def process_memory():
                await self.pipeline.process(turn.user_id, turn.text, source="chat", source_id=turn.trace_id)

            await self.tasks.submit("memory_pipeline", process_memory)
