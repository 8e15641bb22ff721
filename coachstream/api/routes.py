"""
Coachstream API Routes

FastAPI routes for the conversational-turn engine.

Endpoints:
    POST /v1/turn - Stream one coaching turn as Server-Sent Events
    GET /v1/turn/health - Provider configuration and breaker state
    POST /v1/patterns/{pattern_id}/addressed - Mark a detected pattern as addressed
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
from fastapi import Depends, FastAPI, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from ..context.aggregator import ContextAggregator
from ..context.sources import ContextSources
from ..core.breaker import CircuitBreaker
from ..core.config import Config, get_config
from ..core.database import Database
from ..core.embeddings import EmbeddingBackend, create_embeddings
from ..core.errors import CoachEngineError, ConfigurationError, ValidationError
from ..core.identity import StaticTokenVerifier, TokenVerifier, parse_bearer
from ..core.llm import ProviderClient
from ..core.logging import setup_logging
from ..core.tasks import TaskExecutor, create_executor
from ..memory.cleanup import CleanupScheduler, MemoryCleanup
from ..memory.conversations import ConversationStore
from ..memory.extractor import InsightExtractor
from ..memory.patterns import PatternStore
from ..memory.pipeline import MemoryPipeline
from ..memory.store import InsightStore
from ..prompt.assembler import PromptBudgets
from ..routing.executor import FallbackExecutor
from ..routing.router import ModelRouter
from ..streaming.relay import TurnRelay, TurnRequest
from ..streaming.sse import sse_event
from ..streaming.traces import TraceStore, new_trace_id

logger = logging.getLogger("coachstream")

EVENT_STREAM = "text/event-stream"
TRACE_HEADER = "X-Trace-Id"


# =============================================================================
# Components
# =============================================================================

@dataclass
class Components:
    """Everything a running app needs, built once at startup."""
    config: Config
    db: Database
    client: ProviderClient
    breaker: CircuitBreaker
    router: ModelRouter
    fallback: FallbackExecutor
    traces: TraceStore
    conversations: ConversationStore
    insights: InsightStore
    patterns: PatternStore
    cleanup: MemoryCleanup
    tasks: TaskExecutor
    verifier: TokenVerifier
    relay: TurnRelay


def build_components(
    config: Optional[Config] = None,
    db: Optional[Database] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    embeddings: Optional[EmbeddingBackend] = None,
    verifier: Optional[TokenVerifier] = None,
    tasks: Optional[TaskExecutor] = None,
) -> Components:
    """Wire storage, providers, routing, memory and the relay from config.

    Args:
        config: Configuration (defaults to get_config())
        db: Database (defaults to one built from config.database)
        transport: httpx transport for provider calls (tests inject a MockTransport)
        embeddings: Embedding backend for semantic dedup (defaults to create_embeddings)
        verifier: Bearer token verifier (defaults to the static token map)
        tasks: Post-turn task executor (defaults to config.tasks.mode)
    """
    config = config or get_config()
    db = db or Database(db_path=config.database.path, in_memory=config.database.in_memory)

    client = ProviderClient(
        providers=config.providers,
        key_lookup=config.provider_key,
        transport=transport,
    )
    breaker = CircuitBreaker(
        error_threshold=config.breaker.error_threshold,
        window_seconds=config.breaker.window_seconds,
        recovery_timeout=config.breaker.recovery_timeout,
    )
    router = ModelRouter(config.router, config.providers)
    fallback = FallbackExecutor(client, router, breaker)

    memory = config.memory
    if embeddings is None and memory.dedup_mode == "semantic":
        embeddings = create_embeddings(config)
    insights = InsightStore(db, embeddings=embeddings, mode=memory.dedup_mode, dedup_threshold=memory.dedup_threshold)
    patterns = PatternStore(db)
    conversations = ConversationStore(db)
    extractor = InsightExtractor(
        fallback,
        provider=memory.extraction_provider,
        model=memory.extraction_model,
        min_message_length=memory.min_message_length,
        min_insight_length=memory.min_insight_length,
    )
    pipeline = MemoryPipeline(
        extractor, insights, patterns,
        existing_limit=memory.existing_limit,
        pattern_source_limit=memory.pattern_source_limit,
    )
    cleanup = MemoryCleanup(
        db,
        staleness_days=memory.staleness_days,
        protected_importances=memory.protected_importances,
        pattern_retention_days=memory.pattern_retention_days,
    )

    sources = ContextSources(
        db, insights, conversations,
        knowledge_top_k=config.context.knowledge_top_k,
        history_fetch=config.context.history_fetch,
        insight_limit=config.context.insight_limit,
    )
    aggregator = ContextAggregator(sources, timeout=config.context.loader_timeout)
    budgets = PromptBudgets(
        history_turns=config.prompt.history_turns,
        history_chars=config.prompt.history_chars,
        knowledge_top_k=config.context.knowledge_top_k,
        knowledge_chars=config.prompt.knowledge_chars,
        insights_per_category=config.prompt.insights_per_category,
    )
    traces = TraceStore(
        db,
        prompt_chars=config.prompt.prompt_snapshot_chars,
        output_chars=config.prompt.output_snapshot_chars,
    )
    tasks = tasks or create_executor(config.tasks.mode)

    relay = TurnRelay(
        aggregator, router, fallback, traces, conversations, pipeline, tasks,
        budgets=budgets,
        timezone=config.system.timezone,
    )

    return Components(
        config=config,
        db=db,
        client=client,
        breaker=breaker,
        router=router,
        fallback=fallback,
        traces=traces,
        conversations=conversations,
        insights=insights,
        patterns=patterns,
        cleanup=cleanup,
        tasks=tasks,
        verifier=verifier or StaticTokenVerifier(config.auth.tokens),
        relay=relay,
    )


# =============================================================================
# Request Models
# =============================================================================

class TurnBody(BaseModel):
    """Turn request body. `text` is accepted as an alias of `message`."""
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = Field(default=None, description="User message")
    text: Optional[str] = Field(default=None, description="Alias of message")
    coach_id: Optional[str] = Field(default=None, alias="coachId", description="Coach identifier")
    research_plus: bool = Field(default=False, alias="researchPlus", description="Force the research path")
    images: List[Any] = Field(default_factory=list, description="Attached images")

    @property
    def utterance(self) -> str:
        return (self.message or self.text or "").strip()


# =============================================================================
# Dependencies
# =============================================================================

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_trace_id(request: Request) -> str:
    """Honour an incoming X-Trace-Id, otherwise mint a new one."""
    trace_id = request.headers.get(TRACE_HEADER) or new_trace_id()
    request.state.trace_id = trace_id
    return trace_id


async def authenticate(
    authorization: Optional[str] = Security(api_key_header),
    components: Components = Depends(get_components),
) -> str:
    """Resolve the bearer token to a user id.

    Raises:
        AuthError: missing, malformed or unknown token
    """
    token = parse_bearer(authorization)
    return components.verifier.verify(token)


def _error_response(request: Request, status_code: int, error: str) -> JSONResponse:
    trace_id = getattr(request.state, "trace_id", None) or new_trace_id()
    return JSONResponse(
        status_code=status_code,
        content={"ok": False, "error": error, "traceId": trace_id},
        headers={TRACE_HEADER: trace_id},
    )


async def engine_error_handler(request: Request, exc: CoachEngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"[API] {exc.code}: {exc.message}")
    else:
        logger.info(f"[API] Rejected request: {exc.code}: {exc.message}")
    return _error_response(request, exc.status_code, exc.message if exc.user_visible else "Internal error")


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info(f"[API] Invalid request body: {exc.errors()}")
    return _error_response(request, 400, "Invalid request body")


# =============================================================================
# App
# =============================================================================

def create_app(components: Optional[Components] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        components: Prebuilt components (tests); built from config otherwise
    """
    components = components or build_components()
    config = components.config

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging(
            level=config.system.log_level,
            tz_name=config.system.timezone,
            log_dir=config.system.log_dir,
        )
        logger.info("Starting Coachstream...")

        configured = [name for name, ok in components.client.configured().items() if ok]
        if configured:
            logger.info(f"Providers configured: {', '.join(configured)}")
        else:
            logger.warning("No AI provider configured - turns will fail")

        scheduler = None
        if config.memory.cleanup_interval_hours > 0:
            scheduler = CleanupScheduler(components.cleanup, interval_hours=config.memory.cleanup_interval_hours)
            scheduler.start()

        yield

        logger.info("Shutting down Coachstream...")
        if scheduler is not None:
            scheduler.stop()
        await components.tasks.drain()
        await components.client.close()

    app = FastAPI(
        title="Coachstream",
        description="Conversational-turn engine for health and fitness coaching",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CoachEngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # =========================================================================
    # Routes
    # =========================================================================

    @app.get("/v1/turn/health", tags=["System"])
    async def turn_health(
        trace_id: str = Depends(get_trace_id),
        components: Components = Depends(get_components),
    ):
        """Provider credentials and breaker state."""
        return JSONResponse(
            content={
                "ok": True,
                "streaming": True,
                "providers": components.client.configured(),
                "breaker": components.breaker.status().to_dict(),
                "traceId": trace_id,
            },
            headers={TRACE_HEADER: trace_id},
        )

    @app.post("/v1/turn", tags=["Turn"])
    async def turn(
        request: Request,
        body: TurnBody,
        trace_id: str = Depends(get_trace_id),
        user_id: str = Depends(authenticate),
        components: Components = Depends(get_components),
    ):
        """Stream one coaching turn.

        Tool-requiring and research turns are not streamed; the client gets a
        JSON redirect to the blocking endpoint instead.
        """
        text = body.utterance
        if not text:
            raise ValidationError("Missing message")

        accept = request.headers.get("accept", "")
        if EVENT_STREAM not in accept:
            raise ValidationError(f"Accept header must include {EVENT_STREAM}")

        if not any(components.client.configured().values()):
            raise ConfigurationError("No AI provider configured")

        turn_request = TurnRequest(
            user_id=user_id,
            coach_id=body.coach_id or components.config.system.default_coach,
            text=text,
            trace_id=trace_id,
            has_images=bool(body.images),
            research_plus=body.research_plus,
        )
        logger.info(
            f"[TURN] {trace_id} user={user_id} coach={turn_request.coach_id}: "
            f"{text[:100]}{'...' if len(text) > 100 else ''}"
        )

        relay = components.relay
        reason = relay.redirect_reason(turn_request)
        if reason:
            await asyncio.to_thread(relay.redirect, turn_request, reason)
            return JSONResponse(
                content={"redirect": "blocking", "reason": reason, "traceId": trace_id},
                headers={TRACE_HEADER: trace_id},
            )

        async def generate():
            async for event in relay.run(turn_request):
                yield sse_event(event)

        return StreamingResponse(
            generate(),
            media_type=EVENT_STREAM,
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                TRACE_HEADER: trace_id,
            },
        )

    @app.post("/v1/patterns/{pattern_id}/addressed", tags=["Memory"])
    async def pattern_addressed(
        pattern_id: str,
        request: Request,
        trace_id: str = Depends(get_trace_id),
        user_id: str = Depends(authenticate),
        components: Components = Depends(get_components),
    ):
        """Mark a detected pattern as addressed so retention can sweep it."""
        if not await asyncio.to_thread(components.patterns.mark_addressed, pattern_id, user_id=user_id):
            return _error_response(request, 404, "Pattern not found")
        logger.info(f"[PATTERNS] {pattern_id} addressed by user={user_id}")
        return JSONResponse(
            content={"ok": True, "patternId": pattern_id, "traceId": trace_id},
            headers={TRACE_HEADER: trace_id},
        )

    return app


# =============================================================================
# Main Entry Point
# =============================================================================

def main():
    import uvicorn

    config = get_config()
    uvicorn.run(
        "coachstream.api.routes:create_app",
        factory=True,
        host=config.system.host,
        port=config.system.port,
        reload=config.system.debug,
    )


if __name__ == "__main__":
    main()
