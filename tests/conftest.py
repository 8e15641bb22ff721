"""
Coachstream Test Configuration

Shared fixtures and configuration for pytest.
"""

import json
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import httpx
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

GATEWAY_HOST = "ai.gateway.lovable.dev"
OPENAI_HOST = "api.openai.com"
PERPLEXITY_HOST = "api.perplexity.ai"


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


# =============================================================================
# Upstream Provider Fakes
# =============================================================================

def sse_body(deltas: Iterable[str], done: bool = True) -> bytes:
    """Encode content deltas the way an OpenAI-compatible stream sends them."""
    lines = [
        f"data: {json.dumps({'choices': [{'delta': {'content': d}}]}, ensure_ascii=False)}\n\n"
        for d in deltas
    ]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered as separate reads."""

    def __init__(self, chunks: Sequence[bytes]):
        self.chunks = list(chunks)

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


class Upstream:
    """Scripted provider responses keyed by host, for httpx.MockTransport.

    Streaming and non-streaming requests are scripted separately. Each host
    plays its scripted responses in order and repeats the last one.
    """

    def __init__(self):
        self.streams: Dict[str, List[dict]] = {}
        self.completions: Dict[str, List[dict]] = {}
        self.requests: List[httpx.Request] = []

    def stream(self, host: str, deltas: Sequence[str] = (), status: int = 200,
               chunks: Optional[Sequence[bytes]] = None):
        self.streams.setdefault(host, []).append({"status": status, "deltas": list(deltas), "chunks": chunks})
        return self

    def complete(self, host: str, content: str = "[]", status: int = 200):
        self.completions.setdefault(host, []).append({"status": status, "content": content})
        return self

    def hosts(self) -> List[str]:
        return [request.url.host for request in self.requests]

    def payloads(self) -> List[dict]:
        return [json.loads(request.content) for request in self.requests]

    @staticmethod
    def _next(script: List[dict]) -> dict:
        return script.pop(0) if len(script) > 1 else script[0]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = json.loads(request.content or b"{}")
        host = request.url.host

        if payload.get("stream"):
            script = self.streams.get(host)
            if not script:
                return httpx.Response(503, content=b"no stream scripted")
            step = self._next(script)
            if step["status"] != 200:
                return httpx.Response(step["status"], content=b"upstream error")
            if step["chunks"] is not None:
                return httpx.Response(200, stream=ChunkStream(step["chunks"]))
            return httpx.Response(200, content=sse_body(step["deltas"]))

        script = self.completions.get(host)
        step = self._next(script) if script else {"status": 200, "content": "[]"}
        if step["status"] != 200:
            return httpx.Response(step["status"], json={"error": "upstream error"})
        return httpx.Response(200, json={"choices": [{"message": {"content": step["content"]}}]})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeEmbeddings:
    """Embedding backend returning fixed vectors per text."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default: Optional[List[float]] = None):
        self.vectors = vectors or {}
        self.default = default
        self.calls: List[str] = []

    async def embed(self, text: str) -> Optional[List[float]]:
        self.calls.append(text)
        return self.vectors.get(text, self.default)


# =============================================================================
# Environment Fixtures
# =============================================================================

@pytest.fixture
def provider_keys(monkeypatch):
    """Credentials for the gateway and OpenAI; perplexity stays unconfigured."""
    monkeypatch.setenv("LOVABLE_API_KEY", "test-gateway-key")
    monkeypatch.setenv("OPENAI_API_KEY", "test-openai-key")
    monkeypatch.delenv("PERPLEXITY_API_KEY", raising=False)


@pytest.fixture
def config(provider_keys):
    """Test configuration: in-memory storage, inline tasks, one static token."""
    from coachstream.core.config import Config

    return Config(
        system={"timezone": "UTC", "default_coach": "ares"},
        database={"in_memory": True},
        auth={"tokens": {"test-token": "user-1"}},
        memory={"dedup_mode": "semantic", "cleanup_interval_hours": 0},
        tasks={"mode": "inline"},
    )


# =============================================================================
# Storage Fixtures
# =============================================================================

@pytest.fixture
def db():
    """Fresh in-memory database with the full schema."""
    from coachstream.core.database import Database

    database = Database(in_memory=True)
    yield database
    database.close()


@pytest.fixture
def embeddings():
    return FakeEmbeddings(default=[1.0, 0.0, 0.0])


@pytest.fixture
def seed_persona(db):
    """Insert a persona (optionally assigned to a user) and return its id."""
    from coachstream.core.database import dumps

    def _seed(persona_id: str = "ares-classic", name: str = "Ares", coach_id: str = "ares",
              user_id: Optional[str] = None, **fields):
        row = {
            "id": persona_id,
            "name": name,
            "coach_id": coach_id,
            "description": fields.pop("description", "Old-school strength coach"),
            "phrases": dumps(fields.pop("phrases", [])),
            "example_responses": dumps(fields.pop("example_responses", [])),
        }
        row.update(fields)
        db.insert("personas", row)
        if user_id:
            db.insert("user_personas", {"user_id": user_id, "persona_id": persona_id})
        return persona_id

    return _seed


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def components(config, db, upstream, embeddings):
    """Fully wired engine over the in-memory database and scripted providers."""
    from coachstream.api.routes import build_components
    from coachstream.core.tasks import InlineExecutor

    return build_components(
        config=config,
        db=db,
        transport=upstream.transport,
        embeddings=embeddings,
        tasks=InlineExecutor(),
    )
