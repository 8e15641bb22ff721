"""Tests for embedding backends and cosine similarity."""
import json

import httpx
import pytest


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical(self):
        from coachstream.core.embeddings import cosine_similarity
        assert cosine_similarity([1, 2, 3], [1, 2, 3]) == pytest.approx(1.0)

    def test_orthogonal(self):
        from coachstream.core.embeddings import cosine_similarity
        assert cosine_similarity([1, 0], [0, 1]) == pytest.approx(0.0)

    def test_degenerate_vectors(self):
        from coachstream.core.embeddings import cosine_similarity

        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0
        assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0


@pytest.mark.asyncio
class TestHTTPEmbeddings:
    """Tests for HTTPEmbeddings."""

    def _backend(self, handler, key="test-key"):
        from coachstream.core.embeddings import HTTPEmbeddings

        return HTTPEmbeddings(
            "https://api.openai.com/v1/",
            key_lookup=lambda: key,
            dimensions=3,
            transport=httpx.MockTransport(handler),
        )

    async def test_returns_vector(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2, 0.3]}]})

        vector = await self._backend(handler).embed("x" * 9000)

        assert vector == [0.1, 0.2, 0.3]
        assert str(seen[0].url) == "https://api.openai.com/v1/embeddings"
        assert seen[0].headers["Authorization"] == "Bearer test-key"
        body = json.loads(seen[0].content)
        assert len(body["input"]) == 8000
        assert body["dimensions"] == 3

    async def test_error_status_returns_none(self):
        backend = self._backend(lambda request: httpx.Response(500, text="boom"))
        assert await backend.embed("hello") is None

    async def test_malformed_body_returns_none(self):
        backend = self._backend(lambda request: httpx.Response(200, json={"data": []}))
        assert await backend.embed("hello") is None

    async def test_no_credential_skips_call(self):
        calls = []
        backend = self._backend(lambda request: calls.append(request), key=None)

        assert await backend.embed("hello") is None
        assert calls == []


class TestCreateEmbeddings:
    """Tests for create_embeddings."""

    def test_http_default(self, config):
        from coachstream.core.embeddings import HTTPEmbeddings, create_embeddings

        backend = create_embeddings(config)
        assert isinstance(backend, HTTPEmbeddings)
        assert backend.base_url == "https://api.openai.com/v1"
        assert backend.key_lookup() == "test-openai-key"

    def test_local(self, config):
        from coachstream.core.embeddings import LocalEmbeddings, create_embeddings

        config.embeddings.backend = "local"
        backend = create_embeddings(config)

        assert isinstance(backend, LocalEmbeddings)
        assert backend._model is None
