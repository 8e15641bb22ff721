"""
Coachstream Embeddings

Embedding backends used by semantic insight deduplication.

- HTTPEmbeddings: OpenAI-compatible /embeddings endpoint (default)
- LocalEmbeddings: sentence-transformers, loaded lazily on first use

Both return None instead of raising when a vector cannot be produced; the
memory store then falls back to inserting without an embedding.
"""

import logging
from typing import Callable, List, Optional, Sequence

import httpx
import numpy as np

from .config import Config, get_config

logger = logging.getLogger(__name__)

MAX_EMBED_CHARS = 8000


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors (0.0 for empty or zero vectors)."""
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


class EmbeddingBackend:
    """Interface for embedding providers."""

    async def embed(self, text: str) -> Optional[List[float]]:
        raise NotImplementedError


class HTTPEmbeddings(EmbeddingBackend):
    """OpenAI-compatible embeddings over HTTP."""

    def __init__(
        self,
        base_url: str,
        key_lookup: Callable[[], Optional[str]],
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_lookup = key_lookup
        self.model = model
        self.dimensions = dimensions
        self.timeout = timeout
        self.transport = transport

    async def embed(self, text: str) -> Optional[List[float]]:
        key = self.key_lookup()
        if not key:
            logger.debug("[EMBED] No credential configured, skipping embedding")
            return None

        payload = {
            "model": self.model,
            "input": text[:MAX_EMBED_CHARS],
            "dimensions": self.dimensions,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/embeddings",
                    json=payload,
                    headers={"Authorization": f"Bearer {key}"},
                )
            if response.status_code != 200:
                logger.warning(f"[EMBED] API error {response.status_code}: {response.text[:200]}")
                return None
            return response.json()["data"][0]["embedding"]
        except (httpx.HTTPError, KeyError, IndexError, ValueError) as e:
            logger.warning(f"[EMBED] Embedding failed: {e}")
            return None


class LocalEmbeddings(EmbeddingBackend):
    """Sentence transformer embeddings computed in-process."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", device: str = "cpu"):
        self.model_name = model_name
        self.device = device
        self._model = None

    def _load_model(self):
        """Lazy load the model on first use."""
        if self._model is not None:
            return

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for local embeddings. "
                "Install with: pip install coachstream[local-embeddings]"
            )

        logger.info(f"[EMBED] Loading embeddings model: {self.model_name}")
        self._model = SentenceTransformer(self.model_name, device=self.device)

    async def embed(self, text: str) -> Optional[List[float]]:
        try:
            self._load_model()
            vector = self._model.encode(
                [text[:MAX_EMBED_CHARS]],
                normalize_embeddings=True,
                convert_to_numpy=True,
            )[0]
            return vector.tolist()
        except ImportError:
            raise
        except Exception as e:
            logger.warning(f"[EMBED] Local embedding failed: {e}")
            return None


def create_embeddings(config: Optional[Config] = None) -> EmbeddingBackend:
    """Build the configured embedding backend."""
    config = config or get_config()
    settings = config.embeddings

    if settings.backend == "local":
        return LocalEmbeddings(model_name=settings.local_model_name, device=settings.device)

    provider = config.providers[settings.provider]
    return HTTPEmbeddings(
        base_url=provider.base_url,
        key_lookup=lambda: config.provider_key(settings.provider),
        model=settings.model_name,
        dimensions=settings.dimensions,
    )
