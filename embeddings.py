"""
Switch Resolution Engine — Embedding Clients
embeddings.py

Responsibilities:
  1. Turn a name fragment into a fixed-length vector (Ollama, OpenAI, or hash)
  2. Cosine similarity for in-memory vector search
"""
from __future__ import annotations

import hashlib
import logging
from typing import Optional, Sequence

import httpx
import numpy as np

from config import Settings, get_settings
from errors import EmbeddingServiceError

logger = logging.getLogger(__name__)


# ============================================================
# Vector Math
# ============================================================

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine distance; 0.0 when either vector is zero or lengths differ."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


# ============================================================
# Embedding Interface
# ============================================================

class EmbeddingClient:
    """
    Abstract embedding provider. Implementations must be deterministic for
    identical input and return vectors of `dim` floats.
    """

    def __init__(self, model: str, dim: int):
        self.model = model
        self.dim = dim

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None

    def _validate(self, vector: object) -> list[float]:
        if not isinstance(vector, list) or not vector:
            raise EmbeddingServiceError("Embedding service returned no vector")
        if len(vector) != self.dim:
            raise EmbeddingServiceError(
                f"Embedding dimension mismatch: expected {self.dim}, got {len(vector)}")
        try:
            return [float(x) for x in vector]
        except (TypeError, ValueError) as e:
            raise EmbeddingServiceError("Embedding contains non-numeric values") from e


class HashEmbeddingClient(EmbeddingClient):
    """Deterministic embedding derived from a SHAKE-256 digest. For local dev and tests."""

    def __init__(self, model: str = "hash", dim: int = 384):
        super().__init__(model, dim)

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> list[float]:
        digest = hashlib.shake_256(text.strip().lower().encode()).digest(self.dim)
        vals = (np.frombuffer(digest, dtype=np.uint8).astype(np.float64) - 128.0) / 128.0
        norm = np.linalg.norm(vals)
        return (vals / norm).tolist() if norm > 0 else vals.tolist()


class _HTTPEmbeddingClient(EmbeddingClient):

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.embedding_model, settings.embedding_dim)
        self.settings = settings
        self._http = http
        self._owns_http = http is None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.external_call_timeout_s))
        return self._http

    async def _post(self, payload: dict, headers: Optional[dict] = None) -> dict:
        url = self.settings.embedding_api_url
        try:
            response = await self.http.post(url, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Embedding API error %s from %s", e.response.status_code, url)
            raise EmbeddingServiceError(
                f"Embedding API returned {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error("Embedding service unreachable (%s): %s", url, e)
            raise EmbeddingServiceError(f"Embedding request failed: {e}") from e
        except ValueError as e:
            raise EmbeddingServiceError("Embedding API returned invalid JSON") from e
        if not isinstance(data, dict):
            raise EmbeddingServiceError(
                f"Embedding API returned {type(data).__name__}, expected an object")
        return data

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None


class OllamaEmbeddingClient(_HTTPEmbeddingClient):
    """Ollama /api/embeddings."""

    async def embed(self, text: str) -> list[float]:
        data = await self._post({"model": self.model, "prompt": text})
        return self._validate(data.get("embedding"))


class OpenAIEmbeddingClient(_HTTPEmbeddingClient):
    """OpenAI-compatible /v1/embeddings."""

    async def embed(self, text: str) -> list[float]:
        if not self.settings.openai_api_key:
            raise EmbeddingServiceError("OPENAI_API_KEY is not configured")
        data = await self._post(
            {"model": self.model, "input": text, "dimensions": self.dim},
            headers={"Authorization": f"Bearer {self.settings.openai_api_key}"},
        )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise EmbeddingServiceError("Unexpected embeddings payload") from e
        return self._validate(vector)


def build_embedding_client(settings: Optional[Settings] = None) -> EmbeddingClient:
    settings = settings or get_settings()
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingClient(settings)
    if settings.embedding_provider == "hash":
        return HashEmbeddingClient(dim=settings.embedding_dim)
    return OllamaEmbeddingClient(settings)
