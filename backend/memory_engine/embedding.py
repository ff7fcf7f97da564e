"""
Optional embedding providers.

A provider turns text into a fixed-length vector or returns ``None`` when it
cannot. The engine holds an ``Optional[EmbeddingProvider]`` and retrieval
branches on its presence; a provider never raises for a transient failure.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

_LOCAL_BACKENDS = {"hash", "local"}
_REMOTE_BACKENDS = {"api", "openai", "router"}


class EmbeddingProvider:
    """Interface: ``embed(text) -> vector | None``."""

    name = "abstract"
    dim = 0

    async def embed(self, text: str) -> Optional[List[float]]:
        raise NotImplementedError

    async def close(self) -> None:
        return None


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", (text or "").strip().lower())


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-tokens vectors; no network, stable across runs."""

    name = "hash"

    def __init__(self, dim: int = 64):
        self.dim = max(1, int(dim))

    async def embed(self, text: str) -> Optional[List[float]]:
        return self.hash_vector(text)

    def hash_vector(self, text: str) -> List[float]:
        vector = [0.0] * self.dim
        normalized = _normalize_text(text)
        tokens = re.findall(r"[a-z0-9_]+", normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for offset in range(0, 8, 2):
                slot = digest[offset] % self.dim
                sign = -1.0 if digest[offset + 1] & 1 else 1.0
                vector[slot] += sign * (1.0 + digest[offset + 2] / 255.0)

        norm = math.sqrt(sum(value * value for value in vector))
        if norm <= 0:
            return vector
        return [value / norm for value in vector]


def extract_embedding(payload: Any) -> Optional[List[float]]:
    """Pull the first vector out of an OpenAI-style ``/embeddings`` response."""
    candidates: List[Any] = []
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, list) and data:
            first = data[0]
            candidates.append(first.get("embedding") if isinstance(first, dict) else first)
        candidates.append(payload.get("embedding"))
    elif isinstance(payload, list):
        candidates.append(payload)

    for candidate in candidates:
        if not isinstance(candidate, list) or not candidate:
            continue
        try:
            return [float(value) for value in candidate]
        except (TypeError, ValueError):
            continue
    return None


class HttpEmbeddingProvider(EmbeddingProvider):
    """
    Remote provider speaking the OpenAI-compatible embeddings API.

    Any HTTP error, timeout, malformed body or dimension mismatch yields
    ``None`` so the caller falls back to keyword scoring.
    """

    name = "api"

    def __init__(
        self,
        api_base: str,
        model: str,
        api_key: str = "",
        dim: int = 0,
        timeout_sec: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = (api_base or "").rstrip("/")
        self.model = model
        self.api_key = api_key
        self.dim = max(0, int(dim))
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_sec), transport=transport
        )

    def _url(self) -> str:
        if self.api_base.endswith("/embeddings"):
            return self.api_base
        return f"{self.api_base}/embeddings"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def embed(self, text: str) -> Optional[List[float]]:
        if not self.api_base or not self.model:
            return None
        payload = {"model": self.model, "input": _normalize_text(text)}
        try:
            response = await self._client.post(
                self._url(), json=payload, headers=self._headers()
            )
            response.raise_for_status()
            vector = extract_embedding(response.json())
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, TypeError) as exc:
            logger.warning("Embedding request to %s failed: %s", self.api_base, exc)
            return None
        if vector is None:
            logger.warning("Embedding response from %s had no vector", self.api_base)
            return None
        if self.dim and len(vector) != self.dim:
            logger.warning(
                "Embedding dimension mismatch: expected %d, got %d", self.dim, len(vector)
            )
            return None
        return vector

    async def close(self) -> None:
        await self._client.aclose()


def cosine_similarity(left: Optional[List[float]], right: Optional[List[float]]) -> float:
    """Cosine similarity; mismatched or empty vectors score 0."""
    if not left or not right or len(left) != len(right):
        return 0.0
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    if norm <= 0:
        return 0.0
    return dot / norm


def build_embedding_provider(
    backend: str,
    *,
    api_base: str = "",
    api_key: str = "",
    model: str = "",
    dim: int = 0,
    timeout_sec: float = 8.0,
) -> Optional[EmbeddingProvider]:
    value = (backend or "none").strip().lower()
    if value in _LOCAL_BACKENDS:
        return HashEmbeddingProvider(dim or 64)
    if value in _REMOTE_BACKENDS:
        if not api_base or not model:
            logger.warning("Embedding backend %r configured without base URL or model", value)
            return None
        return HttpEmbeddingProvider(
            api_base, model, api_key=api_key, dim=dim, timeout_sec=timeout_sec
        )
    return None
