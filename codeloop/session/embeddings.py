"""
Embedding providers for retrieval-augmented context.

``HashingEmbedder`` needs no network: it hashes word tokens into a fixed
number of buckets, which is enough for lexical similarity between turns.
``OpenAICompatEmbedder`` calls an OpenAI-compatible ``/embeddings`` endpoint
over httpx.
"""

from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod
from typing import Sequence

import httpx

from codeloop.errors import NetworkFatal, NetworkTransient

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


class Embedder(ABC):
    """Turns text into a vector."""

    name: str = "embedder"

    @abstractmethod
    async def embed(self, text: str) -> list[float]: ...


class HashingEmbedder(Embedder):
    """Deterministic bag-of-words embedding, L2-normalised."""

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions
        self.name = f"hashing:{dimensions}"

    async def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]


class OpenAICompatEmbedder(Embedder):
    """
    Parameters
    ----------
    url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"``.
    model:
        Embedding model, e.g. ``"text-embedding-3-small"``.
    api_key:
        Bearer token; ``""`` for local endpoints.
    """

    def __init__(
        self,
        url: str = "https://api.openai.com/v1",
        model: str = "text-embedding-3-small",
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self.name = f"openai:{model}"

    async def embed(self, text: str) -> list[float]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    f"{self._url}/embeddings",
                    json={"model": self._model, "input": text},
                    headers=headers,
                )
        except httpx.TransportError as exc:
            raise NetworkTransient(f"Transport error: {exc}") from exc

        if resp.status_code == 429 or resp.status_code >= 500:
            raise NetworkTransient(f"HTTP {resp.status_code}", status_code=resp.status_code)
        if resp.status_code >= 400:
            raise NetworkFatal(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        data = resp.json().get("data") or []
        if not data:
            raise NetworkFatal("Embedding response carried no data")
        return [float(v) for v in data[0].get("embedding", [])]


def cosine_similarity(lhs: Sequence[float], rhs: Sequence[float]) -> float:
    if not lhs or not rhs or len(lhs) != len(rhs):
        return 0.0
    dot = sum(a * b for a, b in zip(lhs, rhs))
    left = math.sqrt(sum(a * a for a in lhs))
    right = math.sqrt(sum(b * b for b in rhs))
    if left == 0 or right == 0:
        return 0.0
    return dot / (left * right)
