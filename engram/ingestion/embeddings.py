"""Text embedders: OpenAI text-embedding-3-small and an offline hashing fallback."""

from __future__ import annotations

import hashlib
import math
import re
from typing import Protocol

from openai import AsyncOpenAI


class Embedder(Protocol):
    """Turns text into fixed-length vectors for the vector index."""

    @property
    def model_name(self) -> str: ...

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


class OpenAIEmbedder:
    """Embeds text through the OpenAI embeddings API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "text-embedding-3-small",
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        # AsyncOpenAI reads OPENAI_API_KEY from env when api_key is None.
        self._client = client or AsyncOpenAI(api_key=api_key or None)

    @property
    def model_name(self) -> str:
        return self._model

    async def embed(self, text: str) -> list[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of texts.

        Args:
            texts: Strings to embed.

        Returns:
            A list of embedding vectors (one per input text), in input order.
        """
        if not texts:
            return []
        response = await self._client.embeddings.create(input=texts, model=self._model)
        return [item.embedding for item in sorted(response.data, key=lambda d: d.index)]


_TOKEN_RE = re.compile(r"\w+")


class HashingEmbedder:
    """Deterministic bag-of-words embedder that needs no network or model.

    Each lowercase word is hashed into one of ``dim`` slots and the counts are
    L2-normalised, so texts sharing words have positive cosine similarity.
    """

    def __init__(self, dim: int = 384) -> None:
        self.dim = dim

    @property
    def model_name(self) -> str:
        return f"hashing-{self.dim}"

    async def embed(self, text: str) -> list[float]:
        return self._encode(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self._encode(t) for t in texts]

    def _encode(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            vector[int.from_bytes(digest, "big") % self.dim] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]
