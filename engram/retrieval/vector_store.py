"""Segment vector store backed by a ChromaDB collection."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import chromadb
from chromadb.config import Settings as ChromaSettings

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "transcript_segments"


class VectorStore:
    """Holds document vectors keyed by UUID and answers nearest-neighbour queries.

    Vectors live in a cosine-space Chroma collection. With a *path* the
    collection is kept in a persistent local Chroma database, so documents
    survive restarts. Without one the store is in-memory; ephemeral Chroma
    clients share state within a process, so each in-memory store gets a
    collection of its own.

    Args:
        path: Directory of the persistent Chroma database.
        collection_name: Collection to use; generated for in-memory stores.
        client: Pre-configured Chroma client, overriding *path*.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        collection_name: str | None = None,
        client: Any = None,
    ) -> None:
        self.path = Path(path).expanduser() if path else None
        if client is None:
            settings = ChromaSettings(anonymized_telemetry=False)
            if self.path is not None:
                self.path.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(self.path), settings=settings)
            else:
                client = chromadb.EphemeralClient(settings=settings)
        self._client = client
        if collection_name is None:
            collection_name = DEFAULT_COLLECTION
            if self.path is None:
                collection_name = f"{DEFAULT_COLLECTION}-{uuid.uuid4().hex[:12]}"
        self.collection_name = collection_name
        self._collection = self._open_collection()

    def _open_collection(self) -> Any:
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def load(self) -> int:
        """Open the collection, returning how many documents it already holds."""
        self._collection = self._open_collection()
        count = self._collection.count()
        if self.path is not None:
            logger.info("Loaded %d documents from %s", count, self.path)
        return count

    def add(self, documents: Iterable[tuple[uuid.UUID, list[float]]]) -> None:
        documents = list(documents)
        if not documents:
            return
        self._collection.upsert(
            ids=[str(doc_id) for doc_id, _ in documents],
            embeddings=[[float(v) for v in vector] for _, vector in documents],
        )

    def delete(self, doc_ids: Iterable[uuid.UUID]) -> None:
        ids = [str(doc_id) for doc_id in doc_ids]
        if ids:
            self._collection.delete(ids=ids)

    def reset(self) -> None:
        """Drop every document by recreating the collection."""
        self._client.delete_collection(name=self.collection_name)
        self._collection = self._open_collection()

    def document_ids(self) -> set[uuid.UUID]:
        return {uuid.UUID(doc_id) for doc_id in self._collection.get(include=[])["ids"]}

    def __contains__(self, doc_id: object) -> bool:
        if not isinstance(doc_id, uuid.UUID):
            return False
        return bool(self._collection.get(ids=[str(doc_id)], include=[])["ids"])

    def __len__(self) -> int:
        return self._collection.count()

    def search(
        self,
        vector: list[float],
        limit: int,
        min_similarity: float = 0.0,
    ) -> list[tuple[uuid.UUID, float]]:
        """Return up to *limit* ``(doc_id, similarity)`` pairs, best first.

        Args:
            vector: Query embedding.
            limit: Maximum number of hits.
            min_similarity: Hits scoring below this cosine similarity are dropped.
        """
        if limit <= 0:
            return []
        count = self._collection.count()
        if count == 0:
            return []
        result = self._collection.query(
            query_embeddings=[[float(v) for v in vector]],
            n_results=min(limit, count),
            include=["distances"],
        )
        hits: list[tuple[uuid.UUID, float]] = []
        for doc_id, distance in zip(result["ids"][0], result["distances"][0], strict=True):
            similarity = 1.0 - distance
            if similarity >= min_similarity:
                hits.append((uuid.UUID(doc_id), similarity))
        return hits
