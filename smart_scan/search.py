import logging
from dataclasses import dataclass

import numpy as np

from config import DEFAULT_TOP_K, SEARCH_THRESHOLD
from models import Embedder
from repository import Repository
from store import EmbeddingStore
from vectors import average_embedding, normalize, similarities, top_n

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    media_id: int
    path: str
    kind: str
    score: float


class SearchEngine:
    """Ranks stored embeddings against a text query or another item's vector."""

    def __init__(self, repo: Repository, embedder: Embedder, stores: dict[str, EmbeddingStore]):
        self._repo = repo
        self._embedder = embedder
        self._stores = stores

    def _store(self, kind: str) -> EmbeddingStore:
        try:
            return self._stores[kind]
        except KeyError:
            raise ValueError(f"Unknown media kind: {kind}") from None

    def _rank(
        self,
        vector: np.ndarray,
        kind: str,
        top_k: int,
        threshold: float,
        tag: str | None,
        exclude: int | None = None,
    ) -> list[SearchResult]:
        records = self._store(kind).get_all()
        if tag is not None:
            allowed = self._repo.media_ids_for_tag(tag)
            records = [r for r in records if r.id in allowed]
        if exclude is not None:
            records = [r for r in records if r.id != exclude]
        if not records:
            return []

        scores = similarities(vector, [r.vector for r in records])
        results = []
        for idx in top_n(scores, top_k, threshold):
            item = self._repo.get_media(records[idx].id)
            if item is None:
                # Embedding of media that has since left the catalog
                continue
            results.append(SearchResult(item.id, item.path, item.kind, float(scores[idx])))
        return results

    def search(
        self,
        query: str,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = SEARCH_THRESHOLD,
        kind: str = "image",
        tag: str | None = None,
        prototype: str | None = None,
    ) -> list[SearchResult]:
        """Rank stored items against a text query, a few-shot prototype, or both.

        With both, the query vector and the prototype vector are averaged so
        "our dog on the beach" finds that dog in beach scenes.
        """
        if not query.strip() and prototype is None:
            raise ValueError("Query must not be empty")
        vectors = []
        if query.strip():
            vectors.append(normalize(self._embedder.embed_text(query)))
        if prototype is not None:
            chosen = self._repo.get_fewshot_prototype_by_name(prototype)
            if chosen is None:
                raise KeyError(prototype)
            vectors.append(normalize(chosen.vector))
        vector = vectors[0] if len(vectors) == 1 else average_embedding(vectors)
        results = self._rank(vector, kind, top_k, threshold, tag)
        logger.info("Search %r (prototype %s): %d results", query, prototype, len(results))
        return results

    def find_similar(
        self,
        media_id: int,
        top_k: int = DEFAULT_TOP_K,
        threshold: float = SEARCH_THRESHOLD,
        tag: str | None = None,
    ) -> list[SearchResult]:
        """Items whose stored vector is closest to media_id's. The item itself is excluded."""
        item = self._repo.get_media(media_id)
        if item is None:
            return []
        stored = self._store(item.kind).get(media_id)
        if stored is None:
            return []
        return self._rank(stored.vector, item.kind, top_k, threshold, tag, exclude=media_id)
