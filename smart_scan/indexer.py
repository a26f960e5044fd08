"""Incremental embedding indexer.

One generic Indexer drives every media kind. What differs between images
and videos is only how content is loaded and reduced to one vector:

    image: open_image(path)      -> embedder.embed(image)
    video: extract_frames(path)  -> embedder.embed_frames(frames)

Indexing is idempotent. Ids already in the store are skipped, so a crashed
or cancelled run is resumed by running it again.
"""

import logging
import threading
from functools import partial
from pathlib import Path
from typing import Any, Callable, Iterable

import numpy as np

from concurrency import ConcurrencyController
from config import CHUNK_SIZE, VIDEO_FRAME_COUNT
from media import extract_frames, open_image
from models import Embedder
from pipeline import RunState, run_chunked
from store import Embedding, EmbeddingStore

logger = logging.getLogger(__name__)

Resolver = Callable[[int], Path]
ContentLoader = Callable[[Path], Any]
ContentEmbedder = Callable[[Any], np.ndarray]


class Indexer:
    def __init__(
        self,
        store: EmbeddingStore,
        resolve: Resolver,
        load: ContentLoader,
        embed: ContentEmbedder,
        controller: ConcurrencyController,
        chunk_size: int = CHUNK_SIZE,
        purge_missing: bool = False,
        name: str = "media",
    ):
        self.store = store
        self.name = name
        self._resolve = resolve
        self._load = load
        self._embed = embed
        self._controller = controller
        self._chunk_size = chunk_size
        self._purge_missing = purge_missing

    def _index_one(self, media_id: int) -> int:
        path = self._resolve(media_id)
        content = self._load(path)
        vector = self._embed(content)
        self.store.add([Embedding.create(media_id, vector)])
        return 1

    def run(
        self,
        ids: Iterable[int],
        state: RunState | None = None,
        cancel_event: threading.Event | None = None,
    ) -> int:
        """Index every id not yet in the store. Returns how many were newly indexed."""
        requested = list(dict.fromkeys(ids))

        if self._purge_missing:
            stale = self.store.existing_ids() - set(requested)
            if stale:
                removed = self.store.delete_ids(stale)
                logger.info("Purged %d stale %s embeddings", removed, self.name)

        existing = self.store.existing_ids()
        pending = [i for i in requested if i not in existing]
        logger.info(
            "Indexing %d %s items (%d already indexed)",
            len(pending), self.name, len(requested) - len(pending),
        )

        count = run_chunked(
            pending,
            self._index_one,
            self._controller,
            state=state,
            cancel_event=cancel_event,
            chunk_size=self._chunk_size,
        )
        self.store.drain()
        logger.info("Indexed %d new %s items", count, self.name)
        return count


def image_indexer(
    store: EmbeddingStore,
    resolve: Resolver,
    embedder: Embedder,
    controller: ConcurrencyController,
    **kwargs,
) -> Indexer:
    return Indexer(store, resolve, open_image, embedder.embed, controller, name="image", **kwargs)


def video_indexer(
    store: EmbeddingStore,
    resolve: Resolver,
    embedder: Embedder,
    controller: ConcurrencyController,
    frame_count: int = VIDEO_FRAME_COUNT,
    **kwargs,
) -> Indexer:
    kwargs.setdefault("purge_missing", True)
    return Indexer(
        store,
        resolve,
        partial(extract_frames, frame_count=frame_count),
        embedder.embed_frames,
        controller,
        name="video",
        **kwargs,
    )
