"""Multi-label tagging against user-defined text descriptions.

Each tag is a text description embedded with the encoder's text tower and
its own threshold. A media item gets every active tag whose similarity
reaches that tag's threshold, independently of every other tag.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field

import numpy as np

from concurrency import ConcurrencyController
from config import CHUNK_SIZE, DEFAULT_TAG_COLOR, DEFAULT_TAG_THRESHOLD, TOP_TAGS_REPORTED
from errors import StoreFailure
from models import Embedder
from pipeline import RunState, run_chunked
from repository import MediaTagAssignment, Repository, TagDefinition, now_ms
from store import Embedding, EmbeddingStore
from vectors import similarities

logger = logging.getLogger(__name__)

PRESETS_INSTALLED_KEY = "preset_tags_installed"


@dataclass(frozen=True)
class PresetTag:
    name: str
    description: str
    threshold: float = DEFAULT_TAG_THRESHOLD
    color: int = DEFAULT_TAG_COLOR


PRESET_TAGS = [
    PresetTag(
        "Renovation",
        "house renovation photos, construction work in progress, floor repairs, wall repairs, "
        "plumbing installation, electrical wiring, unfinished construction, building materials, "
        "construction tools on site",
        0.35, 0xFFFF9800,
    ),
    PresetTag(
        "Children",
        "children in photos, kids playing, toddlers, babies, school children, children portraits, "
        "family photos with children, kids activities",
        0.40, 0xFF4CAF50,
    ),
    PresetTag(
        "Art",
        "paintings, drawn pictures, artwork, illustrations, artistic drawings, canvas art, "
        "digital art, hand-drawn images, sketches",
        0.38, 0xFF673AB7,
    ),
    PresetTag(
        "Selfie",
        "selfie photo taken with front camera, self-portrait, mirror selfie, "
        "person taking photo of themselves",
        0.42, 0xFFFF6F00,
    ),
    PresetTag(
        "Screenshots",
        "phone screenshot, computer screen capture, mobile app interface, visible UI elements, "
        "buttons, menus, text notifications",
        0.38, 0xFF607D8B,
    ),
    PresetTag(
        "Documents",
        "scanned documents, text on paper, receipts, invoices, contracts, forms, "
        "official documents, papers with text",
        0.38, 0xFF2196F3,
    ),
    PresetTag(
        "Food",
        "food on plate, restaurant food, cooking, breakfast, lunch, dinner, desserts, "
        "beverages, drinks, meals",
        0.40, 0xFFFF5722,
    ),
    PresetTag(
        "Nature",
        "natural landscape, trees, forests, mountains, rivers, lakes, sunset, sky, "
        "nature without people, wilderness",
        0.35, 0xFF8BC34A,
    ),
    PresetTag(
        "Pets",
        "pets, dogs, cats, rabbits, birds, domestic animals, pet photos, animals at home",
        0.40, 0xFF795548,
    ),
    PresetTag(
        "Cars",
        "cars, motorcycles, vehicles, automobiles, cars on road, parked cars, "
        "car exteriors and interiors",
        0.35, 0xFF424242,
    ),
    PresetTag(
        "Travel",
        "travel photos, vacation pictures, tourist attractions, airports, hotels, "
        "foreign cities, landmarks, tourism",
        0.35, 0xFF00BCD4,
    ),
    PresetTag(
        "Celebrations",
        "celebrations, parties, birthdays, weddings, festive events, gatherings, "
        "special occasions, party decorations",
        0.38, 0xFFFFEB3B,
    ),
    PresetTag(
        "Sport",
        "sports activities, gym workout, fitness, running, cycling, sports events, "
        "athletic activities, exercise",
        0.38, 0xFF009688,
    ),
    PresetTag(
        "Memes",
        "internet memes, funny pictures, humorous images, viral memes, meme templates, "
        "comedy images, joke pictures",
        0.40, 0xFFCDDC39,
    ),
]


def tag(embedding: np.ndarray, active_tags: list[TagDefinition]) -> list[tuple[str, float]]:
    """Every tag whose similarity meets its own threshold, as (name, confidence)."""
    if not active_tags:
        return []
    scores = similarities(embedding, [t.vector for t in active_tags])
    return [
        (t.name, float(score))
        for t, score in zip(active_tags, scores)
        if score >= t.threshold
    ]


@dataclass
class RetagStats:
    current: int = 0
    total: int = 0
    tags_assigned: int = 0
    active_tags_count: int = 0
    avg_time_per_item: float = 0.0
    items_per_minute: float = 0.0
    top_tags: list[tuple[str, int]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "current": self.current,
            "total": self.total,
            "tags_assigned": self.tags_assigned,
            "active_tags_count": self.active_tags_count,
            "avg_time_per_item": round(self.avg_time_per_item, 4),
            "items_per_minute": round(self.items_per_minute, 1),
            "top_tags": [list(t) for t in self.top_tags],
        }


class TaggingService:
    def __init__(
        self,
        repo: Repository,
        embedder: Embedder,
        image_store: EmbeddingStore,
        controller: ConcurrencyController,
        chunk_size: int = CHUNK_SIZE,
    ):
        self._repo = repo
        self._embedder = embedder
        self._store = image_store
        self._controller = controller
        self._chunk_size = chunk_size

    # -- assignment --

    def assign_tags(
        self,
        media_id: int,
        vector: np.ndarray,
        active_tags: list[TagDefinition] | None = None,
    ) -> list[MediaTagAssignment]:
        """Replace the automatic tags of one item. User-assigned tags are kept."""
        if active_tags is None:
            active_tags = self._repo.list_active_tags()
        matches = tag(vector, active_tags)
        assignments = [
            MediaTagAssignment(media_id=media_id, tag_name=name, confidence=conf)
            for name, conf in matches
        ]
        self._repo.delete_auto_tags_for_media(media_id)
        self._repo.upsert_media_tags(assignments)
        return assignments

    def retag_all(
        self,
        state: RunState | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RetagStats:
        """Re-evaluate every indexed image against the active tags."""
        state = state or RunState()
        try:
            active_tags = self._repo.list_active_tags()
            embeddings = self._store.get_all()
        except StoreFailure as exc:
            logger.error("Cannot start re-tagging: %s", exc)
            state.fail(exc)
            raise

        stats = RetagStats(total=len(embeddings), active_tags_count=len(active_tags))
        counts: Counter = Counter()
        lock = threading.Lock()
        start = time.time()

        def _one(emb: Embedding) -> int:
            assigned = self.assign_tags(emb.id, emb.vector, active_tags)
            with lock:
                stats.current += 1
                stats.tags_assigned += len(assigned)
                counts.update(a.tag_name for a in assigned)
            return 1

        def _extras() -> dict:
            with lock:
                elapsed = time.time() - start
                if stats.current:
                    stats.avg_time_per_item = elapsed / stats.current
                    stats.items_per_minute = stats.current / elapsed * 60 if elapsed > 0 else 0.0
                stats.top_tags = counts.most_common(TOP_TAGS_REPORTED)
                data = stats.to_dict()
            data.pop("current")
            data.pop("total")
            return data

        logger.info(
            "Re-tagging %d images against %d active tags", len(embeddings), len(active_tags)
        )
        run_chunked(
            embeddings,
            _one,
            self._controller,
            state=state,
            cancel_event=cancel_event,
            chunk_size=self._chunk_size,
            extras=_extras,
        )
        _extras()
        return stats

    # -- tag definitions --

    def create_tag(
        self,
        name: str,
        description: str,
        threshold: float = DEFAULT_TAG_THRESHOLD,
        color: int = DEFAULT_TAG_COLOR,
        active: bool = True,
    ) -> TagDefinition:
        """Embed description and store it as tag `name`, replacing any tag of that name."""
        name = name.strip()
        if not name:
            raise ValueError("Tag name must not be empty")
        if not description.strip():
            raise ValueError("Tag description must not be empty")
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Threshold must be within [0, 1], got {threshold}")

        existing = self._repo.get_tag(name)
        now = now_ms()
        tag_def = TagDefinition(
            name=name,
            description=description,
            vector=self._embedder.embed_text(description),
            threshold=threshold,
            color=color,
            active=active,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self._repo.upsert_tag(tag_def)
        logger.info("Saved tag %s (threshold %.2f)", name, threshold)
        return tag_def

    def set_active(self, name: str, active: bool) -> None:
        if self._repo.get_tag(name) is None:
            raise KeyError(name)
        self._repo.set_tag_active(name, active)

    def delete_tag(self, name: str) -> bool:
        return self._repo.delete_tag(name)

    def list_tags(self) -> list[TagDefinition]:
        return self._repo.list_tags()

    def install_presets(self, force: bool = False) -> int:
        """Create the recommended tags that don't exist yet. Returns how many were added.

        Runs once per repository unless force is set.
        """
        if not force and self._repo.get_setting(PRESETS_INSTALLED_KEY, False):
            return 0
        missing = [p for p in PRESET_TAGS if self._repo.get_tag(p.name) is None]
        if missing:
            vectors = self._embedder.embed_texts([p.description for p in missing])
            now = now_ms()
            for preset, vector in zip(missing, vectors):
                self._repo.upsert_tag(TagDefinition(
                    name=preset.name,
                    description=preset.description,
                    vector=vector,
                    threshold=preset.threshold,
                    color=preset.color,
                    created_at=now,
                    updated_at=now,
                ))
        self._repo.set_setting(PRESETS_INSTALLED_KEY, True)
        logger.info("Installed %d preset tags", len(missing))
        return len(missing)

    # -- user assignments --

    def assign_user_tag(self, media_id: int, tag_name: str) -> MediaTagAssignment:
        """Attach a tag by hand. Confidence is the actual similarity when the item is indexed."""
        tag_def = self._repo.get_tag(tag_name)
        if tag_def is None:
            raise KeyError(tag_name)
        stored = self._store.get(media_id)
        confidence = 1.0
        if stored is not None:
            confidence = float(similarities(tag_def.vector, [stored.vector])[0])
        assignment = MediaTagAssignment(
            media_id=media_id,
            tag_name=tag_name,
            confidence=confidence,
            is_user_assigned=True,
        )
        self._repo.upsert_media_tags([assignment])
        return assignment

    def remove_tag(self, media_id: int, tag_name: str) -> bool:
        return self._repo.delete_media_tag(media_id, tag_name)

    def tags_for_media(self, media_id: int) -> list[MediaTagAssignment]:
        return self._repo.tags_for_media(media_id)
