"""Few-shot prototypes: named mean embeddings built from a handful of sample images.

A prototype stands for something text can't describe well ("our dog",
"grandma's car"). Each sample may be cropped to the region that matters.
The prototype vector is the mean of its sample vectors and is recomputed
whenever a sample is added or removed. Removing the last sample deletes
the prototype.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from config import DEFAULT_TAG_COLOR
from media import open_image
from models import Embedder
from repository import FewShotPrototype, FewShotSample, Repository, now_ms
from vectors import average_embedding

logger = logging.getLogger(__name__)

CATEGORIES = ("person", "object", "scene", "style")


@dataclass
class CropRect:
    left: int
    top: int
    width: int
    height: int

    @classmethod
    def from_dict(cls, data: dict) -> "CropRect":
        try:
            rect = cls(int(data["left"]), int(data["top"]), int(data["width"]), int(data["height"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Invalid crop rectangle: {data}") from exc
        if rect.left < 0 or rect.top < 0 or rect.width <= 0 or rect.height <= 0:
            raise ValueError(f"Invalid crop rectangle: {data}")
        return rect

    def to_json(self) -> str:
        return json.dumps(
            {"left": self.left, "top": self.top, "width": self.width, "height": self.height}
        )

    def apply(self, image: Image.Image) -> Image.Image:
        """Crop image to this rectangle, clamped to the image bounds."""
        left = min(self.left, image.width - 1)
        top = min(self.top, image.height - 1)
        right = min(left + self.width, image.width)
        bottom = min(top + self.height, image.height)
        return image.crop((left, top, right, bottom))


# (path, crop) where crop is None for the whole image
Sample = tuple[str, CropRect | None]


def parse_samples(raw: list) -> list[Sample]:
    """Accept plain paths or {"path": ..., "crop": {...}} dicts."""
    samples = []
    for item in raw:
        if isinstance(item, str):
            samples.append((item, None))
        else:
            crop = item.get("crop")
            samples.append((item["path"], CropRect.from_dict(crop) if crop else None))
    return samples


class FewShotService:
    def __init__(self, repo: Repository, embedder: Embedder):
        self._repo = repo
        self._embedder = embedder

    def _embed_sample(self, path: str, crop: CropRect | None):
        image = open_image(Path(path))
        if crop is not None:
            image = crop.apply(image)
        return self._embedder.embed(image)

    def _require(self, prototype_id: int) -> FewShotPrototype:
        prototype = self._repo.get_fewshot_prototype(prototype_id)
        if prototype is None:
            raise KeyError(prototype_id)
        return prototype

    def create(
        self,
        name: str,
        samples: list[Sample],
        color: int = DEFAULT_TAG_COLOR,
        description: str | None = None,
        category: str | None = None,
    ) -> FewShotPrototype:
        """Embed every sample and store their mean as prototype `name`."""
        name = name.strip()
        if not name:
            raise ValueError("Prototype name must not be empty")
        if not samples:
            raise ValueError("Cannot create a prototype without samples")
        if category is not None and category not in CATEGORIES:
            raise ValueError(f"Unknown category {category!r}, expected one of {CATEGORIES}")
        if self._repo.get_fewshot_prototype_by_name(name) is not None:
            raise ValueError(f"A prototype named {name!r} already exists")

        resolved = [(str(Path(p).resolve()), crop) for p, crop in samples]
        vectors = [self._embed_sample(p, crop) for p, crop in resolved]
        now = now_ms()
        prototype = FewShotPrototype(
            name=name,
            vector=average_embedding(vectors),
            sample_count=len(vectors),
            color=color,
            description=description,
            category=category,
            created_at=now,
            updated_at=now,
        )
        self._repo.insert_fewshot_prototype(prototype, [
            FewShotSample(0, p, v, crop.to_json() if crop else None, now)
            for (p, crop), v in zip(resolved, vectors)
        ])
        logger.info("Created few-shot prototype %s from %d samples", name, len(vectors))
        return prototype

    def add_sample(self, prototype_id: int, path: str, crop: CropRect | None = None) -> FewShotPrototype:
        self._require(prototype_id)
        resolved = str(Path(path).resolve())
        vector = self._embed_sample(resolved, crop)
        self._repo.add_fewshot_sample(
            FewShotSample(prototype_id, resolved, vector, crop.to_json() if crop else None)
        )
        return self.recompute(prototype_id)

    def remove_sample(self, prototype_id: int, sample_id: int) -> FewShotPrototype | None:
        """Drop one sample. Returns None when that was the last one and the prototype is gone."""
        self._require(prototype_id)
        if not self._repo.delete_fewshot_sample(prototype_id, sample_id):
            raise KeyError(sample_id)
        return self.recompute(prototype_id)

    def recompute(self, prototype_id: int) -> FewShotPrototype | None:
        samples = self._repo.fewshot_samples(prototype_id)
        if not samples:
            logger.info("Prototype %d has no samples left, deleting it", prototype_id)
            self._repo.delete_fewshot_prototype(prototype_id)
            return None
        self._repo.update_fewshot_vector(
            prototype_id, average_embedding([s.vector for s in samples]), len(samples)
        )
        return self._repo.get_fewshot_prototype(prototype_id)

    def update(
        self,
        prototype_id: int,
        name: str | None = None,
        color: int | None = None,
        description: str | None = None,
        category: str | None = None,
    ) -> FewShotPrototype:
        """Change the label fields of a prototype. Its vector is left alone."""
        current = self._require(prototype_id)
        new_name = (name if name is not None else current.name).strip()
        if not new_name:
            raise ValueError("Prototype name must not be empty")
        if category is not None and category not in CATEGORIES:
            raise ValueError(f"Unknown category {category!r}, expected one of {CATEGORIES}")
        clash = self._repo.get_fewshot_prototype_by_name(new_name)
        if clash is not None and clash.id != prototype_id:
            raise ValueError(f"A prototype named {new_name!r} already exists")
        self._repo.update_fewshot_metadata(
            prototype_id,
            new_name,
            color if color is not None else current.color,
            description if description is not None else current.description,
            category if category is not None else current.category,
        )
        return self._repo.get_fewshot_prototype(prototype_id)

    def delete(self, prototype_id: int) -> bool:
        return self._repo.delete_fewshot_prototype(prototype_id)

    def get(self, name: str) -> FewShotPrototype:
        prototype = self._repo.get_fewshot_prototype_by_name(name)
        if prototype is None:
            raise KeyError(name)
        return prototype

    def list_prototypes(self) -> list[FewShotPrototype]:
        return self._repo.list_fewshot_prototypes()

    def samples(self, prototype_id: int) -> list[FewShotSample]:
        self._require(prototype_id)
        return self._repo.fewshot_samples(prototype_id)
