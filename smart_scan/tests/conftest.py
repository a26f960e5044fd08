import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models import Embedder, EmbeddingModel

DIM = 4

# Text prompts understood by ColorModel, mapped to the RGB they describe
COLOR_WORDS = {
    "red": (255, 0, 0),
    "green": (0, 255, 0),
    "blue": (0, 0, 255),
    "yellow": (255, 255, 0),
    "white": (255, 255, 255),
}


def color_vector(rgb) -> np.ndarray:
    vec = np.array([rgb[0] / 255, rgb[1] / 255, rgb[2] / 255, 0.05], dtype=np.float32)
    return vec / np.linalg.norm(vec)


class ColorModel(EmbeddingModel):
    """Deterministic stand-in encoder: an image embeds as its mean colour."""

    name = "color"
    embedding_dim = DIM

    def __init__(self):
        self._loaded = False
        self.image_calls = 0

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self, device) -> None:
        self._loaded = True

    def close(self) -> None:
        self._loaded = False

    def encode_images(self, images):
        self.image_calls += len(images)
        out = []
        for img in images:
            mean = np.asarray(img.convert("RGB"), dtype=np.float32).reshape(-1, 3).mean(axis=0)
            out.append(color_vector(mean))
        return np.stack(out)

    def encode_texts(self, texts):
        out = []
        for text in texts:
            rgb = next((c for w, c in COLOR_WORDS.items() if w in text.lower()), None)
            if rgb is None:
                vec = np.array([0, 0, 0, 1], dtype=np.float32)
            else:
                vec = color_vector(rgb)
            out.append(vec)
        return np.stack(out)


def save_image(path: Path, rgb, size=(32, 32)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color=tuple(rgb)).save(path)
    return path


class FixedLevel:
    def __init__(self, level: int = 2):
        self.level = level

    def concurrency_level(self) -> int:
        return self.level


@pytest.fixture
def color_model():
    return ColorModel()


@pytest.fixture
def embedder(color_model):
    e = Embedder(color_model, device="cpu")
    e.initialize()
    yield e
    e.close()


@pytest.fixture
def controller():
    return FixedLevel(2)
