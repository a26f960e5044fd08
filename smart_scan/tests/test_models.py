import sys
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import ColorModel, color_vector
from errors import EmbedFailure, NotInitialized
from models import AVAILABLE_MODELS, Embedder, OpenCLIPModel


def test_embed_before_initialize_raises(color_model):
    embedder = Embedder(color_model, device="cpu")
    with pytest.raises(NotInitialized):
        embedder.embed(Image.new("RGB", (8, 8)))
    with pytest.raises(EmbedFailure):
        embedder.embed_text("red")


def test_embed_after_close_raises(embedder):
    embedder.close()
    assert not embedder.initialized
    with pytest.raises(NotInitialized):
        embedder.embed(Image.new("RGB", (8, 8)))


def test_embed_image(embedder):
    vec = embedder.embed(Image.new("RGB", (8, 8), color=(255, 0, 0)))
    np.testing.assert_allclose(vec, color_vector((255, 0, 0)), rtol=1e-5)
    assert embedder.dimension == 4
    assert embedder.name == "color"


def test_embed_text(embedder):
    np.testing.assert_allclose(embedder.embed_text("a red car"), color_vector((255, 0, 0)), rtol=1e-5)
    assert embedder.embed_texts(["green", "blue"]).shape == (2, 4)


def test_embed_frames_averages_and_normalizes(embedder):
    frames = [Image.new("RGB", (8, 8), color=c) for c in [(255, 0, 0), (0, 0, 255)]]
    vec = embedder.embed_frames(frames)
    expected = color_vector((255, 0, 0)) + color_vector((0, 0, 255))
    expected /= np.linalg.norm(expected)
    np.testing.assert_allclose(vec, expected, rtol=1e-5)
    assert np.linalg.norm(vec) == pytest.approx(1.0)


def test_embed_frames_skips_failing_frames():
    model = ColorModel()
    original = model.encode_images
    calls = {"n": 0}

    def flaky(images):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("bad frame")
        return original(images)

    model.encode_images = flaky
    embedder = Embedder(model, device="cpu")
    embedder.initialize()
    frames = [Image.new("RGB", (8, 8), color=(0, 255, 0))] * 3
    vec = embedder.embed_frames(frames)
    np.testing.assert_allclose(vec, color_vector((0, 255, 0)), rtol=1e-5)


def test_embed_frames_all_failing():
    model = ColorModel()
    model.encode_images = MagicMock(side_effect=RuntimeError("codec"))
    embedder = Embedder(model, device="cpu")
    embedder.initialize()
    with pytest.raises(EmbedFailure):
        embedder.embed_frames([Image.new("RGB", (8, 8))] * 2)


def test_embed_frames_empty(embedder):
    with pytest.raises(EmbedFailure):
        embedder.embed_frames([])


def test_inference_errors_become_embed_failure():
    model = ColorModel()
    model.encode_images = MagicMock(side_effect=RuntimeError("CUDA out of memory"))
    embedder = Embedder(model, device="cpu")
    embedder.initialize()
    with pytest.raises(EmbedFailure, match="out of memory"):
        embedder.embed(Image.new("RGB", (8, 8)))


def test_initialize_loads_once(color_model):
    color_model.load = MagicMock(wraps=color_model.load)
    embedder = Embedder(color_model, device="cpu")
    embedder.initialize()
    embedder.initialize()
    color_model.load.assert_called_once_with("cpu")


def test_open_clip_model_requires_load():
    model = OpenCLIPModel("m", "ViT-B-32", "openai", 512)
    assert not model.loaded
    with pytest.raises(NotInitialized):
        model.encode_texts(["x"])


def test_registry():
    assert "clip-vit-b-32" in AVAILABLE_MODELS
    assert all(m.embedding_dim in (512, 768) for m in AVAILABLE_MODELS.values())
