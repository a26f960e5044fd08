import json
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import color_vector, save_image
from fewshot import CropRect, FewShotService, parse_samples
from repository import Repository
from vectors import average_embedding

RED = (255, 0, 0)
BLUE = (0, 0, 255)


@pytest.fixture
def repo(tmp_path):
    r = Repository(tmp_path / "repo.db")
    yield r
    r.close()


@pytest.fixture
def fewshot(repo, embedder):
    return FewShotService(repo, embedder)


@pytest.fixture
def samples(tmp_path):
    return {
        "red": save_image(tmp_path / "s" / "red.png", RED),
        "blue": save_image(tmp_path / "s" / "blue.png", BLUE),
        "green": save_image(tmp_path / "s" / "green.png", (0, 255, 0)),
    }


def _split_image(path: Path) -> Path:
    """Left half red, right half blue."""
    path.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (32, 32), color=RED)
    img.paste(Image.new("RGB", (16, 32), color=BLUE), (16, 0))
    img.save(path)
    return path


def test_create_averages_samples(fewshot, repo, samples):
    p = fewshot.create("Mixed", [(str(samples["red"]), None), (str(samples["blue"]), None)])

    assert p.id is not None
    assert p.sample_count == 2
    expected = average_embedding([color_vector(RED), color_vector(BLUE)])
    np.testing.assert_allclose(p.vector, expected, atol=1e-5)

    stored = repo.get_fewshot_prototype(p.id)
    np.testing.assert_allclose(stored.vector, expected, atol=1e-5)
    assert [s.path for s in fewshot.samples(p.id)] == [
        str(samples["red"].resolve()), str(samples["blue"].resolve()),
    ]


def test_crop_limits_sample_to_region(tmp_path, fewshot):
    split = _split_image(tmp_path / "split.png")
    crop = CropRect(0, 0, 16, 32)

    p = fewshot.create("Left", [(str(split), crop)])
    np.testing.assert_allclose(p.vector, color_vector(RED), atol=1e-5)
    [sample] = fewshot.samples(p.id)
    assert CropRect.from_dict(json.loads(sample.crop)) == crop


def test_crop_is_clamped_to_image(tmp_path, fewshot):
    split = _split_image(tmp_path / "split.png")
    p = fewshot.create("Right", [(str(split), CropRect(16, 0, 500, 500))])
    np.testing.assert_allclose(p.vector, color_vector(BLUE), atol=1e-5)


def test_add_and_remove_sample_recompute(fewshot, samples):
    p = fewshot.create("Red", [(str(samples["red"]), None)])

    grown = fewshot.add_sample(p.id, str(samples["blue"]))
    assert grown.sample_count == 2
    np.testing.assert_allclose(
        grown.vector, average_embedding([color_vector(RED), color_vector(BLUE)]), atol=1e-5
    )

    blue_sample = fewshot.samples(p.id)[1]
    shrunk = fewshot.remove_sample(p.id, blue_sample.id)
    assert shrunk.sample_count == 1
    np.testing.assert_allclose(shrunk.vector, color_vector(RED), atol=1e-5)


def test_removing_last_sample_deletes_prototype(fewshot, repo, samples):
    p = fewshot.create("Red", [(str(samples["red"]), None)])
    [only] = fewshot.samples(p.id)

    assert fewshot.remove_sample(p.id, only.id) is None
    assert repo.get_fewshot_prototype(p.id) is None
    assert fewshot.list_prototypes() == []


def test_delete_cascades_to_samples(fewshot, repo, samples):
    p = fewshot.create("Red", [(str(samples["red"]), None), (str(samples["green"]), None)])
    assert fewshot.delete(p.id)
    assert repo.fewshot_samples(p.id) == []
    assert not fewshot.delete(p.id)


def test_create_rejects_bad_input(fewshot, samples):
    red = [(str(samples["red"]), None)]
    with pytest.raises(ValueError):
        fewshot.create("Nothing", [])
    with pytest.raises(ValueError):
        fewshot.create("  ", red)
    with pytest.raises(ValueError):
        fewshot.create("Red", red, category="vehicle")

    fewshot.create("Red", red)
    with pytest.raises(ValueError):
        fewshot.create("Red", red)


def test_unknown_prototype_or_sample(fewshot, samples):
    with pytest.raises(KeyError):
        fewshot.add_sample(99, str(samples["red"]))
    p = fewshot.create("Red", [(str(samples["red"]), None)])
    with pytest.raises(KeyError):
        fewshot.remove_sample(p.id, 12345)
    with pytest.raises(KeyError):
        fewshot.get("Nope")


def test_update_keeps_vector(fewshot, samples):
    p = fewshot.create("Red", [(str(samples["red"]), None)])
    fewshot.create("Blue", [(str(samples["blue"]), None)])

    updated = fewshot.update(p.id, name="Crimson", category="object", description="warm")
    assert (updated.name, updated.category, updated.description) == ("Crimson", "object", "warm")
    np.testing.assert_allclose(updated.vector, p.vector, atol=1e-6)
    assert [x.name for x in fewshot.list_prototypes()] == ["Blue", "Crimson"]

    with pytest.raises(ValueError):
        fewshot.update(p.id, name="Blue")


def test_parse_samples():
    parsed = parse_samples(["/a.png", {"path": "/b.png", "crop": {"left": 1, "top": 2, "width": 3, "height": 4}}])
    assert parsed == [("/a.png", None), ("/b.png", CropRect(1, 2, 3, 4))]
    with pytest.raises(ValueError):
        parse_samples([{"path": "/c.png", "crop": {"left": 0, "top": 0, "width": 0, "height": 4}}])
