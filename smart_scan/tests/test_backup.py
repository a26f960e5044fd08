import json
import sys
import zipfile
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from backup import export_backup, restore_backup
from errors import DimensionMismatch, StoreFailure
from repository import Repository, TagDefinition
from store import Embedding, EmbeddingStore


def _setup(root: Path, dim: int = 4):
    db = root / "repo.db"
    repo = Repository(db)
    stores = {
        "image": EmbeddingStore(db, root / "embeddings" / "image.bin", dim, table="image_embedding"),
        "video": EmbeddingStore(db, root / "embeddings" / "video.bin", dim, table="video_embedding"),
    }
    return repo, stores


def _vec(*values):
    return np.array(values, dtype=np.float32)


def test_export_contents(tmp_path):
    repo, stores = _setup(tmp_path / "live")
    stores["image"].add([Embedding.create(1, _vec(1, 0, 0, 0))])

    dest = export_backup(tmp_path / "out" / "backup.zip", repo, stores, "color")

    with zipfile.ZipFile(dest) as zf:
        names = set(zf.namelist())
        manifest = json.loads(zf.read("manifest.json"))
    assert names == {"manifest.json", "repository.db", "embeddings/image.bin"}
    assert manifest["model"] == "color"
    assert manifest["dimension"] == 4
    assert manifest["stores"] == {"image": 4, "video": 4}
    # pending embeddings were drained into the file
    assert stores["image"].drain() == 0
    assert not (tmp_path / "out" / "backup.zip.tmp").exists()


def test_restore_replaces_live_state(tmp_path):
    repo, stores = _setup(tmp_path / "live")
    repo.upsert_tag(TagDefinition(name="Kept", description="d", vector=_vec(1, 1, 1, 1)))
    stores["image"].add([Embedding.create(1, _vec(1, 0, 0, 0)), Embedding.create(2, _vec(0, 1, 0, 0))])
    stores["video"].add([Embedding.create(9, _vec(0, 0, 1, 0))])
    archive = export_backup(tmp_path / "backup.zip", repo, stores, "color")

    repo.delete_tag("Kept")
    repo.upsert_tag(TagDefinition(name="Later", description="d", vector=_vec(1, 1, 1, 1)))
    stores["image"].add([Embedding.create(3, _vec(0, 0, 0, 1))])
    stores["video"].delete_all()

    result = restore_backup(archive, repo, stores)

    assert result == {"model": "color", "embeddings": {"image": 2, "video": 1}}
    assert [t.name for t in repo.list_tags()] == ["Kept"]
    assert stores["image"].existing_ids() == {1, 2}
    assert stores["video"].existing_ids() == {9}
    np.testing.assert_array_equal(stores["image"].get(2).vector, _vec(0, 1, 0, 0))


def test_restore_into_fresh_install(tmp_path):
    repo, stores = _setup(tmp_path / "old")
    stores["image"].add([Embedding.create(5, _vec(1, 2, 3, 4))])
    archive = export_backup(tmp_path / "backup.zip", repo, stores, "color")

    new_repo, new_stores = _setup(tmp_path / "new")
    restore_backup(archive, new_repo, new_stores)
    assert new_stores["image"].existing_ids() == {5}
    assert new_stores["video"].existing_ids() == set()


def test_restore_refuses_other_dimension(tmp_path):
    repo, stores = _setup(tmp_path / "old", dim=4)
    stores["image"].add([Embedding.create(1, _vec(1, 0, 0, 0))])
    archive = export_backup(tmp_path / "backup.zip", repo, stores, "color")

    other_repo, other_stores = _setup(tmp_path / "other", dim=8)
    other_stores["image"].add([Embedding.create(7, np.ones(8, dtype=np.float32))])
    with pytest.raises(DimensionMismatch):
        restore_backup(archive, other_repo, other_stores)
    # nothing live was touched
    assert other_stores["image"].existing_ids() == {7}


def test_restore_rejects_non_backup(tmp_path):
    repo, stores = _setup(tmp_path / "live")
    junk = tmp_path / "junk.zip"
    with zipfile.ZipFile(junk, "w") as zf:
        zf.writestr("hello.txt", "hi")
    with pytest.raises(StoreFailure):
        restore_backup(junk, repo, stores)

    not_zip = tmp_path / "plain.zip"
    not_zip.write_text("not a zip")
    with pytest.raises(StoreFailure):
        restore_backup(not_zip, repo, stores)

    with pytest.raises(StoreFailure):
        restore_backup(tmp_path / "missing.zip", repo, stores)
