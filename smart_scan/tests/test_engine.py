import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import ColorModel, FixedLevel, save_image
from engine import Engine, JobBusy
from errors import StoreFailure


@pytest.fixture
def engine(tmp_path):
    e = Engine(tmp_path / "cache", model=ColorModel(), controller=FixedLevel(2))
    e.load_model()
    yield e
    e.close()


@pytest.fixture
def photos(tmp_path):
    folder = tmp_path / "photos"
    save_image(folder / "red.png", (255, 0, 0))
    save_image(folder / "darkred.png", (200, 10, 0))
    save_image(folder / "blue.png", (0, 0, 255))
    return folder


def test_index_then_reindex(engine, photos):
    engine.add_folder(str(photos))

    first = engine.index(("image",))
    assert first["status"] == "complete"
    assert first["new"] == {"image": 3}
    assert first["total"] == {"image": 3}

    second = engine.index(("image",))
    assert second["new"] == {"image": 0}
    assert engine.status()["embeddings"]["image"] == 3


def test_index_drops_embeddings_of_deleted_files(engine, photos):
    engine.add_folder(str(photos))
    engine.index(("image",))
    (photos / "blue.png").unlink()

    engine.index(("image",))
    status = engine.status()
    assert status["media"]["image"] == 2
    assert status["embeddings"]["image"] == 2


def test_progress_listener_sees_phase(engine, photos):
    seen = []
    engine.add_progress_listener(lambda phase, update: seen.append((phase, update.current)))
    engine.add_folder(str(photos))
    engine.index(("image",))
    assert seen == [("image", 1), ("image", 2), ("image", 3)]


def test_search_and_find_similar(engine, photos):
    engine.add_folder(str(photos))
    engine.index(("image",))

    hits = engine.search("red", threshold=0.5)
    assert [Path(h["path"]).name for h in hits] == ["red.png", "darkred.png"]

    similar = engine.find_similar(path=str(photos / "red.png"), threshold=0.5)
    assert [Path(h["path"]).name for h in similar] == ["darkred.png"]
    assert engine.find_similar(path=str(photos / "nope.png")) == []


def test_organise_and_undo(tmp_path, engine):
    reds = tmp_path / "reds"
    blues = tmp_path / "blues"
    save_image(reds / "r.png", (255, 0, 0))
    save_image(blues / "b.png", (0, 0, 255))
    engine.build_prototype(str(reds))
    engine.build_prototype(str(blues))
    assert len(engine.prototypes()) == 2

    inbox = tmp_path / "inbox"
    save_image(inbox / "sunset.png", (240, 30, 0))
    save_image(inbox / "grass.png", (0, 255, 0))
    save_image(inbox / "nested" / "sea.png", (0, 0, 255))

    result = engine.organise(str(inbox))
    assert result["status"] == "complete"
    assert result["moved"] == 1
    assert (reds / "sunset.png").is_file()
    assert (inbox / "nested" / "sea.png").is_file()
    assert engine.status()["last_destinations"] == [str(reds.resolve())]

    [scan] = engine.scans()
    assert scan["moved_count"] == 1

    undone = engine.undo()
    assert undone["status"] == "complete"
    assert (undone["scan_id"], undone["restored"]) == (scan["id"], 1)
    assert (inbox / "sunset.png").is_file()
    assert engine.scans() == []
    again = engine.undo()
    assert (again["scan_id"], again["restored"]) == (None, 0)


def test_organise_rejects_missing_folder(tmp_path, engine):
    with pytest.raises(ValueError):
        engine.organise(str(tmp_path / "nope"))


def test_retag(engine, photos):
    engine.add_folder(str(photos))
    engine.index(("image",))
    engine.tagging.create_tag("Red", "red", threshold=0.6)

    result = engine.retag()
    assert result["status"] == "complete"
    assert result["tags_assigned"] == 2
    [t] = engine.tags()
    assert t["media_count"] == 2


def test_one_job_at_a_time(engine):
    engine._job_lock.acquire()
    try:
        with pytest.raises(JobBusy):
            engine.retag()
    finally:
        engine._job_lock.release()


class GatedModel(ColorModel):
    """Once armed, image encoding blocks until released."""

    def __init__(self):
        super().__init__()
        self.armed = False
        self.started = threading.Event()
        self.release = threading.Event()

    def encode_images(self, images):
        if self.armed:
            self.started.set()
            self.release.wait(10)
        return super().encode_images(images)


def test_undo_refused_while_organising(tmp_path):
    model = GatedModel()
    engine = Engine(tmp_path / "cache", model=model, controller=FixedLevel(1))
    engine.load_model()
    try:
        reds = tmp_path / "reds"
        save_image(reds / "r.png", (255, 0, 0))
        engine.build_prototype(str(reds))
        inbox = tmp_path / "inbox"
        for i in range(3):
            save_image(inbox / f"{i}.png", (250, 0, 0))

        model.armed = True
        results = {}
        worker = threading.Thread(target=lambda: results.update(engine.organise(str(inbox))))
        worker.start()
        assert model.started.wait(10)
        try:
            with pytest.raises(JobBusy):
                engine.undo()
            assert engine.scans() == []
            assert engine.status()["busy"] is True
        finally:
            model.release.set()
            worker.join(10)

        assert results["moved"] == 3
        [scan] = engine.scans()
        assert len(engine.repo.move_history(scan["id"])) == 3
    finally:
        engine.close()


def test_cancel_between_phases_stops_the_job(engine, photos, monkeypatch):
    engine.add_folder(str(photos))
    store = engine.stores["image"]
    drain = store.drain
    accepted = []

    def _drain_then_cancel():
        count = drain()
        accepted.append(engine.cancel())
        return count

    video_runs = []
    monkeypatch.setattr(store, "drain", _drain_then_cancel)
    monkeypatch.setattr(engine.indexers["video"], "run", lambda *a, **kw: video_runs.append(a) or 0)

    result = engine.index()
    assert accepted == [True]
    assert video_runs == []
    assert result["new"] == {"image": 3}
    assert result["status"] == "cancelled"
    assert engine.job_status()["status"] == "cancelled"
    assert engine.status()["busy"] is False
    assert engine.cancel() is False


def test_cancel_without_job(engine):
    assert engine.cancel() is False
    assert engine.status()["busy"] is False


def test_failed_job_is_reported(engine, tmp_path):
    bad = tmp_path / "bad.zip"
    bad.write_text("nope")
    with pytest.raises(StoreFailure):
        engine.restore(str(bad))
    job = engine.job_status()
    assert job["job"] == "restore"
    assert job["status"] == "failed"
    assert engine.cancel() is False


def test_backup_and_restore(engine, photos, tmp_path):
    engine.add_folder(str(photos))
    engine.index(("image",))
    engine.tagging.create_tag("Red", "red")

    backup = engine.backup(str(tmp_path / "b.zip"))
    assert backup["status"] == "complete"

    engine.tagging.delete_tag("Red")
    restored = engine.restore(backup["path"])
    assert restored["embeddings"]["image"] == 3
    assert [t["name"] for t in engine.tags()] == ["Red"]


def test_status(engine, photos):
    engine.add_folder(str(photos))
    status = engine.status()
    assert status["model"] == "color"
    assert status["dimension"] == 4
    assert status["model_loaded"] is True
    assert status["folders"] == [str(photos.resolve())]
    assert status["job"] is None
