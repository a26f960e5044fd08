import sys
from pathlib import Path

import pytest
from starlette.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import service
from conftest import ColorModel, FixedLevel, save_image
from engine import Engine


@pytest.fixture
def engine(tmp_path, monkeypatch):
    e = Engine(tmp_path / "cache", model=ColorModel(), controller=FixedLevel(2))
    e.load_model()
    monkeypatch.setattr(service, "_engine", e)
    service._engine_ready.set()
    yield e
    service._engine_ready.clear()
    e.close()


@pytest.fixture
def client():
    return TestClient(service.app)


def test_loading_until_engine_ready(client):
    service._engine_ready.clear()
    assert client.get("/health").json() == {"ok": True, "ready": False}
    resp = client.get("/status")
    assert resp.status_code == 503
    assert resp.json() == {"loading": True}


def test_index_and_search(tmp_path, engine, client):
    photos = tmp_path / "photos"
    save_image(photos / "red.png", (255, 0, 0))
    save_image(photos / "blue.png", (0, 0, 255))

    assert client.post("/add-folder", json={"path": str(photos)}).text.startswith("Added")
    assert client.get("/folders").json() == [str(photos.resolve())]

    resp = client.post("/index", json={"kinds": ["image"]})
    assert resp.status_code == 200
    assert resp.json()["new"] == {"image": 2}

    hits = client.post("/search", json={"query": "red", "threshold": 0.5}).json()
    assert [Path(h["path"]).name for h in hits] == ["red.png"]

    status = client.get("/status").json()
    assert status["embeddings"]["image"] == 2


def test_tag_lifecycle(engine, client):
    resp = client.post("/create-tag", json={"name": "Red", "description": "red", "threshold": 0.5})
    assert resp.json() == {"name": "Red", "threshold": 0.5, "active": True}
    assert [t["name"] for t in client.get("/tags").json()] == ["Red"]

    assigned = client.post("/tag-media", json={"media_id": 3, "tag": "Red"}).json()
    assert assigned["tag"] == "Red"
    assert client.get("/media-tags", params={"media_id": 3}).json()[0]["user"] is True

    assert client.post("/delete-tag", json={"name": "Red"}).status_code == 200
    assert client.post("/delete-tag", json={"name": "Red"}).status_code == 404
    assert client.get("/media-tags", params={"media_id": 3}).json() == []


def test_error_mapping(tmp_path, engine, client):
    assert client.post("/create-tag", json={"name": "", "description": "x"}).status_code == 400
    assert client.post("/tag-media", json={"media_id": 1, "tag": "Nope"}).status_code == 404
    assert client.post("/organise", json={"source": str(tmp_path / "nope")}).status_code == 400

    bad = tmp_path / "bad.zip"
    bad.write_text("x")
    resp = client.post("/restore", json={"path": str(bad)})
    assert resp.status_code == 500
    assert resp.json()["kind"] == "StoreFailure"


def test_busy_engine_returns_conflict(engine, client):
    engine._job_lock.acquire()
    try:
        assert client.post("/retag", json={}).status_code == 409
        assert client.post("/undo", json={}).status_code == 409
    finally:
        engine._job_lock.release()


def test_prototypes_and_undo(tmp_path, engine, client):
    reds = tmp_path / "reds"
    save_image(reds / "r.png", (255, 0, 0))
    built = client.post("/build-prototype", json={"folder": str(reds)}).json()
    assert built["category_id"] == str(reds.resolve())

    inbox = tmp_path / "inbox"
    save_image(inbox / "sunset.png", (250, 0, 0))
    result = client.post("/organise", json={"source": str(inbox)}).json()
    assert result["moved"] == 1
    assert len(client.get("/scans").json()) == 1

    assert client.post("/undo", json={}).json()["restored"] == 1
    assert (inbox / "sunset.png").is_file()

    assert client.post("/remove-prototype", json={"folder": str(reds)}).status_code == 200
    assert client.post("/remove-prototype", json={"folder": str(reds)}).status_code == 404
    assert client.get("/prototypes").json() == []


def test_cancel_when_idle(engine, client):
    assert client.post("/cancel").json() == {"cancelled": False}


def test_service_client_round_trip(tmp_path, engine):
    from client import ServiceClient, ServiceError

    sc = ServiceClient(http=TestClient(service.app))
    assert sc.health()

    photos = tmp_path / "photos"
    save_image(photos / "red.png", (255, 0, 0))
    assert sc.add_folder(str(photos)).startswith("Added")
    assert sc.index(["image"])["new"] == {"image": 1}
    assert "red.png" in sc.search("red")
    assert sc.search("blue", kind="image") == "No matching media found."

    sc.create_tag("Red", "red", threshold=0.5)
    assert sc.delete_tag("Nope") == "No such tag: Nope"
    with pytest.raises(ServiceError):
        sc.tag_media(1, "Nope")


def test_fewshot_routes(tmp_path, engine, client):
    photos = tmp_path / "photos"
    save_image(photos / "red.png", (255, 0, 0))
    save_image(photos / "blue.png", (0, 0, 255))
    client.post("/add-folder", json={"path": str(photos)})
    client.post("/index", json={"kinds": ["image"]})

    samples = tmp_path / "samples"
    one = save_image(samples / "sea1.png", (0, 10, 250))
    two = save_image(samples / "sea2.png", (0, 0, 240))
    created = client.post("/create-fewshot", json={"name": "Sea", "samples": [str(one)]}).json()
    assert created["sample_count"] == 1
    pid = created["id"]

    grown = client.post("/fewshot-add-sample", json={
        "prototype_id": pid,
        "path": str(two),
        "crop": {"left": 0, "top": 0, "width": 8, "height": 8},
    }).json()
    assert grown["sample_count"] == 2
    assert [p["name"] for p in client.get("/fewshot").json()] == ["Sea"]

    hits = client.post("/search", json={"prototype": "Sea", "threshold": 0.9}).json()
    assert [Path(h["path"]).name for h in hits] == ["blue.png"]
    assert client.post("/search", json={"query": "red", "prototype": "Nope"}).status_code == 404

    samples_listed = client.get("/fewshot-samples", params={"prototype_id": pid}).json()
    assert len(samples_listed) == 2
    removed = client.post(
        "/fewshot-remove-sample", json={"prototype_id": pid, "sample_id": samples_listed[0]["id"]}
    ).json()
    assert removed["deleted"] is False
    assert removed["prototype"]["sample_count"] == 1

    renamed = client.post("/update-fewshot", json={"prototype_id": pid, "category": "scene"}).json()
    assert renamed["category"] == "scene"
    assert client.post("/create-fewshot", json={"name": "Sea", "samples": [str(one)]}).status_code == 400

    assert client.post("/delete-fewshot", json={"prototype_id": pid}).status_code == 200
    assert client.post("/delete-fewshot", json={"prototype_id": pid}).status_code == 404
    assert client.get("/status").json()["fewshot_prototypes"] == 0
