# tests/api/test_engines_api.py
from __future__ import annotations

import pytest

from harness.api.app import create_app


@pytest.fixture
def client(admin):
    """
    Flask test client (no real server).
    """
    app = create_app(admin)
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


def _create(client, engine_id="e1", **extra):
    body = {"engineId": engine_id, "engineFactory": "recording"}
    body.update(extra)
    return client.post("/engines", json=body)


EVENT = {"entityType": "user", "entityId": "u1", "event": "buy", "targetEntityId": "i1"}


def test_create_engine(client):
    resp = _create(client, mirrorType="localfs")

    assert resp.status_code == 201
    assert resp.json["engineId"] == "e1"
    assert resp.json["status_url"] == "/engines/e1"


def test_create_duplicate_returns_409(client):
    _create(client)
    resp = _create(client)

    assert resp.status_code == 409
    assert resp.json["error"] == "DuplicateId"
    assert resp.json["field"] == "engineId"


def test_create_malformed_json_returns_400(client):
    resp = client.post("/engines", data="{nope", content_type="application/json")

    assert resp.status_code == 400
    assert resp.json["error"] == "ValidationError"
    assert resp.json["field"] == "<root>"


def test_get_and_list(client):
    _create(client, "a")
    _create(client, "b")

    one = client.get("/engines/a")
    many = client.get("/engines")

    assert one.status_code == 200
    assert one.json["engineId"] == "a"
    assert [e["engineId"] for e in many.json["engines"]] == ["a", "b"]


def test_unknown_engine_returns_404(client):
    resp = client.get("/engines/ghost")

    assert resp.status_code == 404
    assert resp.json == {
        "error": "NotFound",
        "message": "engine 'ghost' not found",
        "engineId": "ghost",
    }


def test_update_engine(client):
    _create(client)

    resp = client.post("/engines/e1", json={"engineId": "e1", "engineFactory": "recording", "mirrorType": "localfs"})

    assert resp.status_code == 200
    assert client.get("/engines/e1").json["mirroring"] is True


def test_update_factory_change_rejected(client):
    _create(client)

    resp = client.post("/engines/e1", json={"engineId": "e1", "engineFactory": "batch_only"})

    assert resp.status_code == 400
    assert resp.json["error"] == "UnsupportedUpdate"


def test_destroy_engine(client):
    _create(client)

    assert client.delete("/engines/e1").status_code == 200
    assert client.get("/engines/e1").status_code == 404
    assert client.delete("/engines/e1").status_code == 404


def test_post_event(client):
    _create(client, mirrorType="localfs")

    resp = client.post("/engines/e1/events", json=EVENT)

    assert resp.status_code == 201
    assert resp.json["sequence"] == 1
    assert resp.json["update"] == "applied"


def test_post_bad_event_names_field(client):
    _create(client)

    resp = client.post("/engines/e1/events", json={"entityType": "user", "event": "buy"})

    assert resp.status_code == 400
    assert resp.json["field"] == "entityId"


def test_query(client):
    _create(client)

    resp = client.post("/engines/e1/queries", json={"num": 3})

    assert resp.status_code == 200
    assert resp.json == {"model": None, "echo": {"num": 3}}


def test_train_and_status(client, admin):
    client.post("/engines", json={"engineId": "e1", "engineFactory": "batch_only"})

    resp = client.post("/engines/e1/train")
    assert resp.status_code == 202
    assert resp.json["status"] == "accepted"

    admin.orchestrator.wait("e1", timeout=5)
    status = client.get("/engines/e1").json
    assert status["training"]["state"] == "idle"
    assert status["engine"]["hasModel"] is True


def test_train_without_batch_capability(client):
    client.post("/engines", json={"engineId": "e1", "engineFactory": "incremental_only"})

    resp = client.post("/engines/e1/train")

    assert resp.status_code == 400
    assert resp.json["field"] == "train"


def test_replay(client):
    _create(client, "src", mirrorType="localfs")
    _create(client, "dst")
    client.post("/engines/src/events", json=EVENT)

    resp = client.post("/engines/dst/replay", json={"source": "src"})

    assert resp.status_code == 200
    assert resp.json == {"source": "src", "sink": "dst", "replayed": 1, "rejected": []}


def test_plugin_crash_is_500_without_traceback(client, admin, monkeypatch):
    _create(client)

    def boom(query):
        raise ZeroDivisionError("secret detail")

    monkeypatch.setattr(admin.get("e1").engine, "query", boom)
    resp = client.post("/engines/e1/queries", json={})

    assert resp.status_code == 500
    assert resp.json["error"] == "AlgorithmFailure"
    assert resp.json["operation"] == "query"
    assert "Traceback" not in resp.get_data(as_text=True)


def test_health(client):
    _create(client)

    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json == {"ok": True, "engines": 1, "failedRestores": {}}
