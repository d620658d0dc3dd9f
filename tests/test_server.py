import pytest
from fastapi.testclient import TestClient

from imgpress.core.file_registry import FileRegistry
from imgpress.core.service import CompressionService
from imgpress.server import create_app


@pytest.fixture
def client(settings, make_coordinator):
    svc = CompressionService(settings, make_coordinator(), FileRegistry())
    svc.start()
    app = create_app(service=svc, enable_maintenance=False)
    with TestClient(app) as c:
        yield c
    svc.close()


def _compress(client, data=b"\x07" * 100, filename="a.png", **params):
    return client.post("/compress", params={"filename": filename, **params}, content=data)


def test_health_reports_ready_worker(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["worker"]["state"] == "ready"
    assert body["artifacts"] == 0


def test_compress_then_fetch_file(client):
    r = _compress(client)
    assert r.status_code == 200, r.text
    stats = r.json()
    assert stats["best_tool"] == "mock"
    assert stats["compression_ratio"] == 50.0
    assert stats["results"][0]["tool"] == "mock"
    f = client.get("/file", params={"id": stats["token"]})
    assert f.status_code == 200
    assert f.content == b"\x07" * 50
    assert f.headers["content-type"] == "image/png"


def test_compress_rejects_empty_body_and_bad_quality(client):
    assert _compress(client, data=b"").status_code == 400
    assert _compress(client, quality=1.5).status_code == 400
    assert client.post("/compress", content=b"abc").status_code == 422  # filename required


@pytest.mark.parametrize(
    "params,status",
    [
        ({}, 400),
        ({"id": "bad token!"}, 400),
        ({"id": "unknownunknown"}, 404),
    ],
)
def test_file_endpoint_error_statuses(client, params, status):
    r = client.get("/file", params=params)
    assert r.status_code == status
    assert "detail" in r.json()


def test_artifacts_listing_and_eviction(client):
    token = _compress(client).json()["token"]
    listing = client.get("/artifacts").json()
    assert [a["token"] for a in listing] == [token]
    assert "path" not in listing[0]
    assert client.delete(f"/artifacts/{token}").status_code == 200
    assert client.delete(f"/artifacts/{token}").status_code == 404
    assert client.get("/file", params={"id": token}).status_code == 404


def test_admin_sweep(client):
    _compress(client, filename="one.png")
    _compress(client, filename="two.png")
    r = client.post("/admin/sweep", params={"max_age_hours": 24})
    assert r.json() == {"removed": 0, "remaining": 2}
    r = client.post("/admin/sweep", params={"max_age_hours": 0})
    assert r.json() == {"removed": 2, "remaining": 0}
    assert client.post("/admin/sweep", params={"max_age_hours": -1}).status_code == 422


def test_compress_after_shutdown_is_unavailable(client):
    client.app.state.service.coordinator.shutdown()
    assert _compress(client).status_code == 503
    assert client.get("/health").json()["status"] == "degraded"
