import pytest
from fastapi.testclient import TestClient
from redis.exceptions import ConnectionError as RedisConnectionError

from database.base import get_db
from handlers import render_handler
from main import app
from operators.render_orchestrator import process_render_job


@pytest.fixture
def client(session_factory):
    def _get_test_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_test_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def enqueued(monkeypatch):
    calls = []

    def _enqueue(func, *args, **kwargs):
        calls.append((func, args, kwargs))

    monkeypatch.setattr(render_handler.rq_queue, "enqueue", _enqueue)
    return calls


class TestTrigger:
    @pytest.mark.parametrize("route", ["/render", "/process"])
    def test_pending_job_is_enqueued(self, client, make_job, enqueued, route):
        job_id = make_job()

        response = client.post(route, json={"job_id": job_id})

        assert response.status_code == 202
        assert response.json() == {"ok": True, "job_id": job_id, "queued": True}
        func, args, kwargs = enqueued[0]
        assert func is process_render_job
        assert args == (job_id,)
        assert kwargs["job_timeout"] > 3600

    def test_unknown_job(self, client, enqueued):
        response = client.post("/render", json={"job_id": "missing"})

        assert response.status_code == 404
        assert enqueued == []

    def test_job_already_claimed(self, client, make_job, enqueued):
        job_id = make_job(status="rendering")

        response = client.post("/render", json={"job_id": job_id})

        assert response.status_code == 409
        assert enqueued == []

    def test_missing_job_id(self, client, enqueued):
        response = client.post("/render", json={})

        assert response.status_code == 422

    def test_queue_outage_still_accepts(self, client, make_job, monkeypatch, caplog):
        def _enqueue(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(render_handler.rq_queue, "enqueue", _enqueue)
        job_id = make_job()

        response = client.post("/render", json={"job_id": job_id})

        assert response.status_code == 202
        assert response.json()["queued"] is False
        assert "render_enqueue_failed" in caplog.text


class TestStatus:
    def test_read_status(self, client, make_job):
        job_id = make_job(status="rendering", progress=50)

        response = client.get(f"/renders/{job_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["ok"] is True
        assert body["job"]["status"] == "rendering"
        assert body["job"]["progress"] == 50

    def test_unrecognized_status_is_reported(self, client, make_job):
        job_id = make_job(status="archived")

        response = client.get(f"/renders/{job_id}")

        assert response.status_code == 200
        assert response.json()["job"]["status"] == "archived"

    def test_unknown_job(self, client):
        assert client.get("/renders/missing").status_code == 404


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"ok": True, "database": "ok"}
