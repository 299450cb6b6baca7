from fastapi.testclient import TestClient

from jobops.main import app
from jobops.services.store import InMemoryPipelineStore, get_repository


def test_root() -> None:
    client = TestClient(app)
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_healthz_reports_storage_backend() -> None:
    app.dependency_overrides[get_repository] = lambda: InMemoryPipelineStore()
    try:
        client = TestClient(app)
        response = client.get("/healthz")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "storage": "memory"}
