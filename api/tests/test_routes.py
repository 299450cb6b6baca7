from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Iterator
from dataclasses import dataclass
import json
from typing import Any

import pytest
from fastapi.testclient import TestClient

from jobops.api.deps import get_adzuna_client
from jobops.main import app
from jobops.schemas.settings import AppSettings
from jobops.services.app_settings import AppSettingsService, get_app_settings_service
from jobops.services.generation import GenerationRunController, get_run_controller
from jobops.services.llm import ChatMessage, get_generation_capability
from jobops.services.store import InMemoryPipelineStore, get_repository

WEBHOOK_SECRET = "hook-secret"


class FakeCapability:
    def __init__(self) -> None:
        self.chunks = ["Hello", " there"]
        self.hold = False
        self.release = asyncio.Event()
        self.inferred: dict[str, Any] = {}
        self.models: list[str | None] = []
        self.calls: list[list[ChatMessage]] = []

    async def stream(self, messages: list[ChatMessage], *, model: str | None = None) -> AsyncGenerator[str, None]:
        self.models.append(model)
        self.calls.append(messages)
        for chunk in self.chunks:
            yield chunk
        if self.hold:
            await self.release.wait()

    async def complete_json(self, messages: list[ChatMessage], *, model: str | None = None) -> dict[str, Any]:
        self.models.append(model)
        return self.inferred


class FakeAdzunaClient:
    async def search(self, term: str, *, page: int = 1, results_per_page: int = 50) -> list[dict[str, Any]]:
        if page > 1:
            return []
        return [
            {
                "id": "az-1",
                "title": f"{term.title()} Developer",
                "company": {"display_name": "Initech"},
                "redirect_url": "https://www.adzuna.co.uk/jobs/land/ad/az-1",
            }
        ]


@dataclass
class Harness:
    client: TestClient
    store: InMemoryPipelineStore
    capability: FakeCapability


@pytest.fixture
def harness() -> Iterator[Harness]:
    store = InMemoryPipelineStore()
    capability = FakeCapability()
    settings_service = AppSettingsService(
        store,
        defaults=AppSettings(webhook_secret=WEBHOOK_SECRET, search_terms=["python"]),
        max_projects_limit=10,
    )
    controller = GenerationRunController(store, capability)

    app.dependency_overrides[get_repository] = lambda: store
    app.dependency_overrides[get_app_settings_service] = lambda: settings_service
    app.dependency_overrides[get_run_controller] = lambda: controller
    app.dependency_overrides[get_generation_capability] = lambda: capability
    app.dependency_overrides[get_adzuna_client] = lambda: FakeAdzunaClient()

    with TestClient(app) as client:
        yield Harness(client=client, store=store, capability=capability)

    app.dependency_overrides.clear()


def _webhook(client: TestClient, payload: dict[str, Any], secret: str | None = WEBHOOK_SECRET):
    headers = {"X-Webhook-Secret": secret} if secret is not None else {}
    return client.post("/ingest/webhook", json=payload, headers=headers)


def _ingest_posting(client: TestClient, external_id: str = "wh-1") -> str:
    response = _webhook(client, {"title": "Engineer", "company": "Acme", "id": external_id})
    assert response.status_code == 201
    return response.json()["posting"]["id"]


def _sse_events(body: str) -> list[dict[str, Any]]:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


def test_webhook_ingest_is_idempotent(harness: Harness) -> None:
    payload = {"title": "Engineer", "company": "Acme", "url": "https://acme.example.com/jobs/1?utm_source=x"}

    created = _webhook(harness.client, payload)
    repeated = _webhook(harness.client, {**payload, "url": "https://ACME.example.com/jobs/1/"})

    assert created.status_code == 201
    assert created.json()["created"] is True
    assert created.json()["posting"]["stage"] == "discovered"
    assert repeated.status_code == 200
    assert repeated.json()["created"] is False
    assert repeated.json()["posting"]["id"] == created.json()["posting"]["id"]


def test_webhook_rejects_bad_secret_and_malformed_payload(harness: Harness) -> None:
    assert _webhook(harness.client, {"title": "x", "company": "y", "id": "1"}, secret="wrong").status_code == 401
    assert _webhook(harness.client, {"title": "x", "company": "y", "id": "1"}, secret=None).status_code == 401
    assert _webhook(harness.client, {"company": "y", "id": "1"}).status_code == 422
    assert harness.store.postings == {}


def test_webhook_disabled_after_secret_cleared(harness: Harness) -> None:
    response = harness.client.patch("/settings", json={"webhook_secret": ""})
    assert response.status_code == 200
    assert "webhook" not in response.json()["enabled_sources"]

    assert _webhook(harness.client, {"title": "x", "company": "y", "id": "1"}).status_code == 403


def test_visa_batch_requires_credentials(harness: Harness) -> None:
    batch = [
        {"title": "Nurse", "company": "NHS Trust", "jobUrl": "https://visa.example.com/jobs/1"},
        {"title": "Nurse", "company": "NHS Trust", "jobUrl": "https://visa.example.com/jobs/1"},
        {"title": "Missing company", "jobUrl": "https://visa.example.com/jobs/2"},
    ]
    assert harness.client.post("/ingest/ukvisajobs", json=batch).status_code == 403

    harness.client.patch("/settings", json={"ukvisajobs_email": "me@example.com", "ukvisajobs_password": "pw"})
    response = harness.client.post("/ingest/ukvisajobs", json=batch)

    assert response.status_code == 202
    assert response.json()["created"] == 1
    assert response.json()["existing"] == 1
    assert response.json()["malformed"] == 1


def test_sources_listing_and_adzuna_poll(harness: Harness) -> None:
    listing = harness.client.get("/sources").json()
    assert listing["enabled"] == ["webhook"]
    assert {source["id"]: source["enabled"] for source in listing["sources"]}["manual"] is True

    assert harness.client.post("/sources/adzuna/poll").status_code == 403

    harness.client.patch("/settings", json={"adzuna_app_id": "id", "adzuna_app_key": "key"})
    response = harness.client.post("/sources/adzuna/poll")

    assert response.status_code == 200
    assert response.json()["created"] == 1
    postings = harness.client.get("/postings").json()
    assert [posting["title"] for posting in postings] == ["Python Developer"]


def test_postings_stage_flow(harness: Harness) -> None:
    posting_id = _ingest_posting(harness.client)

    assert harness.client.patch(f"/postings/{posting_id}/stage", json={"stage": "applied"}).status_code == 409
    moved = harness.client.patch(f"/postings/{posting_id}/stage", json={"stage": "ready"})
    assert moved.status_code == 200
    assert moved.json()["stage"] == "ready"

    assert harness.client.patch(f"/postings/{posting_id}/stage", json={"stage": "discovered"}).status_code == 409
    demoted = harness.client.patch(f"/postings/{posting_id}/stage", json={"stage": "discovered", "manual": True})
    assert demoted.status_code == 200

    assert [row["id"] for row in harness.client.get("/postings", params={"stage": "discovered"}).json()] == [posting_id]
    assert harness.client.get("/postings", params={"stage": "ready"}).json() == []
    assert harness.client.get("/postings", params={"stage": "archived"}).status_code == 422


def test_posting_detail_and_not_found(harness: Harness) -> None:
    posting_id = _ingest_posting(harness.client)

    detail = harness.client.get(f"/postings/{posting_id}")
    assert detail.status_code == 200
    assert detail.json()["dedupe_key"] == "webhook:wh-1"
    assert detail.json()["raw_payload"] == {"title": "Engineer", "company": "Acme", "id": "wh-1"}

    assert harness.client.get("/postings/missing").status_code == 404
    assert harness.client.patch("/postings/missing/stage", json={"stage": "ready"}).status_code == 404


def test_manual_import_infer_then_confirm(harness: Harness) -> None:
    harness.capability.inferred = {"title": "Analyst", "employer": "Globex", "jobUrl": "https://globex.example.com/9"}

    inferred = harness.client.post("/imports/manual/infer", json={"text": "Analyst at Globex"})
    assert inferred.status_code == 200
    assert inferred.json()["missing_fields"] == []
    assert harness.store.postings == {}

    draft = inferred.json()["draft"]
    rejected = harness.client.post("/imports/manual/confirm", json={"confirmed": False, "draft": draft})
    assert rejected.status_code == 422
    assert harness.store.postings == {}

    confirmed = harness.client.post("/imports/manual/confirm", json={"confirmed": True, "draft": draft})
    assert confirmed.status_code == 201
    assert confirmed.json()["posting"]["source"] == "manual"
    assert len(harness.store.postings) == 1


def test_streamed_run_emits_sse_events_and_persists(harness: Harness) -> None:
    posting_id = _ingest_posting(harness.client)

    response = harness.client.post(f"/postings/{posting_id}/runs", json={"stream": True})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(response.text)
    assert [event["type"] for event in events] == ["ready", "delta", "delta", "completed"]
    assert events[-1]["transcript"] == "Hello there"

    runs = harness.client.get(f"/postings/{posting_id}/runs").json()
    assert len(runs) == 1
    assert runs[0]["status"] == "completed"
    assert runs[0]["transcript"] == "Hello there"


def test_run_conflict_stop_and_regenerate(harness: Harness) -> None:
    harness.capability.hold = True
    posting_id = _ingest_posting(harness.client)

    started = harness.client.post(f"/postings/{posting_id}/runs", json={})
    assert started.status_code == 202
    assert started.json()["status"] == "streaming"
    assert harness.client.post(f"/postings/{posting_id}/runs", json={}).status_code == 409

    stopped = harness.client.post(f"/postings/{posting_id}/runs/stop", json={"run_id": started.json()["id"]})
    assert stopped.status_code == 200
    assert stopped.json()["status"] == "stopped"

    current = harness.client.get(f"/postings/{posting_id}/runs/current").json()
    assert current["status"] == "stopped"
    assert current["generation"] == started.json()["generation"] + 1

    regenerated = harness.client.post(f"/postings/{posting_id}/runs/regenerate", json={})
    assert regenerated.status_code == 202
    assert regenerated.json()["generation"] > current["generation"]
    harness.client.post(f"/postings/{posting_id}/runs/stop", json={})


def test_run_routes_for_unknown_posting(harness: Harness) -> None:
    assert harness.client.post("/postings/missing/runs", json={}).status_code == 404
    assert harness.client.get("/postings/missing/runs/current").status_code == 404
    assert harness.client.post("/postings/missing/runs/stop", json={}).status_code == 404


def test_settings_hints_and_validation(harness: Harness) -> None:
    current = harness.client.get("/settings")
    assert current.status_code == 200
    assert current.json()["webhook_secret_hint"] == "hook"
    assert "webhook_secret" not in current.json()

    invalid = harness.client.patch("/settings", json={"search_terms": ["go"], "adzuna_country": "xyz"})
    assert invalid.status_code == 422
    assert harness.client.get("/settings").json()["search_terms"] == ["python"]

    updated = harness.client.patch(
        "/settings",
        json={"resume_projects": {"max_projects": 99, "locked_project_ids": ["a"], "ai_selectable_project_ids": ["a"]}},
    )
    assert updated.status_code == 200
    assert updated.json()["resume_projects"] == {
        "max_projects": 10,
        "locked_project_ids": ["a"],
        "ai_selectable_project_ids": [],
    }


def test_patched_model_reaches_generation_and_inference(harness: Harness) -> None:
    posting_id = _ingest_posting(harness.client)
    assert harness.client.patch("/settings", json={"model": "my-custom-model"}).status_code == 200

    harness.client.post(f"/postings/{posting_id}/runs", json={"stream": True})
    harness.client.post("/imports/manual/infer", json={"text": "Analyst at Globex"})

    assert harness.capability.models == ["my-custom-model", "my-custom-model"]


def test_chat_history_and_targeted_regenerate(harness: Harness) -> None:
    posting_id = _ingest_posting(harness.client)

    first = harness.client.post(f"/postings/{posting_id}/runs", json={"prompt": "Write a cover letter.", "stream": True})
    first_id = first.headers["x-run-id"]
    harness.client.post(f"/postings/{posting_id}/runs", json={"prompt": "Make it shorter.", "stream": True})

    sent = harness.capability.calls[1]
    assert [(message["role"], message["content"]) for message in sent[2:]] == [
        ("user", "Write a cover letter."),
        ("assistant", "Hello there"),
        ("user", "Make it shorter."),
    ]

    regenerated = harness.client.post(
        f"/postings/{posting_id}/runs/regenerate",
        json={"run_id": first_id, "stream": True},
    )
    assert regenerated.status_code == 200
    assert [message["content"] for message in harness.capability.calls[2][2:]] == ["Write a cover letter."]

    messages = harness.client.get(f"/postings/{posting_id}/messages").json()
    assert [(message["role"], message["content"]) for message in messages] == [
        ("user", "Make it shorter."),
        ("assistant", "Hello there"),
        ("user", "Write a cover letter."),
        ("assistant", "Hello there"),
    ]
    assert messages[-1]["run_id"] == regenerated.headers["x-run-id"]

    runs = harness.client.get(f"/postings/{posting_id}/runs").json()
    assert {run["replaces_run_id"] for run in runs} == {None, first_id}
    assert harness.client.post(
        f"/postings/{posting_id}/runs/regenerate",
        json={"run_id": "missing"},
    ).status_code == 404
    assert harness.client.get("/postings/missing/messages").status_code == 404
