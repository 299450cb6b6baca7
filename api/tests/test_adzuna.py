from __future__ import annotations

import asyncio
from typing import Any

import httpx
import pytest

from jobops.schemas.settings import AppSettings
from jobops.services.adzuna import AdzunaClient, poll_adzuna
from jobops.services.errors import SourceDisabledError
from jobops.services.normalizer import PostingNormalizer
from jobops.services.store import InMemoryPipelineStore


def _job(job_id: str) -> dict[str, Any]:
    return {
        "id": job_id,
        "title": f"Engineer {job_id}",
        "company": {"display_name": "Acme"},
        "redirect_url": f"https://www.adzuna.co.uk/jobs/land/ad/{job_id}",
        "description": "Build things.",
    }


class FakeAdzunaClient:
    def __init__(self, pages: dict[str, list[list[dict[str, Any]]]], failing_terms: set[str] | None = None) -> None:
        self.pages = pages
        self.failing_terms = failing_terms or set()
        self.calls: list[tuple[str, int, int]] = []

    async def search(self, term: str, *, page: int = 1, results_per_page: int = 50) -> list[dict[str, Any]]:
        self.calls.append((term, page, results_per_page))
        if term in self.failing_terms:
            raise httpx.ConnectError("connection refused")
        term_pages = self.pages.get(term, [])
        return term_pages[page - 1] if page <= len(term_pages) else []


def _settings(**overrides: Any) -> AppSettings:
    values: dict[str, Any] = {"adzuna_app_id": "id", "adzuna_app_key": "key", "search_terms": ["python"]}
    values.update(overrides)
    return AppSettings(**values)


def test_poll_requires_enabled_source() -> None:
    with pytest.raises(SourceDisabledError):
        asyncio.run(
            poll_adzuna(
                AppSettings(search_terms=["python"]),
                PostingNormalizer(InMemoryPipelineStore()),
                FakeAdzunaClient({}),
            )
        )


def test_poll_pages_until_cap_and_ingests() -> None:
    store = InMemoryPipelineStore()
    client = FakeAdzunaClient({"python": [[_job("1"), _job("2")], [_job("3"), _job("4")], [_job("5")]]})

    summary = asyncio.run(poll_adzuna(_settings(adzuna_max_jobs_per_term=3), PostingNormalizer(store), client))

    assert summary.fetched == 3
    assert summary.created == 3
    assert len(store.postings) == 3
    assert [call[1] for call in client.calls] == [1, 2]


def test_poll_skips_failing_term_and_continues() -> None:
    store = InMemoryPipelineStore()
    client = FakeAdzunaClient({"go": [[_job("9")]]}, failing_terms={"python"})

    summary = asyncio.run(poll_adzuna(_settings(search_terms=["python", "go"]), PostingNormalizer(store), client))

    assert summary.failed_terms == ["python"]
    assert summary.created == 1


def test_repeat_poll_counts_existing() -> None:
    store = InMemoryPipelineStore()
    client = FakeAdzunaClient({"python": [[_job("1")]]})
    normalizer = PostingNormalizer(store)

    async def scenario():
        await poll_adzuna(_settings(), normalizer, client)
        return await poll_adzuna(_settings(), normalizer, client)

    summary = asyncio.run(scenario())
    assert summary.created == 0
    assert summary.existing == 1


def test_client_builds_search_request(monkeypatch) -> None:
    captured: dict[str, Any] = {}
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"results": [_job("1"), "junk"]}, request=request)
    )
    real_async_client = httpx.AsyncClient

    def fake_async_client(*args: Any, **kwargs: Any) -> httpx.AsyncClient:
        captured.update(kwargs)
        return real_async_client(transport=transport)

    monkeypatch.setattr(httpx, "AsyncClient", fake_async_client)
    client = AdzunaClient("https://api.adzuna.com/v1/api/jobs/", "app", "secret", "gb", timeout_seconds=4.0)

    async def scenario() -> list[dict[str, Any]]:
        return await client.search("data engineer", page=2, results_per_page=500)

    results = asyncio.run(scenario())

    assert len(results) == 1
    assert captured["timeout"] == 4.0


def test_client_caps_page_size_and_targets_country(monkeypatch) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"results": []})

    real_async_client = httpx.AsyncClient
    monkeypatch.setattr(
        httpx,
        "AsyncClient",
        lambda *args, **kwargs: real_async_client(transport=httpx.MockTransport(handler)),
    )

    asyncio.run(AdzunaClient("https://api.adzuna.com/v1/api/jobs", "app", "secret", "gb").search("go", page=3))

    url = requests[0].url
    assert url.path == "/v1/api/jobs/gb/search/3"
    assert url.params["results_per_page"] == "50"
    assert url.params["what"] == "go"
    assert url.params["app_id"] == "app"


def test_poll_skips_terms_when_response_is_not_json(monkeypatch) -> None:
    real_async_client = httpx.AsyncClient
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, text="<html>maintenance</html>", headers={"content-type": "text/html"})
    )
    monkeypatch.setattr(httpx, "AsyncClient", lambda *args, **kwargs: real_async_client(transport=transport))
    store = InMemoryPipelineStore()
    client = AdzunaClient("https://api.adzuna.com/v1/api/jobs", "app", "secret", "gb")

    summary = asyncio.run(poll_adzuna(_settings(search_terms=["python", "go"]), PostingNormalizer(store), client))

    assert summary.failed_terms == ["python", "go"]
    assert summary.fetched == 0
    assert store.postings == {}
