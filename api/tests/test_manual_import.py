from __future__ import annotations

import asyncio
from typing import Any

from jobops.schemas.imports import ManualDraft
from jobops.services.llm import ChatMessage
from jobops.services.manual_import import ManualImportService, missing_draft_fields
from jobops.services.normalizer import PostingNormalizer
from jobops.services.store import InMemoryPipelineStore

PASTED = """Senior Data Engineer at Globex
London, hybrid. Apply at https://globex.example.com/careers/42
"""


class InferringCapability:
    def __init__(self, payload: dict[str, Any]) -> None:
        self.payload = payload
        self.messages: list[ChatMessage] = []

    async def stream(self, messages: list[ChatMessage], *, model: str | None = None):
        if False:
            yield ""

    async def complete_json(self, messages: list[ChatMessage], *, model: str | None = None) -> dict[str, Any]:
        self.messages = messages
        return self.payload


def _service(payload: dict[str, Any]) -> tuple[ManualImportService, InMemoryPipelineStore]:
    store = InMemoryPipelineStore()
    return ManualImportService(InferringCapability(payload), PostingNormalizer(store)), store


def test_infer_maps_extracted_fields_and_stores_nothing() -> None:
    service, store = _service(
        {
            "title": "Senior Data Engineer",
            "employer": "Globex",
            "location": "London",
            "jobUrl": "https://globex.example.com/careers/42",
            "jobDescription": None,
        }
    )

    draft = asyncio.run(service.infer_draft(PASTED))

    assert draft.title == "Senior Data Engineer"
    assert draft.company == "Globex"
    assert draft.url == "https://globex.example.com/careers/42"
    assert draft.description == PASTED.strip()
    assert missing_draft_fields(draft) == []
    assert store.postings == {}


def test_infer_reports_missing_required_fields() -> None:
    service, _ = _service({"title": "Engineer"})
    draft = asyncio.run(service.infer_draft("Engineer wanted"))
    assert missing_draft_fields(draft) == ["company"]


def test_unconfirmed_draft_creates_no_posting() -> None:
    service, store = _service({})
    result = asyncio.run(service.confirm(ManualDraft(title="Engineer", company="Acme"), confirmed=False))
    assert result is None
    assert store.postings == {}


def test_confirmed_draft_creates_one_discovered_posting() -> None:
    service, store = _service({})
    draft = ManualDraft(title="Engineer", company="Acme", url="https://acme.example.com/jobs/7?utm_source=x")

    async def scenario():
        first = await service.confirm(draft, confirmed=True)
        second = await service.confirm(draft, confirmed=True)
        return first, second

    first, second = asyncio.run(scenario())

    assert first is not None and second is not None
    assert first.created is True
    assert second.created is False
    assert first.posting.source == "manual"
    assert first.posting.stage == "discovered"
    assert first.posting.dedupe_key == "url:https://acme.example.com/jobs/7"
    assert len(store.postings) == 1
