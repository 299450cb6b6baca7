from __future__ import annotations

from dataclasses import replace
from functools import lru_cache
from typing import Any, Protocol

from jobops.core.config import get_settings
from jobops.services.records import GenerationRun, PostingRecord, StageFilter, utcnow
from jobops.services.repository import PostgresRepository, RepositoryNotFoundError


class PipelineStore(Protocol):
    async def get(self, posting_id: str) -> PostingRecord: ...

    async def get_by_dedupe_key(self, dedupe_key: str) -> PostingRecord | None: ...

    async def insert_or_get(self, posting: PostingRecord) -> tuple[PostingRecord, bool]: ...

    async def list_by_stage(self, stage: StageFilter, *, limit: int = 100, offset: int = 0) -> list[PostingRecord]: ...

    async def compare_and_set_stage(self, posting_id: str, expected_stage: str, new_stage: str) -> bool: ...

    async def save_run(self, run: GenerationRun) -> None: ...

    async def list_runs(self, posting_id: str, *, limit: int = 20) -> list[GenerationRun]: ...

    async def get_latest_run(self, posting_id: str) -> GenerationRun | None: ...

    async def load_app_settings(self) -> dict[str, Any] | None: ...

    async def save_app_settings(self, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class InMemoryPipelineStore:
    """Process-local store used when no database is configured.

    Every method body runs without awaiting, so check-then-write sequences are
    atomic on the event loop. Records are copied on the way in and out.
    """

    def __init__(self) -> None:
        self.postings: dict[str, PostingRecord] = {}
        self.ids_by_dedupe_key: dict[str, str] = {}
        self.runs: dict[str, GenerationRun] = {}
        self.app_settings: dict[str, Any] | None = None

    async def get(self, posting_id: str) -> PostingRecord:
        posting = self.postings.get(posting_id)
        if posting is None:
            raise RepositoryNotFoundError("posting not found")
        return replace(posting)

    async def get_by_dedupe_key(self, dedupe_key: str) -> PostingRecord | None:
        posting_id = self.ids_by_dedupe_key.get(dedupe_key)
        if posting_id is None:
            return None
        return replace(self.postings[posting_id])

    async def insert_or_get(self, posting: PostingRecord) -> tuple[PostingRecord, bool]:
        existing_id = self.ids_by_dedupe_key.get(posting.dedupe_key)
        if existing_id is not None:
            return replace(self.postings[existing_id]), False
        self.postings[posting.id] = replace(posting)
        self.ids_by_dedupe_key[posting.dedupe_key] = posting.id
        return replace(posting), True

    async def list_by_stage(self, stage: StageFilter, *, limit: int = 100, offset: int = 0) -> list[PostingRecord]:
        rows = [posting for posting in self.postings.values() if stage == "all" or posting.stage == stage]
        rows.sort(key=lambda posting: (posting.discovered_at, posting.id), reverse=True)
        return [replace(posting) for posting in rows[offset : offset + limit]]

    async def compare_and_set_stage(self, posting_id: str, expected_stage: str, new_stage: str) -> bool:
        posting = self.postings.get(posting_id)
        if posting is None or posting.stage != expected_stage:
            return False
        posting.stage = new_stage  # type: ignore[assignment]
        posting.updated_at = utcnow()
        return True

    async def save_run(self, run: GenerationRun) -> None:
        self.runs[run.id] = replace(run, chunks=list(run.chunks))

    async def list_runs(self, posting_id: str, *, limit: int = 20) -> list[GenerationRun]:
        rows = [run for run in self.runs.values() if run.posting_id == posting_id]
        rows.sort(key=lambda run: (run.created_at, run.generation), reverse=True)
        return [replace(run, chunks=list(run.chunks)) for run in rows[:limit]]

    async def get_latest_run(self, posting_id: str) -> GenerationRun | None:
        runs = await self.list_runs(posting_id, limit=1)
        return runs[0] if runs else None

    async def load_app_settings(self) -> dict[str, Any] | None:
        return dict(self.app_settings) if self.app_settings is not None else None

    async def save_app_settings(self, payload: dict[str, Any]) -> None:
        self.app_settings = dict(payload)

    async def close(self) -> None:
        return None


@lru_cache
def get_repository() -> PipelineStore:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryPipelineStore()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
