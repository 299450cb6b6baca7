from __future__ import annotations

import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from jobops.services.records import GenerationRun, PostingRecord, StageFilter


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write cannot be reconciled with stored state."""


SCHEMA_STATEMENTS = (
    """
    create table if not exists postings (
      id uuid primary key,
      source text not null,
      dedupe_key text not null unique,
      title text not null,
      company text not null,
      description text not null default '',
      external_url text,
      external_id text,
      discovered_at timestamptz not null,
      stage text not null check (stage in ('discovered', 'ready', 'applied')),
      visa_sponsor boolean,
      raw_payload jsonb not null default '{}'::jsonb,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    "create index if not exists postings_stage_discovered_at_idx on postings (stage, discovered_at desc)",
    """
    create table if not exists generation_runs (
      id uuid primary key,
      posting_id uuid not null references postings(id),
      generation integer not null,
      status text not null,
      prompt text,
      replaces_run_id text,
      chunks jsonb not null default '[]'::jsonb,
      error text,
      created_at timestamptz not null,
      updated_at timestamptz not null
    )
    """,
    "alter table generation_runs add column if not exists prompt text",
    "alter table generation_runs add column if not exists replaces_run_id text",
    "create index if not exists generation_runs_posting_idx on generation_runs (posting_id, created_at desc)",
    """
    create table if not exists app_settings (
      id smallint primary key default 1 check (id = 1),
      payload jsonb not null,
      updated_at timestamptz not null default now()
    )
    """,
)

POSTING_COLUMNS = """
  id::text as id,
  source,
  dedupe_key,
  title,
  company,
  description,
  external_url,
  external_id,
  discovered_at,
  stage,
  visa_sponsor,
  raw_payload,
  created_at,
  updated_at
"""

RUN_COLUMNS = """
  id::text as id,
  posting_id::text as posting_id,
  generation,
  status,
  prompt,
  replaces_run_id,
  chunks,
  error,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get(self, posting_id: str) -> PostingRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {POSTING_COLUMNS} from postings where id = $1::uuid", posting_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc
        if not row:
            raise RepositoryNotFoundError("posting not found")
        return self._posting_row_to_record(row)

    async def get_by_dedupe_key(self, dedupe_key: str) -> PostingRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {POSTING_COLUMNS} from postings where dedupe_key = $1", dedupe_key)
        return self._posting_row_to_record(row) if row else None

    async def insert_or_get(self, posting: PostingRecord) -> tuple[PostingRecord, bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into postings (
                      id,
                      source,
                      dedupe_key,
                      title,
                      company,
                      description,
                      external_url,
                      external_id,
                      discovered_at,
                      stage,
                      visa_sponsor,
                      raw_payload,
                      created_at,
                      updated_at
                    )
                    values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12::jsonb, $13, $14)
                    on conflict (dedupe_key) do nothing
                    returning {POSTING_COLUMNS}
                    """,
                    posting.id,
                    posting.source,
                    posting.dedupe_key,
                    posting.title,
                    posting.company,
                    posting.description,
                    posting.external_url,
                    posting.external_id,
                    posting.discovered_at,
                    posting.stage,
                    posting.visa_sponsor,
                    json.dumps(posting.raw_payload, default=str),
                    posting.created_at,
                    posting.updated_at,
                )
                if row:
                    return self._posting_row_to_record(row), True

                existing = await conn.fetchrow(
                    f"select {POSTING_COLUMNS} from postings where dedupe_key = $1",
                    posting.dedupe_key,
                )
                if not existing:
                    raise RepositoryConflictError("failed to resolve existing posting after conflict")
                return self._posting_row_to_record(existing), False

    async def list_by_stage(self, stage: StageFilter, *, limit: int = 100, offset: int = 0) -> list[PostingRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {POSTING_COLUMNS}
            from postings
            where ($1::text = 'all' or stage = $1::text)
            order by discovered_at desc, id
            limit $2
            offset $3
            """,
            stage,
            limit,
            offset,
        )
        return [self._posting_row_to_record(row) for row in rows]

    async def compare_and_set_stage(self, posting_id: str, expected_stage: str, new_stage: str) -> bool:
        pool = await self._get_pool()
        try:
            updated_id = await pool.fetchval(
                """
                update postings
                set stage = $3, updated_at = now()
                where id = $1::uuid and stage = $2
                returning id::text
                """,
                posting_id,
                expected_stage,
                new_stage,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError):
            return False
        return updated_id is not None

    async def save_run(self, run: GenerationRun) -> None:
        pool = await self._get_pool()
        try:
            await pool.execute(
                """
                insert into generation_runs (
                  id, posting_id, generation, status, prompt, replaces_run_id, chunks, error, created_at, updated_at
                )
                values ($1::uuid, $2::uuid, $3, $4, $5, $6, $7::jsonb, $8, $9, $10)
                on conflict (id) do update
                set
                  status = excluded.status,
                  chunks = excluded.chunks,
                  error = excluded.error,
                  updated_at = excluded.updated_at
                """,
                run.id,
                run.posting_id,
                run.generation,
                run.status,
                run.prompt,
                run.replaces_run_id,
                json.dumps(list(run.chunks)),
                run.error,
                run.created_at,
                run.updated_at,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryConflictError(str(exc)) from exc

    async def list_runs(self, posting_id: str, *, limit: int = 20) -> list[GenerationRun]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                f"""
                select {RUN_COLUMNS}
                from generation_runs
                where posting_id = $1::uuid
                order by created_at desc, generation desc
                limit $2
                """,
                posting_id,
                limit,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("posting not found") from exc
        return [self._run_row_to_record(row) for row in rows]

    async def get_latest_run(self, posting_id: str) -> GenerationRun | None:
        runs = await self.list_runs(posting_id, limit=1)
        return runs[0] if runs else None

    async def load_app_settings(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        payload = await pool.fetchval("select payload from app_settings where id = 1")
        if payload is None:
            return None
        return self._coerce_json_dict(payload)

    async def save_app_settings(self, payload: dict[str, Any]) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            insert into app_settings (id, payload, updated_at)
            values (1, $1::jsonb, now())
            on conflict (id) do update
            set payload = excluded.payload, updated_at = excluded.updated_at
            """,
            json.dumps(payload),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JOBOPS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            async with pool.acquire() as conn:
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc
        self._pool = pool
        return self._pool

    @classmethod
    def _posting_row_to_record(cls, row: asyncpg.Record) -> PostingRecord:
        return PostingRecord(
            id=row["id"],
            source=row["source"],
            dedupe_key=row["dedupe_key"],
            title=row["title"],
            company=row["company"],
            description=row["description"],
            external_url=row["external_url"],
            external_id=row["external_id"],
            discovered_at=row["discovered_at"],
            stage=row["stage"],
            visa_sponsor=row["visa_sponsor"],
            raw_payload=cls._coerce_json_dict(row["raw_payload"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _run_row_to_record(row: asyncpg.Record) -> GenerationRun:
        chunks = row["chunks"]
        if isinstance(chunks, str):
            try:
                chunks = json.loads(chunks)
            except json.JSONDecodeError:
                chunks = []
        return GenerationRun(
            id=row["id"],
            posting_id=row["posting_id"],
            generation=row["generation"],
            status=row["status"],
            prompt=row["prompt"],
            replaces_run_id=row["replaces_run_id"],
            chunks=[str(chunk) for chunk in chunks or []],
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}
