from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

Stage = Literal["discovered", "ready", "applied"]
StageFilter = Literal["all", "discovered", "ready", "applied"]
RunStatus = Literal["idle", "streaming", "completed", "stopped", "failed"]

STAGES: tuple[Stage, ...] = ("discovered", "ready", "applied")
TERMINAL_RUN_STATUSES = {"completed", "stopped", "failed"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class PostingRecord:
    id: str
    source: str
    dedupe_key: str
    title: str
    company: str
    description: str
    external_url: str | None
    external_id: str | None
    discovered_at: datetime
    stage: Stage = "discovered"
    visa_sponsor: bool | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(slots=True)
class GenerationRun:
    id: str
    posting_id: str
    generation: int
    status: RunStatus = "streaming"
    prompt: str | None = None
    replaces_run_id: str | None = None
    chunks: list[str] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def transcript(self) -> str:
        return "".join(self.chunks)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES
