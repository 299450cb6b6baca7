from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

Stage = Literal["discovered", "ready", "applied"]
StageFilter = Literal["all", "discovered", "ready", "applied"]


class PostingOut(BaseModel):
    id: str
    source: str
    title: str
    company: str
    external_url: str | None = None
    stage: Stage
    visa_sponsor: bool | None = None
    discovered_at: datetime
    updated_at: datetime


class PostingDetailOut(PostingOut):
    description: str
    external_id: str | None = None
    dedupe_key: str
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class StageTransitionRequest(BaseModel):
    stage: Stage
    manual: bool = False
