from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

RunStatus = Literal["idle", "streaming", "completed", "stopped", "failed"]


class RunStartRequest(BaseModel):
    prompt: str | None = Field(default=None, max_length=20000)
    stream: bool = False


class RunRegenerateRequest(RunStartRequest):
    run_id: str | None = None


class RunStopRequest(BaseModel):
    run_id: str | None = None


class RunOut(BaseModel):
    id: str
    posting_id: str
    generation: int
    status: RunStatus
    prompt: str | None = None
    replaces_run_id: str | None = None
    transcript: str
    error: str | None = None
    created_at: datetime
    updated_at: datetime


class RunStateOut(BaseModel):
    posting_id: str
    status: RunStatus
    generation: int
    run: RunOut | None = None


class ChatMessageOut(BaseModel):
    run_id: str
    role: Literal["user", "assistant"]
    content: str
    status: RunStatus
    created_at: datetime
