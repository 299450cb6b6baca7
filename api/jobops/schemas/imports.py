from pydantic import BaseModel, Field

from jobops.schemas.postings import PostingOut


class ManualInferRequest(BaseModel):
    text: str = Field(min_length=1, max_length=40000)


class ManualDraft(BaseModel):
    title: str | None = None
    company: str | None = None
    location: str | None = None
    url: str | None = None
    description: str | None = None


class ManualDraftOut(BaseModel):
    draft: ManualDraft
    missing_fields: list[str] = Field(default_factory=list)


class ManualConfirmRequest(BaseModel):
    confirmed: bool = False
    draft: ManualDraft


class IngestAccepted(BaseModel):
    posting: PostingOut
    created: bool


class BatchIngestAccepted(BaseModel):
    created: int
    existing: int
    malformed: int
    posting_ids: list[str] = Field(default_factory=list)
