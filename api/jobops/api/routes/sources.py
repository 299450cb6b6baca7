from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from jobops.api.deps import get_adzuna_client, get_current_app_settings, get_normalizer
from jobops.schemas.settings import AppSettings
from jobops.services.adzuna import AdzunaClient, poll_adzuna
from jobops.services.errors import SourceDisabledError
from jobops.services.normalizer import PostingNormalizer
from jobops.services.repository import RepositoryUnavailableError
from jobops.services.sources import SOURCE_IDS, SOURCE_KINDS, enabled_sources, is_source_enabled

router = APIRouter()


class SourceOut(BaseModel):
    id: str
    kind: str
    enabled: bool


class SourcesOut(BaseModel):
    enabled: list[str] = Field(default_factory=list)
    sources: list[SourceOut] = Field(default_factory=list)


class PollSummaryOut(BaseModel):
    fetched: int
    created: int
    existing: int
    malformed: int
    failed_terms: list[str] = Field(default_factory=list)


@router.get("", response_model=SourcesOut)
async def list_sources(app_settings: AppSettings = Depends(get_current_app_settings)) -> SourcesOut:
    return SourcesOut(
        enabled=sorted(enabled_sources(app_settings)),
        sources=[
            SourceOut(id=source, kind=SOURCE_KINDS[source], enabled=is_source_enabled(app_settings, source))
            for source in SOURCE_IDS
        ],
    )


@router.post("/adzuna/poll", response_model=PollSummaryOut)
async def poll_adzuna_source(
    app_settings: AppSettings = Depends(get_current_app_settings),
    normalizer: PostingNormalizer = Depends(get_normalizer),
    client: AdzunaClient = Depends(get_adzuna_client),
) -> PollSummaryOut:
    try:
        summary = await poll_adzuna(app_settings, normalizer, client)
    except SourceDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PollSummaryOut(
        fetched=summary.fetched,
        created=summary.created,
        existing=summary.existing,
        malformed=summary.malformed,
        failed_terms=summary.failed_terms,
    )
