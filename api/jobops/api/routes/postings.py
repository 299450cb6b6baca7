from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from jobops.api.deps import get_transition_engine
from jobops.schemas.postings import PostingDetailOut, PostingOut, StageFilter, StageTransitionRequest
from jobops.services.errors import ConcurrentModificationError, IllegalTransitionError
from jobops.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from jobops.services.store import PipelineStore, get_repository
from jobops.services.transitions import StageTransitionEngine

router = APIRouter()


@router.get("", response_model=list[PostingOut])
async def list_postings(
    stage: StageFilter = Query(default="all"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    repository: PipelineStore = Depends(get_repository),
) -> list[PostingOut]:
    try:
        rows = await repository.list_by_stage(stage, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [PostingOut.model_validate(row, from_attributes=True) for row in rows]


@router.get("/{posting_id}", response_model=PostingDetailOut)
async def get_posting(posting_id: str, repository: PipelineStore = Depends(get_repository)) -> PostingDetailOut:
    try:
        row = await repository.get(posting_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return PostingDetailOut.model_validate(row, from_attributes=True)


@router.patch("/{posting_id}/stage", response_model=PostingDetailOut)
async def transition_posting_stage(
    posting_id: str,
    payload: StageTransitionRequest,
    engine: StageTransitionEngine = Depends(get_transition_engine),
) -> PostingDetailOut:
    try:
        row = await engine.transition(posting_id, payload.stage, manual=payload.manual)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (IllegalTransitionError, ConcurrentModificationError) as exc:
        raise HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return PostingDetailOut.model_validate(row, from_attributes=True)
