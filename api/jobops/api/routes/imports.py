from fastapi import APIRouter, Depends, HTTPException, Response, status

from jobops.api.deps import get_current_app_settings, get_manual_import_service
from jobops.schemas.imports import IngestAccepted, ManualConfirmRequest, ManualDraftOut, ManualInferRequest
from jobops.schemas.postings import PostingOut
from jobops.schemas.settings import AppSettings
from jobops.services.errors import MalformedPayloadError
from jobops.services.llm import LlmError
from jobops.services.manual_import import ManualImportService, missing_draft_fields
from jobops.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.post("/manual/infer", response_model=ManualDraftOut)
async def infer_manual_draft(
    payload: ManualInferRequest,
    service: ManualImportService = Depends(get_manual_import_service),
    app_settings: AppSettings = Depends(get_current_app_settings),
) -> ManualDraftOut:
    try:
        draft = await service.infer_draft(payload.text, model=app_settings.model)
    except LlmError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return ManualDraftOut(draft=draft, missing_fields=missing_draft_fields(draft))


@router.post("/manual/confirm", response_model=IngestAccepted, status_code=status.HTTP_201_CREATED)
async def confirm_manual_draft(
    payload: ManualConfirmRequest,
    response: Response,
    service: ManualImportService = Depends(get_manual_import_service),
) -> IngestAccepted:
    try:
        result = await service.confirm(payload.draft, confirmed=payload.confirmed)
    except MalformedPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if result is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail="draft was not confirmed; nothing was imported",
        )
    if not result.created:
        response.status_code = status.HTTP_200_OK
    return IngestAccepted(
        posting=PostingOut.model_validate(result.posting, from_attributes=True),
        created=result.created,
    )
