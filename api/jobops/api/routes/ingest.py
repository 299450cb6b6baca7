import hmac
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Response, status

from jobops.api.deps import get_current_app_settings, get_normalizer
from jobops.schemas.imports import BatchIngestAccepted, IngestAccepted
from jobops.schemas.postings import PostingOut
from jobops.schemas.settings import AppSettings
from jobops.services.errors import MalformedPayloadError, SourceDisabledError
from jobops.services.normalizer import PostingNormalizer
from jobops.services.repository import RepositoryUnavailableError
from jobops.services.sources import require_enabled

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=IngestAccepted, status_code=status.HTTP_201_CREATED)
async def ingest_webhook(
    response: Response,
    payload: Any = Body(...),
    webhook_secret: str | None = Header(default=None, alias="X-Webhook-Secret"),
    app_settings: AppSettings = Depends(get_current_app_settings),
    normalizer: PostingNormalizer = Depends(get_normalizer),
) -> IngestAccepted:
    try:
        require_enabled(app_settings, "webhook")
    except SourceDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    expected = (app_settings.webhook_secret or "").encode("utf-8")
    if not webhook_secret or not hmac.compare_digest(webhook_secret.encode("utf-8"), expected):
        logger.warning("rejected webhook delivery with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid webhook secret")

    try:
        result = await normalizer.normalize("webhook", payload)
    except MalformedPayloadError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if not result.created:
        response.status_code = status.HTTP_200_OK
    return IngestAccepted(
        posting=PostingOut.model_validate(result.posting, from_attributes=True),
        created=result.created,
    )


@router.post("/ukvisajobs", response_model=BatchIngestAccepted, status_code=status.HTTP_202_ACCEPTED)
async def ingest_visa_batch(
    payload: list[Any] = Body(...),
    app_settings: AppSettings = Depends(get_current_app_settings),
    normalizer: PostingNormalizer = Depends(get_normalizer),
) -> BatchIngestAccepted:
    try:
        require_enabled(app_settings, "ukvisajobs")
    except SourceDisabledError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    items = payload[: app_settings.ukvisajobs_max_jobs]
    try:
        summary = await normalizer.normalize_many("ukvisajobs", items)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    logger.info(
        "visa batch ingested received=%s accepted=%s created=%s existing=%s malformed=%s",
        len(payload),
        len(items),
        summary.created,
        summary.existing,
        summary.malformed,
    )
    return BatchIngestAccepted(
        created=summary.created,
        existing=summary.existing,
        malformed=summary.malformed,
        posting_ids=summary.posting_ids,
    )
