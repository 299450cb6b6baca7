from fastapi import APIRouter, Depends, HTTPException, status

from jobops.schemas.settings import AppSettingsOut, AppSettingsUpdate
from jobops.services.app_settings import (
    AppSettingsService,
    SettingsValidationError,
    get_app_settings_service,
    to_settings_out,
)
from jobops.services.repository import RepositoryUnavailableError

router = APIRouter()


@router.get("", response_model=AppSettingsOut)
async def read_settings(service: AppSettingsService = Depends(get_app_settings_service)) -> AppSettingsOut:
    try:
        current = await service.get()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return to_settings_out(current)


@router.patch("", response_model=AppSettingsOut)
async def update_settings(
    payload: AppSettingsUpdate,
    service: AppSettingsService = Depends(get_app_settings_service),
) -> AppSettingsOut:
    try:
        updated = await service.update(payload)
    except SettingsValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail={"message": str(exc), "errors": exc.errors},
        ) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return to_settings_out(updated)
