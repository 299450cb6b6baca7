from fastapi import Depends

from jobops.core.config import Settings, get_settings
from jobops.schemas.settings import AppSettings
from jobops.services.adzuna import AdzunaClient
from jobops.services.app_settings import AppSettingsService, get_app_settings_service
from jobops.services.llm import GenerationCapability, get_generation_capability
from jobops.services.manual_import import ManualImportService
from jobops.services.normalizer import PostingNormalizer
from jobops.services.sponsors import SponsorRegister, get_sponsor_register
from jobops.services.store import PipelineStore, get_repository
from jobops.services.transitions import StageTransitionEngine


def get_normalizer(
    repository: PipelineStore = Depends(get_repository),
    sponsors: SponsorRegister = Depends(get_sponsor_register),
) -> PostingNormalizer:
    return PostingNormalizer(repository, sponsors=sponsors)


def get_transition_engine(repository: PipelineStore = Depends(get_repository)) -> StageTransitionEngine:
    return StageTransitionEngine(repository)


def get_manual_import_service(
    capability: GenerationCapability = Depends(get_generation_capability),
    normalizer: PostingNormalizer = Depends(get_normalizer),
) -> ManualImportService:
    return ManualImportService(capability, normalizer)


async def get_current_app_settings(
    service: AppSettingsService = Depends(get_app_settings_service),
) -> AppSettings:
    return await service.get()


def get_adzuna_client(
    app_settings: AppSettings = Depends(get_current_app_settings),
    settings: Settings = Depends(get_settings),
) -> AdzunaClient:
    return AdzunaClient(
        base_url=settings.adzuna_base_url,
        app_id=app_settings.adzuna_app_id or "",
        app_key=app_settings.adzuna_app_key or "",
        country=app_settings.adzuna_country,
        timeout_seconds=settings.adzuna_timeout_seconds,
    )
