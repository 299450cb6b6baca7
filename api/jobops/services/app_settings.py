from __future__ import annotations

import asyncio
from functools import lru_cache
import logging
from typing import Any

from pydantic import ValidationError

from jobops.core.config import Settings, get_settings
from jobops.schemas.settings import AppSettings, AppSettingsOut, AppSettingsUpdate, ResumeProjectsSettings
from jobops.services.sources import enabled_sources
from jobops.services.store import PipelineStore, get_repository

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = (
    "adzuna_app_id",
    "adzuna_app_key",
    "ukvisajobs_email",
    "ukvisajobs_password",
    "webhook_secret",
)


class SettingsValidationError(ValueError):
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def secret_hint(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()[:4]


def _unique_ids(values: Any) -> list[str]:
    if not isinstance(values, list):
        return []
    unique: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        stripped = value.strip()
        if stripped and stripped not in unique:
            unique.append(stripped)
    return unique


def normalize_resume_projects(raw: dict[str, Any], *, max_projects_limit: int) -> dict[str, Any]:
    """Locked ids win over AI-selectable ones; ``max_projects`` is clamped to ``[0, limit]``."""
    locked = _unique_ids(raw.get("locked_project_ids"))
    locked_set = set(locked)
    selectable = [value for value in _unique_ids(raw.get("ai_selectable_project_ids")) if value not in locked_set]
    try:
        max_projects = int(raw.get("max_projects", 0))
    except (TypeError, ValueError):
        max_projects = 0
    upper = max(0, max_projects_limit)
    return {
        "max_projects": min(max(max_projects, 0), upper),
        "locked_project_ids": locked,
        "ai_selectable_project_ids": selectable,
    }


def default_app_settings(settings: Settings) -> AppSettings:
    return AppSettings(
        adzuna_app_id=settings.adzuna_app_id,
        adzuna_app_key=settings.adzuna_app_key,
        ukvisajobs_email=settings.ukvisajobs_email,
        ukvisajobs_password=settings.ukvisajobs_password,
        webhook_secret=settings.webhook_secret,
    )


def to_settings_out(app_settings: AppSettings) -> AppSettingsOut:
    return AppSettingsOut(
        adzuna_app_id=app_settings.adzuna_app_id,
        adzuna_app_key_hint=secret_hint(app_settings.adzuna_app_key),
        adzuna_country=app_settings.adzuna_country,
        adzuna_max_jobs_per_term=app_settings.adzuna_max_jobs_per_term,
        ukvisajobs_email=app_settings.ukvisajobs_email,
        ukvisajobs_password_hint=secret_hint(app_settings.ukvisajobs_password),
        ukvisajobs_max_jobs=app_settings.ukvisajobs_max_jobs,
        webhook_secret_hint=secret_hint(app_settings.webhook_secret),
        search_terms=app_settings.search_terms,
        model=app_settings.model,
        resume_projects=app_settings.resume_projects,
        enabled_sources=sorted(enabled_sources(app_settings)),
    )


class AppSettingsService:
    """Single settings record; created with defaults on first read, replaced whole on update."""

    def __init__(self, store: PipelineStore, *, defaults: AppSettings, max_projects_limit: int) -> None:
        self.store = store
        self.defaults = defaults
        self.max_projects_limit = max_projects_limit
        self._lock = asyncio.Lock()

    async def get(self) -> AppSettings:
        async with self._lock:
            return await self._load_or_init()

    async def update(self, patch: AppSettingsUpdate) -> AppSettings:
        changes = patch.model_dump(exclude_unset=True)
        resume_changes = changes.pop("resume_projects", None)
        async with self._lock:
            current = await self._load_or_init()
            merged = current.model_dump()
            defaults = self.defaults.model_dump()
            for key, value in changes.items():
                if key in CREDENTIAL_FIELDS and isinstance(value, str):
                    merged[key] = value.strip() or None
                elif value is None:
                    merged[key] = defaults[key]
                else:
                    merged[key] = value

            resume = dict(merged["resume_projects"])
            if resume_changes:
                resume.update({key: value for key, value in resume_changes.items() if value is not None})
            merged["resume_projects"] = normalize_resume_projects(
                resume,
                max_projects_limit=self.max_projects_limit,
            )

            try:
                updated = AppSettings.model_validate(merged)
            except ValidationError as exc:
                raise SettingsValidationError(
                    "invalid settings update",
                    exc.errors(include_url=False, include_context=False),
                ) from exc

            await self.store.save_app_settings(updated.model_dump(mode="json"))
            changed = sorted(changes) + (["resume_projects"] if resume_changes else [])
            logger.info("app settings updated fields=%s", ",".join(changed))
            return updated

    async def _load_or_init(self) -> AppSettings:
        payload = await self.store.load_app_settings()
        if payload is not None:
            return self._clamped(AppSettings.model_validate(payload))
        initial = self._clamped(self.defaults)
        await self.store.save_app_settings(initial.model_dump(mode="json"))
        logger.info("initialized app settings from environment defaults")
        return initial

    def _clamped(self, app_settings: AppSettings) -> AppSettings:
        resume = normalize_resume_projects(
            app_settings.resume_projects.model_dump(),
            max_projects_limit=self.max_projects_limit,
        )
        return app_settings.model_copy(update={"resume_projects": ResumeProjectsSettings(**resume)}, deep=True)


@lru_cache
def get_app_settings_service() -> AppSettingsService:
    settings = get_settings()
    return AppSettingsService(
        get_repository(),
        defaults=default_app_settings(settings),
        max_projects_limit=settings.resume_max_projects_limit,
    )
