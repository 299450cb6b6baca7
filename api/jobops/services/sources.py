from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from jobops.services.errors import SourceDisabledError

SourceId = Literal["adzuna", "manual", "webhook", "ukvisajobs"]
SourceKind = Literal["search_api", "manual", "webhook", "visa_feed"]

SOURCE_IDS: tuple[SourceId, ...] = ("adzuna", "manual", "webhook", "ukvisajobs")
SOURCE_KINDS: dict[SourceId, SourceKind] = {
    "adzuna": "search_api",
    "manual": "manual",
    "webhook": "webhook",
    "ukvisajobs": "visa_feed",
}


@dataclass(frozen=True, slots=True)
class SourceDefinition:
    source_id: SourceId
    required_fields: tuple[str, ...]


GATED_SOURCES: tuple[SourceDefinition, ...] = (
    SourceDefinition("adzuna", ("adzuna_app_id", "adzuna_app_key")),
    SourceDefinition("ukvisajobs", ("ukvisajobs_email", "ukvisajobs_password")),
    SourceDefinition("webhook", ("webhook_secret",)),
)

# The public settings projection exposes secrets only as hints.
_HINT_ALIASES = {
    "adzuna_app_key": "adzuna_app_key_hint",
    "ukvisajobs_password": "ukvisajobs_password_hint",
    "webhook_secret": "webhook_secret_hint",
}


def enabled_sources(settings: Any) -> frozenset[SourceId]:
    """Credential-gated sources whose required fields are all present and non-blank."""
    return frozenset(
        definition.source_id
        for definition in GATED_SOURCES
        if all(_has_value(settings, field) for field in definition.required_fields)
    )


def is_source_enabled(settings: Any, source: SourceId) -> bool:
    if not any(definition.source_id == source for definition in GATED_SOURCES):
        return True
    return source in enabled_sources(settings)


def require_enabled(settings: Any, source: SourceId) -> None:
    if not is_source_enabled(settings, source):
        raise SourceDisabledError(source)


def _has_value(settings: Any, field: str) -> bool:
    value = _lookup(settings, field)
    if value is None and field in _HINT_ALIASES:
        value = _lookup(settings, _HINT_ALIASES[field])
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    return True


def _lookup(settings: Any, field: str) -> Any:
    if isinstance(settings, Mapping):
        return settings.get(field)
    return getattr(settings, field, None)
