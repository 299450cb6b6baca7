import pytest

from jobops.schemas.settings import AppSettings
from jobops.services.errors import SourceDisabledError
from jobops.services.sources import enabled_sources, is_source_enabled, require_enabled


def test_enabled_sources_empty_without_credentials() -> None:
    assert enabled_sources({}) == frozenset()
    assert enabled_sources(AppSettings()) == frozenset()


def test_enabled_sources_requires_every_field() -> None:
    assert enabled_sources({"adzuna_app_id": "id", "adzuna_app_key": "key"}) == {"adzuna"}
    assert enabled_sources({"adzuna_app_id": "id", "adzuna_app_key": "   "}) == frozenset()
    assert enabled_sources({"ukvisajobs_email": "me@example.com"}) == frozenset()


def test_enabled_sources_accepts_secret_hints() -> None:
    settings = {"adzuna_app_id": "id", "adzuna_app_key_hint": "abcd", "webhook_secret_hint": "s3cr"}
    assert enabled_sources(settings) == {"adzuna", "webhook"}


def test_enabled_sources_reads_model_attributes() -> None:
    settings = AppSettings(ukvisajobs_email="me@example.com", ukvisajobs_password="pw", webhook_secret="hook")
    assert enabled_sources(settings) == {"ukvisajobs", "webhook"}


def test_manual_source_is_never_gated() -> None:
    assert is_source_enabled({}, "manual")
    require_enabled({}, "manual")


def test_require_enabled_raises_for_disabled_source() -> None:
    with pytest.raises(SourceDisabledError) as exc_info:
        require_enabled(AppSettings(), "adzuna")
    assert exc_info.value.source == "adzuna"


def test_missing_key_hint_keeps_adzuna_disabled() -> None:
    assert "adzuna" not in enabled_sources({"adzuna_app_id": "abc", "adzuna_app_key_hint": None})
    assert "adzuna" in enabled_sources({"adzuna_app_id": "abc", "adzuna_app_key_hint": "xyz"})
