from pydantic import BaseModel, Field, field_validator, model_validator


class ResumeProjectsSettings(BaseModel):
    max_projects: int = Field(default=3, ge=0)
    locked_project_ids: list[str] = Field(default_factory=list)
    ai_selectable_project_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_disjoint(self) -> "ResumeProjectsSettings":
        overlap = set(self.locked_project_ids) & set(self.ai_selectable_project_ids)
        if overlap:
            raise ValueError(f"project ids cannot be both locked and AI-selectable: {sorted(overlap)}")
        return self


class AppSettings(BaseModel):
    adzuna_app_id: str | None = None
    adzuna_app_key: str | None = None
    adzuna_country: str = "gb"
    adzuna_max_jobs_per_term: int = Field(default=50, ge=1, le=200)
    ukvisajobs_email: str | None = None
    ukvisajobs_password: str | None = None
    ukvisajobs_max_jobs: int = Field(default=50, ge=1, le=200)
    webhook_secret: str | None = None
    search_terms: list[str] = Field(default_factory=list)
    model: str | None = None
    resume_projects: ResumeProjectsSettings = Field(default_factory=ResumeProjectsSettings)

    @field_validator("search_terms")
    @classmethod
    def _clean_search_terms(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for term in value:
            stripped = term.strip()
            if stripped and stripped not in cleaned:
                cleaned.append(stripped)
        return cleaned

    @field_validator("adzuna_country")
    @classmethod
    def _lower_country(cls, value: str) -> str:
        stripped = value.strip().lower()
        if len(stripped) != 2 or not stripped.isalpha():
            raise ValueError("adzuna_country must be a two-letter country code")
        return stripped


class ResumeProjectsUpdate(BaseModel):
    max_projects: int | None = None
    locked_project_ids: list[str] | None = None
    ai_selectable_project_ids: list[str] | None = None


class AppSettingsUpdate(BaseModel):
    """Partial update; fields left unset keep their stored value, explicit null clears."""

    adzuna_app_id: str | None = None
    adzuna_app_key: str | None = None
    adzuna_country: str | None = None
    adzuna_max_jobs_per_term: int | None = None
    ukvisajobs_email: str | None = None
    ukvisajobs_password: str | None = None
    ukvisajobs_max_jobs: int | None = None
    webhook_secret: str | None = None
    search_terms: list[str] | None = None
    model: str | None = None
    resume_projects: ResumeProjectsUpdate | None = None


class AppSettingsOut(BaseModel):
    adzuna_app_id: str | None = None
    adzuna_app_key_hint: str | None = None
    adzuna_country: str
    adzuna_max_jobs_per_term: int
    ukvisajobs_email: str | None = None
    ukvisajobs_password_hint: str | None = None
    ukvisajobs_max_jobs: int
    webhook_secret_hint: str | None = None
    search_terms: list[str] = Field(default_factory=list)
    model: str | None = None
    resume_projects: ResumeProjectsSettings
    enabled_sources: list[str] = Field(default_factory=list)
