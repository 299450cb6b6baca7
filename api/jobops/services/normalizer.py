from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from jobops.core.urls import canonical_hash, dedupe_key, is_absolute_http_url
from jobops.services.errors import MalformedPayloadError
from jobops.services.records import PostingRecord, utcnow
from jobops.services.sources import SOURCE_IDS
from jobops.services.sponsors import SponsorRegister
from jobops.services.store import PipelineStore

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Candidate keys per canonical field, tried in order. Dotted keys walk nested objects.
FIELD_CANDIDATES: dict[str, tuple[str, ...]] = {
    "title": ("title", "jobTitle", "job.title"),
    "company": (
        "company.display_name",
        "company",
        "company_name",
        "employer",
        "organization_name",
        "job.company",
    ),
    "description": ("description", "jobDescription", "description_text", "job.description"),
    "external_url": (
        "redirect_url",
        "url",
        "jobUrl",
        "job_url",
        "canonical_url",
        "applicationLink",
        "job.url",
    ),
    "external_id": ("id", "sourceJobId", "external_id", "job.id"),
    "discovered_at": ("discovered_at", "created", "datePosted", "posted_at", "job.created"),
}


@dataclass(slots=True)
class ExtractedPosting:
    title: str
    company: str
    description: str
    external_url: str | None
    external_id: str | None
    discovered_at: datetime


@dataclass(slots=True)
class IngestResult:
    posting: PostingRecord
    created: bool


@dataclass(slots=True)
class BatchIngestSummary:
    created: int = 0
    existing: int = 0
    malformed: int = 0
    posting_ids: list[str] = field(default_factory=list)


def extract_posting_fields(source: str, raw_payload: Any) -> ExtractedPosting:
    if source not in SOURCE_IDS:
        raise MalformedPayloadError(source, "unknown source")
    if not isinstance(raw_payload, dict):
        raise MalformedPayloadError(source, "payload must be a JSON object")

    title = _first_text(raw_payload, FIELD_CANDIDATES["title"])
    if not title:
        raise MalformedPayloadError(source, "missing title")
    company = _first_text(raw_payload, FIELD_CANDIDATES["company"])
    if not company:
        raise MalformedPayloadError(source, "missing company")
    description = _first_text(raw_payload, FIELD_CANDIDATES["description"]) or ""

    external_url = _first_text(raw_payload, FIELD_CANDIDATES["external_url"])
    if external_url and not is_absolute_http_url(external_url):
        external_url = None
    external_id = _first_text(raw_payload, FIELD_CANDIDATES["external_id"])
    if not external_url and not external_id:
        if source != "manual":
            raise MalformedPayloadError(source, "missing external url and external id")
        # Pasted descriptions often carry no link; identity falls back to content.
        external_id = canonical_hash("\n".join((title.lower(), company.lower(), description.strip())))[:32]

    return ExtractedPosting(
        title=title,
        company=company,
        description=description.strip(),
        external_url=external_url,
        external_id=external_id,
        discovered_at=_coerce_datetime(_lookup_path(raw_payload, FIELD_CANDIDATES["discovered_at"])),
    )


class PostingNormalizer:
    def __init__(self, store: PipelineStore, *, sponsors: SponsorRegister | None = None) -> None:
        self.store = store
        self.sponsors = sponsors or SponsorRegister()

    async def normalize(self, source: str, raw_payload: Any) -> IngestResult:
        with tracer.start_as_current_span("ingestion.normalize") as span:
            span.set_attribute("posting.source", source)
            try:
                fields = extract_posting_fields(source, raw_payload)
            except MalformedPayloadError as exc:
                logger.warning("discarded malformed payload source=%s reason=%s", source, exc)
                raise

            key = dedupe_key(source=source, external_url=fields.external_url, external_id=fields.external_id)
            if key is None:
                raise MalformedPayloadError(source, "missing external url and external id")

            existing = await self.store.get_by_dedupe_key(key)
            if existing is not None:
                logger.info("ingestion matched existing posting id=%s source=%s", existing.id, source)
                span.set_attribute("posting.id", existing.id)
                return IngestResult(posting=existing, created=False)

            now = utcnow()
            candidate = PostingRecord(
                id=str(uuid4()),
                source=source,
                dedupe_key=key,
                title=fields.title,
                company=fields.company,
                description=fields.description,
                external_url=fields.external_url,
                external_id=fields.external_id,
                discovered_at=fields.discovered_at,
                stage="discovered",
                visa_sponsor=self.sponsors.lookup(fields.company),
                raw_payload=raw_payload,
                created_at=now,
                updated_at=now,
            )
            posting, created = await self.store.insert_or_get(candidate)
            span.set_attribute("posting.id", posting.id)
            span.set_attribute("posting.created", created)
            if created:
                logger.info("ingested posting id=%s source=%s dedupe_key=%s", posting.id, source, key)
            else:
                logger.info("ingestion raced to existing posting id=%s source=%s", posting.id, source)
            return IngestResult(posting=posting, created=created)

    async def normalize_many(self, source: str, payloads: Iterable[Any]) -> BatchIngestSummary:
        summary = BatchIngestSummary()
        for payload in payloads:
            try:
                result = await self.normalize(source, payload)
            except MalformedPayloadError:
                summary.malformed += 1
                continue
            if result.created:
                summary.created += 1
            else:
                summary.existing += 1
            if result.posting.id not in summary.posting_ids:
                summary.posting_ids.append(result.posting.id)
        return summary


def _lookup_path(payload: dict[str, Any], candidates: tuple[str, ...]) -> Any:
    for candidate in candidates:
        value: Any = payload
        for part in candidate.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(part)
        if value is not None and value != "":
            return value
    return None


def _first_text(payload: dict[str, Any], candidates: tuple[str, ...]) -> str | None:
    for candidate in candidates:
        value = _lookup_path(payload, (candidate,))
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _coerce_datetime(value: Any) -> datetime:
    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            parsed = None
    if parsed is None:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
