from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

import httpx
from opentelemetry import trace

from jobops.schemas.settings import AppSettings
from jobops.services.normalizer import PostingNormalizer
from jobops.services.sources import require_enabled

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_RESULTS_PER_PAGE = 50


@dataclass(slots=True)
class PollSummary:
    fetched: int = 0
    created: int = 0
    existing: int = 0
    malformed: int = 0
    failed_terms: list[str] = field(default_factory=list)


class AdzunaClient:
    def __init__(self, base_url: str, app_id: str, app_key: str, country: str, timeout_seconds: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.app_id = app_id
        self.app_key = app_key
        self.country = country
        self.timeout_seconds = timeout_seconds

    async def search(
        self,
        term: str,
        *,
        page: int = 1,
        results_per_page: int = MAX_RESULTS_PER_PAGE,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "app_id": self.app_id,
            "app_key": self.app_key,
            "results_per_page": min(max(1, results_per_page), MAX_RESULTS_PER_PAGE),
            "content-type": "application/json",
        }
        if term:
            params["what"] = term
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(f"{self.base_url}/{self.country}/search/{page}", params=params)
            response.raise_for_status()
            payload = response.json()
        results = payload.get("results") if isinstance(payload, dict) else None
        return [item for item in results or [] if isinstance(item, dict)]


async def poll_adzuna(
    app_settings: AppSettings,
    normalizer: PostingNormalizer,
    client: AdzunaClient,
) -> PollSummary:
    """Fetch each search term up to the per-term cap and ingest the results.

    A failing term is logged and skipped so the remaining terms still run.
    """
    require_enabled(app_settings, "adzuna")
    summary = PollSummary()
    terms = app_settings.search_terms or [""]
    cap = app_settings.adzuna_max_jobs_per_term

    for term in terms:
        with tracer.start_as_current_span("adzuna.poll_term") as span:
            span.set_attribute("adzuna.term", term)
            collected: list[dict[str, Any]] = []
            page = 1
            try:
                while len(collected) < cap:
                    batch = await client.search(
                        term,
                        page=page,
                        results_per_page=min(cap - len(collected), MAX_RESULTS_PER_PAGE),
                    )
                    if not batch:
                        break
                    collected.extend(batch[: cap - len(collected)])
                    page += 1
            except (httpx.HTTPError, ValueError) as exc:
                # ValueError covers a 200 response whose body is not JSON.
                logger.warning("adzuna poll failed term=%r page=%s error=%s", term, page, exc)
                span.record_exception(exc)
                summary.failed_terms.append(term)
                continue

            batch_summary = await normalizer.normalize_many("adzuna", collected)
            summary.fetched += len(collected)
            summary.created += batch_summary.created
            summary.existing += batch_summary.existing
            summary.malformed += batch_summary.malformed
            logger.info(
                "adzuna term polled term=%r fetched=%s created=%s existing=%s malformed=%s",
                term,
                len(collected),
                batch_summary.created,
                batch_summary.existing,
                batch_summary.malformed,
            )
    return summary
