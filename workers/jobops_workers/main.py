from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from jobops.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from jobops_workers.core.config import get_settings
from jobops_workers.services.source_client import SourceClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_poll_cycle(client: SourceClient) -> dict[str, int] | None:
    """Poll Adzuna through the API when it is enabled; returns the ingest summary."""
    with tracer.start_as_current_span("worker.poll_cycle") as span:
        enabled = await client.enabled_sources()
        if "adzuna" not in enabled:
            logger.info("adzuna source disabled; skipping poll")
            span.set_attribute("poll.skipped", True)
            return None
        summary = await client.poll_adzuna()
        span.set_attribute("poll.created", int(summary.get("created", 0)))
        logger.info(
            "adzuna poll finished fetched=%s created=%s existing=%s malformed=%s failed_terms=%s",
            summary.get("fetched", 0),
            summary.get("created", 0),
            summary.get("existing", 0),
            summary.get("malformed", 0),
            ",".join(summary.get("failed_terms", [])) or "-",
        )
        return summary


def next_backoff(previous: float, *, base: float, ceiling: float) -> float:
    jitter = random.uniform(0.0, 0.5)
    return min(max(previous, base) * (2.0 + jitter), ceiling)


async def run_worker() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    client = SourceClient(base_url=settings.api_base_url, timeout_seconds=settings.request_timeout_seconds)

    backoff = 0.0
    try:
        while True:
            try:
                await run_poll_cycle(client)
            except Exception as exc:
                backoff = next_backoff(
                    backoff,
                    base=settings.retry_base_seconds,
                    ceiling=settings.max_backoff_seconds,
                )
                logger.exception("poll cycle failed: %s; retry in %.1fs", exc, backoff)
                await asyncio.sleep(backoff)
                continue
            backoff = 0.0
            await asyncio.sleep(settings.poll_interval_seconds)
    finally:
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
