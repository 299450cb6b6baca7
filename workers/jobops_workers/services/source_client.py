from __future__ import annotations

from typing import Any

import httpx


class SourceClient:
    """Calls the API's source endpoints; the API owns credentials and ingestion."""

    def __init__(self, base_url: str, timeout_seconds: float = 120.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    async def enabled_sources(self) -> list[str]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.get(f"{self.base_url}/sources")
            response.raise_for_status()
            payload = response.json()
        return [str(source) for source in payload.get("enabled", [])]

    async def poll_adzuna(self) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/sources/adzuna/poll")
            response.raise_for_status()
            return response.json()
