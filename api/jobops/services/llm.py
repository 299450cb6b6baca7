from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache
import json
import logging
from typing import Any, Literal, Protocol, TypedDict

import httpx

from jobops.core.config import get_settings

logger = logging.getLogger(__name__)


class ChatMessage(TypedDict):
    role: Literal["system", "user", "assistant"]
    content: str


class LlmError(Exception):
    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.body = body


class GenerationCapability(Protocol):
    def stream(self, messages: list[ChatMessage], *, model: str | None = None) -> AsyncGenerator[str, None]: ...

    async def complete_json(self, messages: list[ChatMessage], *, model: str | None = None) -> dict[str, Any]: ...


class OpenAICompatibleClient:
    """Chat completions over any OpenAI-compatible endpoint."""

    def __init__(self, base_url: str, api_key: str | None, model: str, timeout_seconds: float = 60.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.headers = {"Content-Type": "application/json"}
        if api_key:
            self.headers["Authorization"] = f"Bearer {api_key}"

    async def stream(self, messages: list[ChatMessage], *, model: str | None = None) -> AsyncGenerator[str, None]:
        body = {"model": model or self.model, "messages": messages, "stream": True}
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/v1/chat/completions",
                json=body,
                headers=self.headers,
            ) as response:
                if response.status_code >= 400:
                    raw = (await response.aread()).decode("utf-8", errors="replace")
                    raise LlmError(
                        f"llm request failed with status {response.status_code}",
                        status=response.status_code,
                        body=raw,
                    )
                async for line in response.aiter_lines():
                    delta = parse_stream_line(line)
                    if delta:
                        yield delta

    async def complete_json(self, messages: list[ChatMessage], *, model: str | None = None) -> dict[str, Any]:
        if not any("json" in message["content"].lower() for message in messages):
            messages = [{"role": "system", "content": "Respond with valid JSON."}, *messages]
        body = {
            "model": model or self.model,
            "messages": messages,
            "response_format": {"type": "json_object"},
        }
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/v1/chat/completions", json=body, headers=self.headers)
        if response.status_code >= 400:
            raise LlmError(
                f"llm request failed with status {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        try:
            content = response.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise LlmError("llm response did not contain a JSON object") from exc
        if not isinstance(parsed, dict):
            raise LlmError("llm response did not contain a JSON object")
        return parsed


def parse_stream_line(line: str) -> str | None:
    """Text delta from one server-sent line; None for keep-alives, ``[DONE]`` and non-data lines."""
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if not data or data == "[DONE]":
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("skipping undecodable stream line")
        return None
    choices = event.get("choices") if isinstance(event, dict) else None
    if not choices:
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content")
    return content if isinstance(content, str) else None


@lru_cache
def get_generation_capability() -> GenerationCapability:
    settings = get_settings()
    return OpenAICompatibleClient(
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        timeout_seconds=settings.llm_timeout_seconds,
    )
