from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, replace
from datetime import datetime
from functools import lru_cache
import logging
from typing import Any, Literal
from uuid import uuid4

from opentelemetry import trace

from jobops.core.config import get_settings
from jobops.services.errors import AlreadyStreamingError, GenerationFailedError
from jobops.services.llm import ChatMessage, GenerationCapability, get_generation_capability
from jobops.services.records import GenerationRun, PostingRecord, RunStatus, utcnow
from jobops.services.repository import RepositoryError, RepositoryNotFoundError
from jobops.services.store import PipelineStore, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RunEventType = Literal["ready", "delta", "completed", "stopped", "error"]

SYSTEM_PROMPT = (
    "You are a job application assistant. Ground every answer in the job posting provided, "
    "keep the candidate's voice, and do not invent employer facts."
)
DEFAULT_PROMPT = "Draft a tailored cover letter for this role."
HISTORY_SCAN_LIMIT = 200


@dataclass(slots=True)
class RunEvent:
    type: RunEventType
    run_id: str
    posting_id: str
    generation: int
    delta: str | None = None
    transcript: str | None = None
    code: str | None = None
    message: str | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "run_id": self.run_id,
            "posting_id": self.posting_id,
            "generation": self.generation,
        }
        for key in ("delta", "transcript", "code", "message"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


class RunChannel:
    """Bounded hand-off from a run's producing task to a single consumer.

    ``send`` blocks the producer when the consumer falls behind. ``close``
    never blocks: the terminal event is delivered after queued events drain.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[RunEvent] = asyncio.Queue(maxsize=max(1, maxsize))
        self._final: RunEvent | None = None
        self._final_set = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._final is not None

    def send_nowait(self, event: RunEvent) -> None:
        self._queue.put_nowait(event)

    async def send(self, event: RunEvent) -> None:
        if self._final is None:
            await self._queue.put(event)

    def close(self, event: RunEvent) -> None:
        if self._final is None:
            self._final = event
            self._final_set.set()

    async def events(self) -> AsyncIterator[RunEvent]:
        while True:
            if not self._queue.empty():
                yield self._queue.get_nowait()
                continue
            if self._final is not None:
                yield self._final
                return
            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._final_set.wait())
            try:
                done, _ = await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for waiter in (getter, closer):
                    if not waiter.done():
                        waiter.cancel()
            if getter in done:
                yield getter.result()


@dataclass(slots=True)
class RunHandle:
    run: GenerationRun
    task: asyncio.Task[None]
    channel: RunChannel | None = None

    @property
    def run_id(self) -> str:
        return self.run.id

    @property
    def generation(self) -> int:
        return self.run.generation

    async def wait(self) -> GenerationRun:
        """Wait for the producing task to end; raises GenerationFailedError for failed runs."""
        await asyncio.wait({self.task})
        if self.run.status == "failed":
            raise GenerationFailedError(self.run.id, self.run.transcript, self.run.error or "generation failed")
        return self.run


@dataclass(slots=True)
class _PostingRunState:
    generation: int = 0
    run: GenerationRun | None = None
    task: asyncio.Task[None] | None = None
    channel: RunChannel | None = None


def _chat_order(run: GenerationRun) -> tuple[datetime, int]:
    return run.created_at, run.generation


def conversation_turns(runs: Iterable[GenerationRun], *, before: GenerationRun | None = None) -> list[GenerationRun]:
    """Runs of one posting in chat order, oldest first.

    A reply replaced by a completed regeneration is dropped. With ``before``,
    only turns created earlier than that run are kept.
    """
    runs = list(runs)
    replaced = {run.replaces_run_id for run in runs if run.status == "completed" and run.replaces_run_id}
    turns = [run for run in runs if run.id not in replaced]
    if before is not None:
        cutoff = _chat_order(before)
        turns = [run for run in turns if run.id != before.id and _chat_order(run) < cutoff]
    turns.sort(key=_chat_order)
    return turns


def build_job_messages(
    posting: PostingRecord,
    prompt: str | None = None,
    history: Sequence[GenerationRun] = (),
) -> list[ChatMessage]:
    context_lines = [
        f"Title: {posting.title}",
        f"Company: {posting.company}",
    ]
    if posting.external_url:
        context_lines.append(f"Link: {posting.external_url}")
    if posting.visa_sponsor is not None:
        context_lines.append(f"Licensed visa sponsor: {'yes' if posting.visa_sponsor else 'no'}")
    context_lines.extend(["", "Description:", posting.description or "(no description provided)"])
    messages: list[ChatMessage] = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "Job posting:\n" + "\n".join(context_lines)},
    ]
    for turn in history:
        messages.append({"role": "user", "content": turn.prompt or DEFAULT_PROMPT})
        messages.append({"role": "assistant", "content": turn.transcript})
    messages.append({"role": "user", "content": prompt or DEFAULT_PROMPT})
    return messages


class GenerationRunController:
    """One generation run per posting, guarded by a per-posting generation counter.

    Status changes happen in code paths without an ``await`` between the check
    and the write, so callers on the event loop never observe half-applied
    transitions. Output from superseded streams is dropped by ``accept_chunk``.
    Earlier completed runs of the posting are replayed to the model as chat
    turns, newest ``history_turns`` only.
    """

    def __init__(
        self,
        store: PipelineStore,
        capability: GenerationCapability,
        *,
        channel_max_chunks: int = 64,
        history_turns: int = 10,
        model: str | None = None,
    ) -> None:
        self.store = store
        self.capability = capability
        self.channel_max_chunks = channel_max_chunks
        self.history_turns = history_turns
        self.model = model
        self._states: dict[str, _PostingRunState] = {}

    def status(self, posting_id: str) -> RunStatus:
        state = self._states.get(posting_id)
        if state is None or state.run is None:
            return "idle"
        return state.run.status

    def generation(self, posting_id: str) -> int:
        state = self._states.get(posting_id)
        return state.generation if state is not None else 0

    def get_run(self, posting_id: str) -> GenerationRun | None:
        state = self._states.get(posting_id)
        return state.run if state is not None else None

    async def thread(self, posting_id: str) -> list[GenerationRun]:
        """Persisted runs plus the live one, in chat order."""
        await self.store.get(posting_id)
        stored = await self.store.list_runs(posting_id, limit=HISTORY_SCAN_LIMIT)
        return conversation_turns(self._known_runs(posting_id, stored))

    async def start(
        self,
        posting_id: str,
        *,
        prompt: str | None = None,
        stream: bool = False,
        model: str | None = None,
    ) -> RunHandle:
        posting = await self.store.get(posting_id)
        stored = await self.store.list_runs(posting_id, limit=HISTORY_SCAN_LIMIT)
        state = self._states.setdefault(posting_id, _PostingRunState())
        if state.run is not None and state.run.status == "streaming":
            raise AlreadyStreamingError(posting_id, state.run.id)
        history = self._history(conversation_turns(self._known_runs(posting_id, stored)))
        return self._launch(
            posting,
            state,
            prompt=prompt,
            history=history,
            model=model,
            stream=stream,
            bump=state.run is not None,
        )

    async def regenerate(
        self,
        posting_id: str,
        *,
        run_id: str | None = None,
        prompt: str | None = None,
        stream: bool = False,
        model: str | None = None,
    ) -> RunHandle:
        """Replace the reply of ``run_id`` (default: the latest run) with a new run.

        The new run reuses the target's prompt unless ``prompt`` is given and
        only sees the turns that came before the target.
        """
        posting = await self.store.get(posting_id)
        stored = await self.store.list_runs(posting_id, limit=HISTORY_SCAN_LIMIT)
        state = self._states.setdefault(posting_id, _PostingRunState())
        known = self._known_runs(posting_id, stored)
        if run_id is None:
            target = state.run or (max(known, key=_chat_order) if known else None)
        else:
            target = next((run for run in known if run.id == run_id), None)
            if target is None:
                raise RepositoryNotFoundError("run not found")
        history = self._history(conversation_turns(known, before=target))
        superseded = self._halt(state)
        handle = self._launch(
            posting,
            state,
            prompt=prompt or (target.prompt if target is not None else None),
            history=history,
            model=model,
            stream=stream,
            bump=True,
            replaces=target,
        )
        if superseded is not None:
            logger.info(
                "generation run superseded posting_id=%s run_id=%s by run_id=%s",
                posting_id,
                superseded.id,
                handle.run_id,
            )
            await self._persist(superseded)
        return handle

    async def stop(self, posting_id: str, *, run_id: str | None = None) -> GenerationRun | None:
        state = self._states.get(posting_id)
        if state is None or state.run is None:
            return None
        if run_id is not None and state.run.id != run_id:
            return None
        stopped = self._halt(state)
        if stopped is None:
            return state.run
        logger.info("generation run stopped posting_id=%s run_id=%s", posting_id, stopped.id)
        await self._persist(stopped)
        return stopped

    def accept_chunk(self, posting_id: str, generation: int, chunk: str) -> bool:
        """Append ``chunk`` when ``generation`` is still the live counter for the posting."""
        state = self._states.get(posting_id)
        run = state.run if state is not None else None
        if state is None or run is None or not self._is_live(state, generation):
            logger.debug("discarded stale chunk posting_id=%s generation=%s", posting_id, generation)
            return False
        run.chunks.append(chunk)
        run.updated_at = utcnow()
        return True

    async def aclose(self) -> None:
        tasks: list[asyncio.Task[None]] = []
        for state in self._states.values():
            stopped = self._halt(state)
            if stopped is not None:
                await self._persist(stopped)
            if state.task is not None:
                tasks.append(state.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _known_runs(self, posting_id: str, stored: list[GenerationRun]) -> list[GenerationRun]:
        runs = {run.id: run for run in stored}
        state = self._states.get(posting_id)
        if state is not None and state.run is not None:
            runs[state.run.id] = state.run
        return list(runs.values())

    def _history(self, turns: list[GenerationRun]) -> list[GenerationRun]:
        completed = [turn for turn in turns if turn.status == "completed" and turn.transcript]
        if self.history_turns <= 0:
            return []
        return completed[-self.history_turns :]

    def _launch(
        self,
        posting: PostingRecord,
        state: _PostingRunState,
        *,
        prompt: str | None,
        history: list[GenerationRun],
        model: str | None,
        stream: bool,
        bump: bool,
        replaces: GenerationRun | None = None,
    ) -> RunHandle:
        if bump:
            state.generation += 1
        run = GenerationRun(
            id=str(uuid4()),
            posting_id=posting.id,
            generation=state.generation,
            prompt=prompt,
            replaces_run_id=replaces.id if replaces is not None else None,
        )
        channel = RunChannel(self.channel_max_chunks) if stream else None
        if channel is not None:
            channel.send_nowait(RunEvent("ready", run.id, posting.id, run.generation))
        state.run = run
        state.channel = channel
        state.task = asyncio.create_task(
            self._pump(posting.id, run, build_job_messages(posting, prompt, history), model or self.model, channel),
            name=f"generation-run:{run.id}",
        )
        logger.info(
            "generation run started posting_id=%s run_id=%s generation=%s history_turns=%s stream=%s",
            posting.id,
            run.id,
            run.generation,
            len(history),
            stream,
        )
        return RunHandle(run=run, task=state.task, channel=channel)

    def _halt(self, state: _PostingRunState) -> GenerationRun | None:
        run = state.run
        if run is None or run.status != "streaming":
            return None
        run.status = "stopped"
        run.updated_at = utcnow()
        state.generation += 1
        if state.task is not None and not state.task.done():
            state.task.cancel()
        if state.channel is not None:
            state.channel.close(RunEvent("stopped", run.id, run.posting_id, run.generation, transcript=run.transcript))
        return run

    def _finish(self, posting_id: str, generation: int, status: RunStatus, *, error: str | None = None) -> bool:
        state = self._states.get(posting_id)
        if state is None or state.run is None or not self._is_live(state, generation):
            logger.debug("discarded stale %s signal posting_id=%s generation=%s", status, posting_id, generation)
            return False
        run = state.run
        run.status = status
        run.error = error
        run.updated_at = utcnow()
        if state.channel is not None:
            if status == "failed":
                event = RunEvent(
                    "error",
                    run.id,
                    posting_id,
                    generation,
                    transcript=run.transcript,
                    code="GENERATION_FAILED",
                    message=error,
                )
            else:
                event = RunEvent("completed", run.id, posting_id, generation, transcript=run.transcript)
            state.channel.close(event)
        return True

    @staticmethod
    def _is_live(state: _PostingRunState, generation: int) -> bool:
        run = state.run
        return (
            run is not None
            and run.status == "streaming"
            and run.generation == generation
            and state.generation == generation
        )

    async def _pump(
        self,
        posting_id: str,
        run: GenerationRun,
        messages: list[ChatMessage],
        model: str | None,
        channel: RunChannel | None,
    ) -> None:
        generation = run.generation
        with tracer.start_as_current_span("generation.run") as span:
            span.set_attribute("posting.id", posting_id)
            span.set_attribute("run.id", run.id)
            span.set_attribute("run.generation", generation)
            try:
                async with aclosing(self.capability.stream(messages, model=model)) as chunks:
                    async for chunk in chunks:
                        if not self.accept_chunk(posting_id, generation, chunk):
                            return
                        if channel is not None:
                            await channel.send(RunEvent("delta", run.id, posting_id, generation, delta=chunk))
            except Exception as exc:
                if self._finish(posting_id, generation, "failed", error=str(exc) or exc.__class__.__name__):
                    logger.warning(
                        "generation run failed posting_id=%s run_id=%s error=%s",
                        posting_id,
                        run.id,
                        exc,
                    )
                    span.record_exception(exc)
                    await self._persist(run)
                return

            if self._finish(posting_id, generation, "completed"):
                logger.info(
                    "generation run completed posting_id=%s run_id=%s chunks=%s",
                    posting_id,
                    run.id,
                    len(run.chunks),
                )
                await self._persist(run)

    async def _persist(self, run: GenerationRun) -> None:
        try:
            await self.store.save_run(replace(run, chunks=list(run.chunks)))
        except RepositoryError:
            logger.exception("failed to persist generation run run_id=%s status=%s", run.id, run.status)


@lru_cache
def get_run_controller() -> GenerationRunController:
    settings = get_settings()
    return GenerationRunController(
        get_repository(),
        get_generation_capability(),
        channel_max_chunks=settings.run_channel_max_chunks,
        history_turns=settings.run_history_max_turns,
    )
