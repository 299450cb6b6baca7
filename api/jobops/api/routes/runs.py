from __future__ import annotations

from collections.abc import AsyncIterator
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from jobops.api.deps import get_current_app_settings
from jobops.schemas.runs import (
    ChatMessageOut,
    RunOut,
    RunRegenerateRequest,
    RunStartRequest,
    RunStateOut,
    RunStopRequest,
)
from jobops.schemas.settings import AppSettings
from jobops.services.errors import AlreadyStreamingError
from jobops.services.generation import (
    DEFAULT_PROMPT,
    GenerationRunController,
    RunChannel,
    RunEvent,
    RunHandle,
    get_run_controller,
)
from jobops.services.records import GenerationRun
from jobops.services.repository import RepositoryNotFoundError, RepositoryUnavailableError
from jobops.services.store import PipelineStore, get_repository

router = APIRouter()
logger = logging.getLogger(__name__)


def _format_event(event: RunEvent) -> str:
    return f"event: {event.type}\ndata: {json.dumps(event.as_dict())}\n\n"


async def _event_stream(
    controller: GenerationRunController,
    handle: RunHandle,
    channel: RunChannel,
) -> AsyncIterator[bytes]:
    delivered_terminal = False
    try:
        async for event in channel.events():
            if event.type in ("completed", "stopped", "error"):
                delivered_terminal = True
            yield _format_event(event).encode("utf-8")
    finally:
        if not delivered_terminal:
            # Consumer went away mid-run.
            logger.info("stream consumer disconnected posting_id=%s run_id=%s", handle.run.posting_id, handle.run_id)
            await controller.stop(handle.run.posting_id, run_id=handle.run_id)


def _to_run_out(run: GenerationRun) -> RunOut:
    return RunOut.model_validate(run, from_attributes=True)


def _respond(controller: GenerationRunController, handle: RunHandle) -> StreamingResponse | RunOut:
    if handle.channel is None:
        return _to_run_out(handle.run)
    return StreamingResponse(
        _event_stream(controller, handle, handle.channel),
        status_code=status.HTTP_200_OK,
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Run-Id": handle.run_id},
    )


@router.post("/{posting_id}/runs", response_model=None, status_code=status.HTTP_202_ACCEPTED)
async def start_run(
    posting_id: str,
    payload: RunStartRequest | None = None,
    controller: GenerationRunController = Depends(get_run_controller),
    app_settings: AppSettings = Depends(get_current_app_settings),
) -> StreamingResponse | RunOut:
    payload = payload or RunStartRequest()
    try:
        handle = await controller.start(
            posting_id,
            prompt=payload.prompt,
            stream=payload.stream,
            model=app_settings.model,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except AlreadyStreamingError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return _respond(controller, handle)


@router.post("/{posting_id}/runs/regenerate", response_model=None, status_code=status.HTTP_202_ACCEPTED)
async def regenerate_run(
    posting_id: str,
    payload: RunRegenerateRequest | None = None,
    controller: GenerationRunController = Depends(get_run_controller),
    app_settings: AppSettings = Depends(get_current_app_settings),
) -> StreamingResponse | RunOut:
    payload = payload or RunRegenerateRequest()
    try:
        handle = await controller.regenerate(
            posting_id,
            run_id=payload.run_id,
            prompt=payload.prompt,
            stream=payload.stream,
            model=app_settings.model,
        )
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _respond(controller, handle)


@router.post("/{posting_id}/runs/stop", response_model=RunOut)
async def stop_run(
    posting_id: str,
    payload: RunStopRequest | None = None,
    controller: GenerationRunController = Depends(get_run_controller),
) -> RunOut:
    run_id = payload.run_id if payload is not None else None
    stopped = await controller.stop(posting_id, run_id=run_id)
    if stopped is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="run not found")
    return _to_run_out(stopped)


@router.get("/{posting_id}/runs/current", response_model=RunStateOut)
async def get_current_run(
    posting_id: str,
    controller: GenerationRunController = Depends(get_run_controller),
    repository: PipelineStore = Depends(get_repository),
) -> RunStateOut:
    try:
        await repository.get(posting_id)
        run = controller.get_run(posting_id) or await repository.get_latest_run(posting_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return RunStateOut(
        posting_id=posting_id,
        status=run.status if run is not None else "idle",
        generation=controller.generation(posting_id),
        run=_to_run_out(run) if run is not None else None,
    )


@router.get("/{posting_id}/runs", response_model=list[RunOut])
async def list_runs(
    posting_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    repository: PipelineStore = Depends(get_repository),
) -> list[RunOut]:
    try:
        await repository.get(posting_id)
        runs = await repository.list_runs(posting_id, limit=limit)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [_to_run_out(run) for run in runs]


@router.get("/{posting_id}/messages", response_model=list[ChatMessageOut])
async def list_messages(
    posting_id: str,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    controller: GenerationRunController = Depends(get_run_controller),
) -> list[ChatMessageOut]:
    try:
        turns = await controller.thread(posting_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    messages: list[ChatMessageOut] = []
    for run in turns:
        messages.append(
            ChatMessageOut(
                run_id=run.id,
                role="user",
                content=run.prompt or DEFAULT_PROMPT,
                status=run.status,
                created_at=run.created_at,
            )
        )
        messages.append(
            ChatMessageOut(
                run_id=run.id,
                role="assistant",
                content=run.transcript,
                status=run.status,
                created_at=run.updated_at,
            )
        )
    return messages[offset : offset + limit]
