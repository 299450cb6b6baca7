from fastapi import APIRouter, Depends

from jobops.services.repository import PostgresRepository
from jobops.services.store import PipelineStore, get_repository

router = APIRouter()


@router.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/healthz")
async def healthz(repository: PipelineStore = Depends(get_repository)) -> dict[str, str]:
    storage = "postgres" if isinstance(repository, PostgresRepository) else "memory"
    return {"status": "ok", "storage": storage}
