from fastapi import APIRouter

from jobops.api.routes import health, imports, ingest, postings, runs, settings, sources

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(postings.router, prefix="/postings", tags=["postings"])
api_router.include_router(runs.router, prefix="/postings", tags=["runs"])
api_router.include_router(imports.router, prefix="/imports", tags=["ingestion"])
api_router.include_router(ingest.router, prefix="/ingest", tags=["ingestion"])
api_router.include_router(sources.router, prefix="/sources", tags=["sources"])
api_router.include_router(settings.router, prefix="/settings", tags=["settings"])
