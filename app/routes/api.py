from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException
from fastapi.concurrency import run_in_threadpool

from app.schemas import (
    DatabaseInfo,
    LogLine,
    RemovedContainerInfo,
    Run,
    RunCreate,
    SweepReport,
    is_valid_scraper_name,
)
from app.services.artifacts import DataStoreDep, ScraperDataStore
from app.services.errors import EngineError
from app.services.orchestrator import get_orchestrator
from app.services.storage import RepositoryDep, RunRepository

router = APIRouter(prefix="/api", tags=["api"])


# Runs ----------------------------------------------------------------------------
@router.get("/runs", response_model=List[Run])
async def list_runs(
    scraper_name: Optional[str] = None,
    repo: RunRepository = RepositoryDep,
) -> List[Run]:
    return repo.list_runs(scraper_name=scraper_name)


@router.post("/runs", response_model=Run, status_code=201)
async def create_run(payload: RunCreate, repo: RunRepository = RepositoryDep) -> Run:
    # One active run per scraper.
    if repo.active_run(payload.scraper_name):
        raise HTTPException(status_code=409, detail="Scraper already has a queued or running run")
    record = repo.create_run(payload.model_dump())
    orchestrator = get_orchestrator()
    orchestrator.enqueue(record["id"])
    return record


@router.get("/runs/{run_id}", response_model=Run)
async def get_run(run_id: str, repo: RunRepository = RepositoryDep) -> Run:
    record = repo.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return record


@router.get("/runs/{run_id}/logs", response_model=List[LogLine])
async def get_run_logs(run_id: str, repo: RunRepository = RepositoryDep) -> List[LogLine]:
    record = repo.get_run(run_id)
    if not record:
        raise HTTPException(status_code=404, detail="Run not found")
    return get_orchestrator().read_log(record)


@router.delete("/runs/{run_id}", status_code=204)
async def delete_run(run_id: str, repo: RunRepository = RepositoryDep) -> None:
    repo.delete_run(run_id)


# Scrapers ------------------------------------------------------------------------
@router.get("/scrapers/{scraper_name}/database", response_model=DatabaseInfo)
async def get_database_info(scraper_name: str, store: ScraperDataStore = DataStoreDep) -> DatabaseInfo:
    if not is_valid_scraper_name(scraper_name) or not (store.data_root / scraper_name).is_dir():
        raise HTTPException(status_code=404, detail="Scraper has no data")
    return DatabaseInfo(
        scraper_name=scraper_name,
        size_bytes=store.database_size(scraper_name),
        total_rows=store.total_rows(scraper_name),
    )


# Maintenance ---------------------------------------------------------------------
@router.post("/containers/sweep", response_model=SweepReport)
async def sweep_containers() -> SweepReport:
    try:
        removed = await run_in_threadpool(get_orchestrator().sweep_containers)
    except EngineError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return SweepReport(
        removed=[
            RemovedContainerInfo(
                id=item.id,
                name=item.name,
                finished_seconds_ago=item.finished_seconds_ago,
            )
            for item in removed
        ]
    )


@router.post("/images/update")
async def update_build_image() -> Dict[str, str]:
    try:
        image = await run_in_threadpool(get_orchestrator().update_build_image)
    except EngineError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"image": image}
