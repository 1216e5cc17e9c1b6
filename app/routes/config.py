from __future__ import annotations

from fastapi import APIRouter, HTTPException

from app.schemas import EngineConfig, EngineConfigUpdate
from app.services.storage import RepositoryDep, RunRepository

router = APIRouter(prefix="/api", tags=["config"])


@router.get("/config", response_model=EngineConfig)
async def get_config(repo: RunRepository = RepositoryDep) -> EngineConfig:
    return repo.get_config()


@router.patch("/config", response_model=EngineConfig)
async def update_config(
    payload: EngineConfigUpdate,
    repo: RunRepository = RepositoryDep,
) -> EngineConfig:
    try:
        return repo.update_config(payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
