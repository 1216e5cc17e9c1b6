from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends

from app.constants import DEFAULT_CONFIG
from app.schemas import RunStatus

STATE_VERSION = 1

ACTIVE_STATUSES = {RunStatus.queued.value, RunStatus.running.value, RunStatus.requeued.value}


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "runs": {},
        "config": dict(DEFAULT_CONFIG),
    }


class LocalJsonStorage:
    """Small persistence layer backed by a JSON file.

    Each top-level collection stores items keyed by their primary identifier.
    All writes are synchronised via an internal lock and written through a
    temporary file so a crash never leaves a truncated state file behind.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        state.setdefault("runs", {})
        state_config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            state_config.setdefault(key, value)
        for run in state["runs"].values():
            run.setdefault("attempts", 0)
            run.setdefault("env_variables", {})
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        pending = self._path.with_name(self._path.name + ".tmp")
        with pending.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)
        os.replace(pending, self._path)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", dict(DEFAULT_CONFIG))

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            for key, value in changes.items():
                if value is not None:
                    config[key] = value
            self._persist()
            return config

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._collection(collection).get(item_id)

    def delete(self, collection: str, item_id: str) -> None:
        with self._lock:
            if item_id in self._collection(collection):
                del self._collection(collection)[item_id]
                self._persist()

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._collection(collection).values())

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]


class RunRepository:
    """Repository offering run and configuration helpers on top of LocalJsonStorage."""

    def __init__(self, storage: LocalJsonStorage) -> None:
        self._storage = storage

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        merged = dict(DEFAULT_CONFIG)
        merged.update(config)
        for key in (
            "docker_timeout_seconds",
            "interactive_timeout_seconds",
            "container_grace_seconds",
            "janitor_interval_seconds",
            "max_attempts",
        ):
            merged[key] = int(merged[key])
        return merged

    def update_config(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {}
        for key, value in payload.items():
            if value is None:
                continue
            if key not in DEFAULT_CONFIG:
                raise ValueError(f"Unknown configuration key '{key}'.")
            if isinstance(DEFAULT_CONFIG[key], int):
                if int(value) <= 0:
                    raise ValueError(f"{key} must be a positive integer.")
                changes[key] = int(value)
            else:
                normalized = str(value).strip()
                if not normalized:
                    raise ValueError(f"{key} cannot be blank.")
                changes[key] = normalized
        self._storage.update_config(**changes)
        return self.get_config()

    # -- Runs ---------------------------------------------------------------------
    def list_runs(self, *, scraper_name: Optional[str] = None) -> List[Dict[str, Any]]:
        if scraper_name:
            runs = self._storage.filter("runs", key="scraper_name", value=scraper_name)
        else:
            runs = self._storage.list("runs")
        return sorted(runs, key=lambda it: it["queued_at"], reverse=True)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("runs", run_id)

    def active_run(self, scraper_name: str) -> Optional[Dict[str, Any]]:
        for run in self.list_runs(scraper_name=scraper_name):
            if run.get("status") in ACTIVE_STATUSES:
                return run
        return None

    def create_run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        run_id = str(uuid.uuid4())
        record = {
            "id": run_id,
            "scraper_name": payload["scraper_name"],
            "status": RunStatus.queued.value,
            "attempts": 0,
            "status_code": None,
            "ip_address": None,
            "git_url": payload.get("git_url"),
            "env_variables": dict(payload.get("env_variables") or {}),
            "container_name": payload.get("container_name"),
            "queued_at": _utcnow(),
            "started_at": None,
            "finished_at": None,
            "wall_time": None,
            "metrics": None,
            "database_size": None,
            "database_rows": None,
            "repo_size": None,
            "error": None,
        }
        return self._storage.upsert("runs", run_id, record)

    def update_run(self, run_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_run(run_id)
        if not record:
            return None
        record.update(payload)
        return self._storage.upsert("runs", run_id, record)

    def delete_run(self, run_id: str) -> None:
        self._storage.delete("runs", run_id)


_repository: Optional[RunRepository] = None


def get_repository() -> RunRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path(os.environ.get("QUARRY_STATE_PATH", "quarry.state.json"))
        backend = LocalJsonStorage(storage_path)
        _repository = RunRepository(backend)
    return _repository


RepositoryDep = Depends(get_repository)
