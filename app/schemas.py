from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

_SCRAPER_NAME = re.compile(r"^[a-zA-Z0-9_-]+$")
_ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def is_valid_scraper_name(value: str) -> bool:
    return bool(_SCRAPER_NAME.match(value))


class RunStatus(str, Enum):
    queued = "queued"
    running = "running"
    requeued = "requeued"
    finished = "finished"
    failed = "failed"


class RunMetrics(BaseModel):
    wall_time: Optional[float] = None
    utime: Optional[float] = None
    stime: Optional[float] = None
    maxrss: Optional[float] = None
    minflt: Optional[float] = None
    majflt: Optional[float] = None
    inblock: Optional[float] = None
    oublock: Optional[float] = None
    nvcsw: Optional[float] = None
    nivcsw: Optional[float] = None

    @property
    def cpu_time(self) -> float:
        return (self.utime or 0.0) + (self.stime or 0.0)


class RunCreate(BaseModel):
    scraper_name: str = Field(..., description="Directory name of the scraper checkout.")
    git_url: Optional[str] = Field(default=None, description="Remote to synchronise before running.")
    env_variables: Dict[str, str] = Field(default_factory=dict)
    container_name: Optional[str] = None

    @field_validator("scraper_name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not is_valid_scraper_name(value):
            raise ValueError("Scraper name can only have letters, numbers, '_' and '-'.")
        return value

    @field_validator("env_variables")
    @classmethod
    def validate_env(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key, item in value.items():
            if not _ENV_KEY.match(key):
                raise ValueError(f"Invalid environment variable name '{key}'.")
            if "\n" in item:
                raise ValueError(f"Environment variable '{key}' must not contain newlines.")
        return value


class LogLine(BaseModel):
    stream: str
    text: str
    timestamp: str


class Run(BaseModel):
    id: str
    scraper_name: str
    status: RunStatus
    attempts: int = 0
    status_code: Optional[int] = None
    ip_address: Optional[str] = None
    git_url: Optional[str] = None
    env_variables: Dict[str, str] = {}
    container_name: Optional[str] = None
    queued_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    wall_time: Optional[float] = None
    metrics: Optional[RunMetrics] = None
    database_size: Optional[int] = None
    database_rows: Optional[int] = None
    repo_size: Optional[int] = None
    error: Optional[str] = None

    model_config = {"from_attributes": True}


class EngineConfig(BaseModel):
    docker_base_url: str
    docker_timeout_seconds: int
    interactive_timeout_seconds: int
    build_image: str
    repo_root: str
    data_root: str
    container_grace_seconds: int
    janitor_interval_seconds: int
    max_attempts: int


class EngineConfigUpdate(BaseModel):
    docker_base_url: Optional[str] = None
    docker_timeout_seconds: Optional[int] = None
    interactive_timeout_seconds: Optional[int] = None
    build_image: Optional[str] = None
    container_grace_seconds: Optional[int] = None
    janitor_interval_seconds: Optional[int] = None
    max_attempts: Optional[int] = None


class RemovedContainerInfo(BaseModel):
    id: str
    name: Optional[str] = None
    finished_seconds_ago: float


class SweepReport(BaseModel):
    removed: List[RemovedContainerInfo]


class DatabaseInfo(BaseModel):
    scraper_name: str
    size_bytes: int
    total_rows: int
