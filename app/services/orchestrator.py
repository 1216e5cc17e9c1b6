from __future__ import annotations

import json
import logging
import queue
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from app.schemas import RunStatus
from app.services.artifacts import ScraperDataStore, get_data_store
from app.services.base_image import BaseImageProvider
from app.services.collector import GarbageCollector, RemovedContainer
from app.services.engine import ContainerEngine, DockerSDKEngine, EngineSettings
from app.services.errors import EngineError, SourceSyncFailure
from app.services.events import EventChannel, IpAssigned, LogChunk, StreamTag
from app.services.file_classifier import directory_size
from app.services.metrics import parse_time_output
from app.services.pipeline import PipelineResult, RunOptions, ScraperPipeline
from app.services.source_sync import GitSourceSync, SourceSync
from app.services.storage import RunRepository, get_repository

LOGGER = logging.getLogger("quarry.orchestrator")


def _utcnow() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class RunOrchestrator:
    """Execute queued scraper runs one at a time and record what happened."""

    def __init__(
        self,
        repo: Optional[RunRepository] = None,
        data_store: Optional[ScraperDataStore] = None,
        *,
        auto_start: bool = True,
        engine: Optional[ContainerEngine] = None,
        source_sync: Optional[SourceSync] = None,
    ) -> None:
        self._repo = repo or get_repository()
        self._data = data_store or get_data_store()
        self._source_sync = source_sync or GitSourceSync()
        self._queue: "queue.Queue[str]" = queue.Queue()
        self._inflight: set[str] = set()
        self._lock = threading.Lock()
        self._engine_lock = threading.Lock()
        self._fixed_engine = engine is not None
        self._engine: Optional[ContainerEngine] = engine
        self._engine_settings: Optional[EngineSettings] = None
        self._base_images: Optional[BaseImageProvider] = BaseImageProvider(engine) if engine else None
        self._janitor_stop = threading.Event()
        self._janitor: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        if auto_start:
            self._ensure_worker()
            self._ensure_janitor()

    # ------------------------------------------------------------------ engine
    def _current_engine(self) -> Tuple[ContainerEngine, BaseImageProvider]:
        with self._engine_lock:
            if not self._fixed_engine:
                settings = EngineSettings.from_config(self._repo.get_config())
                if self._engine is None or settings != self._engine_settings:
                    LOGGER.info("Connecting to container engine at %s", settings.base_url)
                    self._engine = DockerSDKEngine(settings)
                    self._engine_settings = settings
                    self._base_images = BaseImageProvider(self._engine)
            assert self._engine is not None and self._base_images is not None
            return self._engine, self._base_images

    def _pipeline(self) -> ScraperPipeline:
        engine, base_images = self._current_engine()
        config = self._repo.get_config()
        return ScraperPipeline(
            engine,
            self._data,
            build_image=str(config["build_image"]),
            base_images=base_images,
        )

    # ------------------------------------------------------------------ logging
    def log_path(self, scraper_name: str, run_id: str) -> Path:
        return self._data.data_dir(scraper_name) / "logs" / f"{run_id}.jsonl"

    def read_log(self, run: Dict[str, Any]) -> List[Dict[str, str]]:
        path = self.log_path(run["scraper_name"], run["id"])
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def _append_log(self, run: Dict[str, Any], stream: str, text: str) -> None:
        path = self.log_path(run["scraper_name"], run["id"])
        path.parent.mkdir(parents=True, exist_ok=True)
        entry = {"stream": stream, "text": text, "timestamp": _utcnow()}
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry) + "\n")

    def _start_event_recorder(self, run: Dict[str, Any], channel: EventChannel) -> threading.Thread:
        def _record() -> None:
            for event in channel:
                try:
                    if isinstance(event, IpAssigned):
                        self._repo.update_run(run["id"], {"ip_address": event.address})
                    elif isinstance(event, LogChunk):
                        self._append_log(run, event.stream.value, event.text)
                except OSError as exc:
                    LOGGER.warning("Failed to record event for run %s: %s", run["id"], exc)

        thread = threading.Thread(target=_record, name=f"quarry-events-{run['id'][:8]}", daemon=True)
        thread.start()
        return thread

    # ------------------------------------------------------------------ workers
    def _ensure_worker(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run_loop, daemon=True, name="run-orchestrator")
        self._worker.start()

    def _ensure_janitor(self) -> None:
        if self._janitor and self._janitor.is_alive():
            return
        if self._janitor_stop.is_set():
            self._janitor_stop.clear()
        self._janitor = threading.Thread(
            target=self._janitor_loop,
            daemon=True,
            name="run-orchestrator-janitor",
        )
        self._janitor.start()

    def stop(self) -> None:
        self._janitor_stop.set()

    def _run_loop(self) -> None:
        while True:
            run_id = self._queue.get()
            requeued = False
            try:
                requeued = self._process_run(run_id)
            except Exception:
                LOGGER.exception("Unhandled error while processing run %s", run_id)
            finally:
                if not requeued:
                    with self._lock:
                        self._inflight.discard(run_id)
                self._queue.task_done()

    def _janitor_loop(self) -> None:
        while True:
            interval = int(self._repo.get_config()["janitor_interval_seconds"])
            if self._janitor_stop.wait(interval):
                return
            try:
                self.sweep_containers()
            except EngineError as exc:
                LOGGER.warning("Container sweep skipped: %s", exc)
            except Exception:
                LOGGER.exception("Unhandled error during container sweep")

    # ------------------------------------------------------------------ public API
    def enqueue(self, run_id: str) -> None:
        with self._lock:
            if run_id in self._inflight:
                return
            self._inflight.add(run_id)
        self._queue.put(run_id)
        self._ensure_worker()
        self._ensure_janitor()

    def execute_now(self, run_id: str) -> None:
        """Execute a run immediately in the current thread (used by tests)."""
        with self._lock:
            self._inflight.add(run_id)
        requeued = False
        try:
            requeued = self._process_run(run_id)
        finally:
            if not requeued:
                with self._lock:
                    self._inflight.discard(run_id)

    def sweep_containers(self) -> List[RemovedContainer]:
        engine, _ = self._current_engine()
        grace = int(self._repo.get_config()["container_grace_seconds"])
        return GarbageCollector(engine, grace_seconds=grace).sweep()

    def update_build_image(self) -> str:
        pipeline = self._pipeline()
        image_ref = pipeline.image_ref(Path("."))
        return pipeline.base_images.refresh(image_ref)

    # ------------------------------------------------------------------ processing
    def _sync_source(self, run: Dict[str, Any], repo_path: Path, channel: EventChannel) -> None:
        git_url = run.get("git_url")
        if not git_url:
            return
        try:
            self._source_sync.synchronise(repo_path, git_url)
        except SourceSyncFailure as exc:
            # Carry on with the existing checkout.
            LOGGER.warning("Source sync failed for %s: %s", run["scraper_name"], exc)
            channel.log(StreamTag.internalerr, f"Could not update scraper code: {exc}\n")

    def _process_run(self, run_id: str) -> bool:
        """Run one attempt. Returns True when the run went back on the queue."""
        run = self._repo.get_run(run_id)
        if not run:
            LOGGER.warning("Run %s no longer exists; skipping", run_id)
            return False

        config = self._repo.get_config()
        attempts = int(run.get("attempts") or 0) + 1
        run = self._repo.update_run(
            run_id,
            {
                "status": RunStatus.running.value,
                "attempts": attempts,
                "started_at": _utcnow(),
                "error": None,
            },
        ) or run
        LOGGER.info("Starting run %s for %s (attempt %s)", run_id, run["scraper_name"], attempts)

        channel = EventChannel()
        recorder = self._start_event_recorder(run, channel)
        repo_path = self._data.repo_dir(run["scraper_name"])
        started = time.monotonic()
        try:
            self._sync_source(run, repo_path, channel)
            if not repo_path.is_dir():
                channel.log(StreamTag.internalerr, f"No scraper code found for {run['scraper_name']}\n")
                self._repo.update_run(
                    run_id,
                    {
                        "status": RunStatus.failed.value,
                        "finished_at": _utcnow(),
                        "error": "Scraper checkout missing.",
                    },
                )
                return False
            result = self._pipeline().compile_and_run(
                RunOptions(
                    scraper_name=run["scraper_name"],
                    repo_path=repo_path,
                    container_name=run.get("container_name"),
                    env_variables=dict(run.get("env_variables") or {}),
                ),
                channel,
            )
        except EngineError as exc:
            return self._handle_engine_error(run, attempts, int(config["max_attempts"]), exc)
        except Exception as exc:
            self._repo.update_run(
                run_id,
                {
                    "status": RunStatus.failed.value,
                    "finished_at": _utcnow(),
                    "error": str(exc),
                },
            )
            raise
        finally:
            channel.close()
            recorder.join(timeout=30)

        self._record_result(run, result, time.monotonic() - started)
        return False

    def _handle_engine_error(
        self,
        run: Dict[str, Any],
        attempts: int,
        max_attempts: int,
        exc: EngineError,
    ) -> bool:
        if exc.retryable and attempts < max_attempts:
            LOGGER.warning("Run %s hit an engine fault; requeueing: %s", run["id"], exc)
            self._repo.update_run(run["id"], {"status": RunStatus.requeued.value, "error": str(exc)})
            with self._lock:
                self._inflight.add(run["id"])
            self._queue.put(run["id"])
            return True
        LOGGER.error("Run %s failed: %s", run["id"], exc)
        self._repo.update_run(
            run["id"],
            {
                "status": RunStatus.failed.value,
                "finished_at": _utcnow(),
                "error": str(exc),
            },
        )
        return False

    def _record_result(self, run: Dict[str, Any], result: PipelineResult, elapsed: float) -> None:
        scraper_name = run["scraper_name"]
        metrics = parse_time_output(result.timing_bytes)
        wall_time = metrics.wall_time if metrics and metrics.wall_time is not None else round(elapsed, 3)
        self._repo.update_run(
            run["id"],
            {
                "status": RunStatus.finished.value,
                "status_code": result.status_code,
                "finished_at": _utcnow(),
                "wall_time": wall_time,
                "metrics": metrics.model_dump() if metrics else None,
                "database_size": self._data.database_size(scraper_name),
                "database_rows": self._data.total_rows(scraper_name),
                "repo_size": directory_size(self._data.repo_dir(scraper_name)),
                "error": result.failure,
            },
        )
        LOGGER.info(
            "Completed run %s for %s: status_code=%s database_committed=%s",
            run["id"],
            scraper_name,
            result.status_code,
            result.database_committed,
        )


_orchestrator: Optional[RunOrchestrator] = None


def get_orchestrator() -> RunOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = RunOrchestrator()
    return _orchestrator
