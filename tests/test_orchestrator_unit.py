from __future__ import annotations

import queue
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, Optional, Tuple

import pytest
import requests

from app.constants import CONTAINER_DATABASE_PATH, CONTAINER_TIME_OUTPUT_PATH
from app.schemas import RunStatus
from app.services.artifacts import ScraperDataStore
from app.services.engine import SDKContainerHandle
from app.services.errors import EngineUnreachable, NameConflict, SourceSyncFailure
from app.services.events import StreamTag
from app.services.orchestrator import RunOrchestrator
from app.services.source_sync import SourceSync
from app.services.storage import LocalJsonStorage, RunRepository

from stubs import FakeDockerContainer, StubContainerHandle, StubEngine


class StubSourceSync(SourceSync):
    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[Tuple[Path, str]] = []
        self._error = error

    def synchronise(self, repo_path: Path, git_url: str) -> None:
        self.calls.append((repo_path, git_url))
        if self._error is not None:
            raise self._error


def _setup(
    tmp_path: Path,
    engine: StubEngine,
    source_sync: Optional[SourceSync] = None,
) -> Tuple[RunOrchestrator, RunRepository, ScraperDataStore]:
    repo = RunRepository(LocalJsonStorage(tmp_path / "state.json"))
    store = ScraperDataStore(data_root=tmp_path / "data", repo_root=tmp_path / "repos")
    checkout = store.repo_dir("example")
    checkout.mkdir(parents=True)
    (checkout / "requirements.txt").write_text("scraperwiki\n")
    (checkout / "scraper.py").write_text("print('scraping')\n")
    orchestrator = RunOrchestrator(
        repo,
        store,
        auto_start=False,
        engine=engine,
        source_sync=source_sync or StubSourceSync(),
    )
    return orchestrator, repo, store


def _database(tmp_path: Path, rows: int) -> bytes:
    path = tmp_path / "out.sqlite"
    with closing(sqlite3.connect(path)) as connection:
        connection.execute("CREATE TABLE data (id INTEGER)")
        connection.executemany("INSERT INTO data VALUES (?)", [(i,) for i in range(rows)])
        connection.commit()
    return path.read_bytes()


@pytest.mark.unit
def test_execute_now_records_finished_run(tmp_path: Path) -> None:
    handle = StubContainerHandle(
        chunks=[(StreamTag.stdout, b"scraping\n")],
        files={
            CONTAINER_DATABASE_PATH: _database(tmp_path, rows=3),
            CONTAINER_TIME_OUTPUT_PATH: b"\tElapsed (wall clock) time (h:mm:ss or m:ss): 0:02.50\n"
            b"\tMaximum resident set size (kbytes): 2048\n",
        },
    )
    orchestrator, repo, _store = _setup(tmp_path, StubEngine(container=handle))
    run = repo.create_run({"scraper_name": "example", "env_variables": {"MORPH_KEY": "abc"}})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.finished.value
    assert record["status_code"] == 0
    assert record["attempts"] == 1
    assert record["ip_address"] == "172.17.0.5"
    assert record["database_rows"] == 3
    assert record["database_size"] > 0
    assert record["repo_size"] > 0
    assert record["wall_time"] == 2.5
    assert record["metrics"]["maxrss"] == 2048
    assert record["error"] is None

    lines = orchestrator.read_log(record)
    assert {"stream": "stdout", "text": "scraping\n"} in [
        {"stream": line["stream"], "text": line["text"]} for line in lines
    ]
    assert all("timestamp" in line for line in lines)


@pytest.mark.unit
def test_compile_failure_finishes_with_sentinel(tmp_path: Path) -> None:
    orchestrator, repo, store = _setup(tmp_path, StubEngine(fail_build_on="RUN /build/builder"))
    store.commit_database("example", b"prior")
    run = repo.create_run({"scraper_name": "example"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.finished.value
    assert record["status_code"] == 255
    assert record["ip_address"] is None
    assert "non-zero code" in record["error"]
    assert store.database_path("example").read_bytes() == b"prior"


@pytest.mark.unit
def test_unreachable_engine_requeues_until_attempts_run_out(tmp_path: Path) -> None:
    engine = StubEngine(create_error=EngineUnreachable("Could not connect to Docker server"))
    orchestrator, repo, _store = _setup(tmp_path, engine)
    repo.update_config({"max_attempts": 2})
    run = repo.create_run({"scraper_name": "example"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.requeued.value
    assert record["attempts"] == 1
    assert orchestrator._queue.get_nowait() == run["id"]

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.failed.value
    assert record["attempts"] == 2
    assert "Could not connect" in record["error"]
    with pytest.raises(queue.Empty):
        orchestrator._queue.get_nowait()


@pytest.mark.unit
def test_name_conflict_fails_without_requeue(tmp_path: Path) -> None:
    engine = StubEngine(create_error=NameConflict("Container name 'example' is already in use"))
    orchestrator, repo, _store = _setup(tmp_path, engine)
    run = repo.create_run({"scraper_name": "example", "container_name": "example"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.failed.value
    assert orchestrator._queue.empty()


@pytest.mark.unit
def test_source_sync_failure_is_logged_and_run_continues(tmp_path: Path) -> None:
    sync = StubSourceSync(error=SourceSyncFailure("fatal: repository not found"))
    orchestrator, repo, _store = _setup(tmp_path, StubEngine(), source_sync=sync)
    run = repo.create_run({"scraper_name": "example", "git_url": "https://example.invalid/scraper.git"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.finished.value
    assert sync.calls[0][1] == "https://example.invalid/scraper.git"
    texts = [line["text"] for line in orchestrator.read_log(record) if line["stream"] == "internalerr"]
    assert texts[0] == "Could not update scraper code: fatal: repository not found\n"


@pytest.mark.unit
def test_missing_checkout_fails_run(tmp_path: Path) -> None:
    orchestrator, repo, _store = _setup(tmp_path, StubEngine())
    run = repo.create_run({"scraper_name": "unknown"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.failed.value
    assert record["error"] == "Scraper checkout missing."


@pytest.mark.unit
def test_sweep_uses_configured_grace_window(tmp_path: Path) -> None:
    old = StubContainerHandle(
        container_id="old000000000aaaa",
        state={"Running": False, "FinishedAt": "2000-01-01T00:00:00Z"},
    )
    orchestrator, repo, _store = _setup(tmp_path, StubEngine(containers=[old]))
    repo.update_config({"container_grace_seconds": 60})

    removed = orchestrator.sweep_containers()

    assert [item.id for item in removed] == ["old000000000"]
    assert old.removed is True


@pytest.mark.unit
def test_update_build_image_pulls_again(tmp_path: Path) -> None:
    engine = StubEngine(images=["openaustralia/buildstep:latest"])
    orchestrator, _repo, _store = _setup(tmp_path, engine)

    assert orchestrator.update_build_image() == "openaustralia/buildstep:latest"
    assert engine.pulled == ["openaustralia/buildstep:latest"]


@pytest.mark.unit
def test_stop_ends_janitor_thread(tmp_path: Path) -> None:
    orchestrator, _repo, _store = _setup(tmp_path, StubEngine())
    orchestrator._ensure_janitor()
    janitor = orchestrator._janitor
    assert janitor is not None and janitor.is_alive()

    orchestrator.stop()
    janitor.join(timeout=5)

    assert not janitor.is_alive()


@pytest.mark.unit
def test_requeued_run_is_not_enqueued_twice(tmp_path: Path) -> None:
    engine = StubEngine(create_error=EngineUnreachable("Could not connect to Docker server"))
    orchestrator, repo, _store = _setup(tmp_path, engine)
    run = repo.create_run({"scraper_name": "example"})

    orchestrator.execute_now(run["id"])
    orchestrator.enqueue(run["id"])

    assert run["id"] in orchestrator._inflight
    assert orchestrator._queue.qsize() == 1


@pytest.mark.unit
def test_lost_connection_during_run_requeues(tmp_path: Path) -> None:
    container = FakeDockerContainer(errors={"wait": requests.exceptions.ConnectionError("Connection aborted")})
    orchestrator, repo, store = _setup(tmp_path, StubEngine(container=SDKContainerHandle(container)))
    store.commit_database("example", b"prior")
    run = repo.create_run({"scraper_name": "example"})

    orchestrator.execute_now(run["id"])

    record = repo.get_run(run["id"])
    assert record["status"] == RunStatus.requeued.value
    assert "Could not connect" in record["error"]
    assert store.database_path("example").read_bytes() == b"prior"
