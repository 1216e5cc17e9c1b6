from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests
from docker.errors import NotFound

from app.constants import CONTAINER_DATABASE_PATH
from app.services.base_image import BaseImageProvider
from app.services.collector import GarbageCollector
from app.services.container_runner import ContainerRunner
from app.services.engine import DockerSDKEngine, SDKContainerHandle
from app.services.errors import ContainerNotFound, EngineUnreachable, ImageNotFound, RunFailure
from app.services.events import EventChannel, IpAssigned, LogChunk, StreamTag

from stubs import FakeDockerClient, FakeDockerContainer, StubContainerHandle, StubEngine, api_error


def _engine(client: FakeDockerClient) -> DockerSDKEngine:
    engine = DockerSDKEngine()
    engine._client = client
    engine._interactive = client
    return engine


@pytest.mark.unit
def test_remove_ignores_conflict_and_missing_container() -> None:
    busy = FakeDockerContainer(
        errors={"remove": api_error(409, "removal of container abc is already in progress")}
    )
    gone = FakeDockerContainer(errors={"remove": api_error(404, "No such container", NotFound)})

    SDKContainerHandle(busy).remove(force=True)
    SDKContainerHandle(gone).remove(force=True)

    assert busy.calls == ["remove"]
    assert gone.calls == ["remove"]


@pytest.mark.unit
def test_run_keeps_database_when_removal_conflicts() -> None:
    container = FakeDockerContainer(
        errors={"remove": api_error(409, "removal of container abc is already in progress")},
        files={CONTAINER_DATABASE_PATH: b"sqlite bytes"},
        frames=[(b"out\n", None), (None, b"err\n")],
    )
    engine = StubEngine(container=SDKContainerHandle(container))
    channel = EventChannel()

    result = ContainerRunner(engine).run("img", "cmd", channel=channel)

    assert result.status_code == 0
    assert result.database_bytes == b"sqlite bytes"
    assert result.timing_bytes is None
    assert channel.drain() == [
        IpAssigned("172.17.0.9"),
        LogChunk(StreamTag.stdout, "out\n"),
        LogChunk(StreamTag.stderr, "err\n"),
    ]


@pytest.mark.unit
def test_container_calls_translate_engine_faults() -> None:
    dropped = FakeDockerContainer(errors={"wait": requests.exceptions.ConnectionError("Connection aborted")})
    failing = FakeDockerContainer(errors={"get_archive": api_error(500, "archive failed")})
    vanished = FakeDockerContainer(errors={"reload": api_error(404, "No such container", NotFound)})
    attach = FakeDockerContainer(errors={"attach": requests.exceptions.ReadTimeout("Read timed out")})

    with pytest.raises(EngineUnreachable):
        SDKContainerHandle(dropped).wait()
    with pytest.raises(RunFailure):
        SDKContainerHandle(failing).get_file(CONTAINER_DATABASE_PATH)
    with pytest.raises(ContainerNotFound):
        SDKContainerHandle(vanished).state()
    with pytest.raises(ContainerNotFound):
        SDKContainerHandle(vanished).ip_address()
    with pytest.raises(EngineUnreachable):
        list(SDKContainerHandle(attach).attach())


@pytest.mark.unit
def test_connection_lost_while_waiting_is_retryable() -> None:
    container = FakeDockerContainer(errors={"wait": requests.exceptions.ConnectionError("Connection aborted")})
    engine = StubEngine(container=SDKContainerHandle(container))

    with pytest.raises(EngineUnreachable) as info:
        ContainerRunner(engine).run("img", "cmd", channel=EventChannel())

    assert info.value.retryable is True
    assert container.calls[-1] == "remove"


@pytest.mark.unit
def test_sweep_skips_container_removed_meanwhile() -> None:
    vanished = SDKContainerHandle(
        FakeDockerContainer(errors={"reload": api_error(404, "No such container", NotFound)})
    )
    stale = StubContainerHandle(
        container_id="stale0000000bbbb",
        state={"Running": False, "FinishedAt": "2024-03-01T11:00:00Z"},
    )
    now = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    removed = GarbageCollector(StubEngine(containers=[vanished, stale]), grace_seconds=300).sweep(now=now)

    assert [item.id for item in removed] == ["stale0000000"]
    assert stale.removed is True


@pytest.mark.unit
def test_pull_error_is_an_engine_fault_and_not_cached() -> None:
    client = FakeDockerClient(
        pull_chunks=[
            {"status": "Pulling from openaustralia/buildstep"},
            {"error": "manifest for openaustralia/buildstep:bogus not found: manifest unknown"},
        ]
    )
    provider = BaseImageProvider(_engine(client))

    with pytest.raises(ImageNotFound):
        provider.ensure("openaustralia/buildstep:bogus")
    with pytest.raises(ImageNotFound):
        provider.ensure("openaustralia/buildstep:bogus")


@pytest.mark.unit
def test_rate_limited_pull_is_engine_unreachable() -> None:
    client = FakeDockerClient(
        pull_chunks=[{"error": "toomanyrequests: You have reached your pull rate limit."}]
    )

    with pytest.raises(EngineUnreachable):
        list(_engine(client).pull_image("openaustralia/buildstep:latest"))


@pytest.mark.unit
def test_pull_streams_progress_lines() -> None:
    client = FakeDockerClient(
        pull_chunks=[
            {"status": "Pulling from openaustralia/buildstep", "id": "latest"},
            {"status": "Downloading", "id": "a1b2", "progress": "[==>   ] 1MB/5MB"},
            {"status": "Status: Downloaded newer image"},
        ]
    )

    lines = list(_engine(client).pull_image("openaustralia/buildstep"))

    assert lines == [
        "latest Pulling from openaustralia/buildstep\n",
        "a1b2 Downloading [==>   ] 1MB/5MB\n",
        "Status: Downloaded newer image\n",
    ]
