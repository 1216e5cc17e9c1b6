from __future__ import annotations

import io
import tarfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List

import pytest
from docker.errors import APIError

from app.services.events import EventChannel, LogChunk, StreamTag
from app.services.image_builder import (
    NORMALIZED_MTIME,
    Built,
    CompileFailure,
    ImageLayeringBuilder,
    dockerfile_contents,
    filter_build_output,
)

from stubs import StubEngine, read_context


def _members(context: bytes) -> List[tarfile.TarInfo]:
    with tarfile.open(fileobj=io.BytesIO(context), mode="r") as tar:
        return tar.getmembers()


@pytest.mark.unit
def test_dockerfile_contents_layers_commands_on_parent() -> None:
    text = dockerfile_contents("openaustralia/buildstep:latest", ["ADD app /app", "RUN /build/builder"])

    assert text == "FROM openaustralia/buildstep:latest\nADD app /app\nRUN /build/builder\n"


@pytest.mark.unit
def test_prepare_context_places_files_under_app(tmp_path: Path) -> None:
    files = tmp_path / "files"
    files.mkdir()
    (files / "requirements.txt").write_text("requests\n")
    scratch = tmp_path / "scratch"
    scratch.mkdir()

    context = ImageLayeringBuilder(StubEngine()).prepare_context("base:1", files, ["RUN true"], scratch)

    contents = read_context(context)
    assert contents["Dockerfile"] == b"FROM base:1\nADD app /app\nRUN true\n"
    assert contents["app/requirements.txt"] == b"requests\n"


@pytest.mark.unit
def test_build_context_is_deterministic(tmp_path: Path) -> None:
    files = tmp_path / "files"
    files.mkdir()
    (files / "scraper.py").write_text("print(1)\n")
    builder = ImageLayeringBuilder(StubEngine())

    first = tmp_path / "first"
    second = tmp_path / "second"
    first.mkdir()
    second.mkdir()
    context_a = builder.prepare_context("base", files, [], first)
    (files / "scraper.py").touch()
    context_b = builder.prepare_context("base", files, [], second)

    assert context_a == context_b
    assert {member.mtime for member in _members(context_a)} == {NORMALIZED_MTIME}
    assert all(member.uid == 0 and member.uname == "" for member in _members(context_a))


@pytest.mark.unit
def test_filter_build_output_drops_engine_chatter() -> None:
    raw = (
        "Step 2/3 : RUN /build/builder\n"
        " ---> Running in 0123abcd\n"
        "-----> Installing requirements with pip\n"
        "Removing intermediate container 0123abcd\n"
        "Successfully built 89ab\n"
    )

    assert filter_build_output(raw) == "-----> Installing requirements with pip\n"


@pytest.mark.unit
def test_compile_streams_filtered_output_and_returns_image(tmp_path: Path) -> None:
    engine = StubEngine()
    channel = EventChannel()

    outcome = ImageLayeringBuilder(engine).compile("sha256:parent", channel)

    assert isinstance(outcome, Built)
    assert outcome.image_id == f"sha256:{1:064x}"
    assert engine.dockerfiles == ["FROM sha256:parent\nENV CURL_TIMEOUT 180\nRUN /build/builder\n"]
    assert channel.drain() == [LogChunk(StreamTag.internalout, "-----> Python app detected\n")]


@pytest.mark.unit
def test_build_error_chunk_is_a_compile_failure() -> None:
    engine = StubEngine(fail_build_on="RUN /build/builder")

    outcome = ImageLayeringBuilder(engine).compile("sha256:parent")

    assert isinstance(outcome, CompileFailure)
    assert "non-zero code: 1" in outcome.reason


@pytest.mark.unit
def test_engine_rejecting_build_is_a_compile_failure() -> None:
    class RejectingEngine(StubEngine):
        def build_image(self, context: BinaryIO) -> Iterator[Dict[str, Any]]:
            raise APIError("Cannot locate specified Dockerfile")
            yield {}  # pragma: no cover

    outcome = ImageLayeringBuilder(RejectingEngine()).build("base", None, ["RUN true"])

    assert isinstance(outcome, CompileFailure)
    assert "Dockerfile" in outcome.reason


@pytest.mark.unit
def test_image_id_falls_back_to_success_line() -> None:
    class LegacyEngine(StubEngine):
        def build_image(self, context: BinaryIO) -> Iterator[Dict[str, Any]]:
            yield {"stream": "Step 1/1 : FROM base\n"}
            yield {"stream": "Successfully built 4f5e6d7c8b9a\n"}

    outcome = ImageLayeringBuilder(LegacyEngine()).build("base", None)

    assert outcome == Built("4f5e6d7c8b9a")


@pytest.mark.unit
def test_build_without_image_is_a_compile_failure() -> None:
    class SilentEngine(StubEngine):
        def build_image(self, context: BinaryIO) -> Iterator[Dict[str, Any]]:
            yield {"stream": "Step 1/1 : FROM base\n"}

    outcome = ImageLayeringBuilder(SilentEngine()).build("base", None)

    assert isinstance(outcome, CompileFailure)


@pytest.mark.unit
def test_inject_code_fixes_ownership(tmp_path: Path) -> None:
    engine = StubEngine()
    code = tmp_path / "code"
    code.mkdir()
    (code / "scraper.py").write_text("print(1)\n")

    ImageLayeringBuilder(engine).inject_code("sha256:compiled", code)

    assert engine.dockerfiles[0] == "FROM sha256:compiled\nADD app /app\nRUN chown -R scraper:scraper /app\n"
    assert "app/scraper.py" in read_context(engine.contexts[0])
