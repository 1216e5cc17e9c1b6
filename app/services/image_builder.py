from __future__ import annotations

import io
import logging
import os
import re
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from docker.errors import APIError, BuildError

from app.constants import APP_DIR, SCRAPER_USER
from app.services.engine import ContainerEngine
from app.services.events import EventChannel, StreamTag

LOGGER = logging.getLogger("quarry.builder")

# Every member of a build context gets this mtime (2000-01-01T00:00:00Z) so
# that identical inputs produce identical contexts and hit the build cache.
NORMALIZED_MTIME = 946684800

BUILD_NOISE = (
    re.compile(r"^Step \d+(/\d+)? ?:"),
    re.compile(r"^ ---> "),
    re.compile(r"^Removing intermediate container "),
    re.compile(r"^Successfully built "),
    re.compile(r"^Successfully tagged "),
)
_BUILT_ID = re.compile(r"^Successfully built ([0-9a-f]+)")

COMPILE_COMMANDS = ["ENV CURL_TIMEOUT 180", "RUN /build/builder"]
INJECT_CODE_COMMANDS = [f"RUN chown -R {SCRAPER_USER}:{SCRAPER_USER} {APP_DIR}"]


@dataclass(frozen=True)
class Built:
    image_id: str


@dataclass(frozen=True)
class CompileFailure:
    reason: str


StageOutcome = Union[Built, CompileFailure]


def dockerfile_contents(parent_image: str, commands: Sequence[str]) -> str:
    return f"FROM {parent_image}\n" + "".join(f"{command}\n" for command in commands)


def is_build_noise(line: str) -> bool:
    return any(pattern.match(line) for pattern in BUILD_NOISE)


def filter_build_output(text: str) -> str:
    """Drop the engine's own build chatter, keeping what the build commands printed."""
    return "".join(line for line in text.splitlines(keepends=True) if not is_build_noise(line))


def fix_modification_times(directory: Path) -> None:
    for root, dirs, files in os.walk(directory):
        for name in dirs + files:
            os.utime(os.path.join(root, name), (NORMALIZED_MTIME, NORMALIZED_MTIME), follow_symlinks=False)
    os.utime(directory, (NORMALIZED_MTIME, NORMALIZED_MTIME))


def _normalize_member(member: tarfile.TarInfo) -> tarfile.TarInfo:
    member.mtime = NORMALIZED_MTIME
    member.uid = member.gid = 0
    member.uname = member.gname = ""
    return member


def create_build_context(directory: Path) -> bytes:
    """Pack ``directory`` into a tarball suitable for an image build."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
        for entry in sorted(os.listdir(directory)):
            tar.add(os.path.join(directory, entry), arcname=entry, filter=_normalize_member)
    return buffer.getvalue()


def _copy_directory_contents(source: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    for entry in sorted(os.listdir(source)):
        origin = source / entry
        if origin.is_dir() and not origin.is_symlink():
            shutil.copytree(origin, dest / entry, symlinks=True)
        elif origin.is_symlink():
            os.symlink(os.readlink(origin), dest / entry)
        else:
            shutil.copy2(origin, dest / entry)


class ImageLayeringBuilder:
    """Produce a new image by layering files and build commands on a parent image."""

    def __init__(self, engine: ContainerEngine) -> None:
        self._engine = engine

    def prepare_context(
        self,
        parent_image: str,
        files_dir: Optional[Path],
        extra_commands: Sequence[str],
        scratch: Path,
    ) -> bytes:
        commands: List[str] = []
        if files_dir is not None:
            _copy_directory_contents(Path(files_dir), scratch / "app")
            commands.append(f"ADD app {APP_DIR}")
        commands.extend(extra_commands)
        (scratch / "Dockerfile").write_text(dockerfile_contents(parent_image, commands), encoding="utf-8")
        fix_modification_times(scratch)
        return create_build_context(scratch)

    def build(
        self,
        parent_image: str,
        files_dir: Optional[Path],
        extra_commands: Sequence[str] = (),
        on_output: Optional[Callable[[str], None]] = None,
    ) -> StageOutcome:
        with tempfile.TemporaryDirectory(prefix="quarry") as scratch:
            context = self.prepare_context(parent_image, files_dir, extra_commands, Path(scratch))
        return self._submit(context, on_output)

    def _submit(self, context: bytes, on_output: Optional[Callable[[str], None]]) -> StageOutcome:
        image_id: Optional[str] = None
        try:
            for chunk in self._engine.build_image(io.BytesIO(context)):
                if "error" in chunk:
                    reason = str(chunk.get("error") or "").strip()
                    LOGGER.info("Image build failed: %s", reason)
                    return CompileFailure(reason)
                aux = chunk.get("aux")
                if isinstance(aux, dict) and aux.get("ID"):
                    image_id = str(aux["ID"])
                text = chunk.get("stream")
                if not text:
                    continue
                for line in text.splitlines():
                    match = _BUILT_ID.match(line)
                    if match and image_id is None:
                        image_id = match.group(1)
                if on_output is not None:
                    forwarded = filter_build_output(text)
                    if forwarded:
                        on_output(forwarded)
        except (APIError, BuildError) as exc:
            LOGGER.info("Image build rejected by engine: %s", exc)
            return CompileFailure(str(exc))
        if image_id is None:
            return CompileFailure("build finished without producing an image")
        return Built(image_id)

    # -- Stages -----------------------------------------------------------------
    def inject_config(self, image: str, config_dir: Path) -> StageOutcome:
        # Output from this stage is short and only confusing to scraper authors.
        return self.build(image, config_dir)

    def compile(self, image: str, channel: Optional[EventChannel] = None) -> StageOutcome:
        def _forward(text: str) -> None:
            if channel is not None:
                channel.log(StreamTag.internalout, text)

        return self.build(image, None, COMPILE_COMMANDS, on_output=_forward)

    def inject_code(self, image: str, code_dir: Path) -> StageOutcome:
        return self.build(image, code_dir, INJECT_CODE_COMMANDS)
