from __future__ import annotations

import logging
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from app.constants import (
    BUILDSTEP_IMAGE,
    COMPILE_FAILED_STATUS,
    CONTAINER_TIME_OUTPUT_PATH,
    DEFAULT_PLATFORM,
    PLATFORM_FILENAME,
    START_COMMAND,
)
from app.services.artifacts import ScraperDataStore
from app.services.base_image import BaseImageProvider
from app.services.container_runner import ContainerRunner
from app.services.engine import CleanupResult, ContainerEngine
from app.services.events import EventChannel, StreamTag
from app.services.file_classifier import copy_code, copy_config
from app.services.image_builder import Built, CompileFailure, ImageLayeringBuilder, StageOutcome
from app.services.metrics import metric_command

LOGGER = logging.getLogger("quarry.pipeline")

# Image tag grammar: at most 128 characters, no leading "." or "-".
_PLATFORM_TAG = re.compile(r"[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}")


@dataclass
class RunOptions:
    scraper_name: str
    repo_path: Path
    container_name: Optional[str] = None
    env_variables: Dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineResult:
    status_code: int
    timing_bytes: Optional[bytes] = None
    database_committed: bool = False
    failure: Optional[str] = None

    @property
    def compile_failed(self) -> bool:
        return self.failure is not None


def read_platform(repo_path: Path) -> str:
    platform_file = Path(repo_path) / PLATFORM_FILENAME
    if platform_file.is_file():
        value = platform_file.read_text(encoding="utf-8").strip()
        if _PLATFORM_TAG.fullmatch(value):
            return value
        if value:
            LOGGER.warning("Ignoring invalid platform %r in %s", value, platform_file)
    return DEFAULT_PLATFORM


class ScraperPipeline:
    """Compile a scraper checkout into an image, run it, and keep its database."""

    def __init__(
        self,
        engine: ContainerEngine,
        data_store: ScraperDataStore,
        *,
        build_image: str = BUILDSTEP_IMAGE,
        base_images: Optional[BaseImageProvider] = None,
        builder: Optional[ImageLayeringBuilder] = None,
        runner: Optional[ContainerRunner] = None,
    ) -> None:
        self._engine = engine
        self._data = data_store
        self._build_image = build_image
        self._base_images = base_images or BaseImageProvider(engine)
        self._builder = builder or ImageLayeringBuilder(engine)
        self._runner = runner or ContainerRunner(engine)

    @property
    def base_images(self) -> BaseImageProvider:
        return self._base_images

    def image_ref(self, repo_path: Path) -> str:
        last_segment = self._build_image.rsplit("/", 1)[-1]
        if ":" in last_segment or "@" in last_segment:
            return self._build_image
        return f"{self._build_image}:{read_platform(repo_path)}"

    def compile_and_run(self, options: RunOptions, channel: EventChannel) -> PipelineResult:
        base = self._base_images.ensure(self.image_ref(options.repo_path), channel)

        # Configuration goes in on its own so the compile step never sees code.
        with tempfile.TemporaryDirectory(prefix="quarry") as dest:
            copy_config(options.repo_path, Path(dest))
            channel.log(StreamTag.internalout, "Injecting configuration and compiling...\n")
            configured = self._builder.inject_config(base, Path(dest))
        if isinstance(configured, CompileFailure):
            return self._compile_failed(options, configured, channel)

        compiled = self._builder.compile(configured.image_id, channel)
        if isinstance(compiled, CompileFailure):
            return self._compile_failed(options, compiled, channel)

        with tempfile.TemporaryDirectory(prefix="quarry") as dest:
            copy_code(options.repo_path, Path(dest))
            self._data.stage_database(options.scraper_name, Path(dest))
            channel.log(StreamTag.internalout, "Injecting scraper code and database and running...\n")
            final = self._builder.inject_code(compiled.image_id, Path(dest))
        if isinstance(final, CompileFailure):
            return self._compile_failed(options, final, channel)

        try:
            result = self._runner.run(
                final.image_id,
                metric_command(START_COMMAND, CONTAINER_TIME_OUTPUT_PATH),
                channel=channel,
                name=options.container_name,
                env_variables=options.env_variables,
            )
            # Only overwrite the database if the container produced one
            committed = self._data.commit_database(options.scraper_name, result.database_bytes)
        finally:
            cleanup = self.remove_image(final)
            if not cleanup.ok:
                LOGGER.warning("Ignoring failure to remove image %s: %s", final.image_id, cleanup.detail)

        return PipelineResult(
            status_code=result.status_code,
            timing_bytes=result.timing_bytes,
            database_committed=committed,
        )

    def remove_image(self, outcome: StageOutcome) -> CleanupResult:
        """Best-effort removal; another run may still be using the image."""
        if not isinstance(outcome, Built):
            return CleanupResult(True)
        return self._engine.remove_image(outcome.image_id)

    def _compile_failed(
        self,
        options: RunOptions,
        failure: CompileFailure,
        channel: EventChannel,
    ) -> PipelineResult:
        LOGGER.info("Compile failed for %s: %s", options.scraper_name, failure.reason)
        if failure.reason:
            channel.log(StreamTag.internalerr, failure.reason.rstrip("\n") + "\n")
        return PipelineResult(status_code=COMPILE_FAILED_STATUS, failure=failure.reason or "compile failed")
