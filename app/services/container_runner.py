from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from app.constants import (
    CONTAINER_DATABASE_PATH,
    CONTAINER_TIME_OUTPUT_PATH,
    CPU_SHARES,
    MEMORY_LIMIT_BYTES,
    SCRAPER_USER,
)
from app.services.engine import ContainerEngine, ContainerHandleProtocol
from app.services.errors import EngineError, EngineUnreachable, ImageNotFound, RunFailure
from app.services.events import EventChannel, StreamTag

LOGGER = logging.getLogger("quarry.runner")


@dataclass
class RunResult:
    status_code: int
    database_bytes: Optional[bytes] = None
    timing_bytes: Optional[bytes] = None


def shell_command(command: str) -> List[str]:
    return ["/bin/bash", "-l", "-c", command]


def environment_entries(env_variables: Optional[Dict[str, str]]) -> List[str]:
    return [f"{key}={value}" for key, value in (env_variables or {}).items()]


def extract(container: ContainerHandleProtocol, path: str) -> Optional[bytes]:
    """Copy a single file out of a stopped container; None when it does not exist."""
    return container.get_file(path)


class ContainerRunner:
    """Run a command in a fresh container and collect what it leaves behind."""

    def __init__(
        self,
        engine: ContainerEngine,
        *,
        cpu_shares: int = CPU_SHARES,
        mem_limit: int = MEMORY_LIMIT_BYTES,
        user: str = SCRAPER_USER,
    ) -> None:
        self._engine = engine
        self._cpu_shares = cpu_shares
        self._mem_limit = mem_limit
        self._user = user

    def run(
        self,
        image: str,
        command: str,
        *,
        channel: EventChannel,
        name: Optional[str] = None,
        env_variables: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        container = self.run_no_cleanup(
            image,
            command,
            channel=channel,
            name=name,
            env_variables=env_variables,
        )
        try:
            # Wait until the container has definitely stopped
            container.wait()
            status_code = int(container.state().get("ExitCode") or 0)
            database_bytes = extract(container, CONTAINER_DATABASE_PATH)
            timing_bytes = extract(container, CONTAINER_TIME_OUTPUT_PATH)
        finally:
            container.remove(force=True)
        LOGGER.info("Container %s exited with status %s", container.id[:12], status_code)
        return RunResult(status_code, database_bytes, timing_bytes)

    def run_no_cleanup(
        self,
        image: str,
        command: str,
        *,
        channel: EventChannel,
        name: Optional[str] = None,
        env_variables: Optional[Dict[str, str]] = None,
    ) -> ContainerHandleProtocol:
        try:
            container = self._engine.create_container(
                image,
                shell_command(command),
                name=name,
                environment=environment_entries(env_variables),
                user=self._user,
                cpu_shares=self._cpu_shares,
                mem_limit=self._mem_limit,
            )
        except (EngineUnreachable, ImageNotFound) as exc:
            channel.log(StreamTag.internalerr, f"internal error: {exc}\n")
            channel.log(StreamTag.internalerr, "Requeueing...\n")
            raise

        try:
            container.start()
            LOGGER.info("Running container %s (%s)", container.id[:12], name or "unnamed")
            channel.ip_address(container.ip_address() or "")
            decoders = {
                StreamTag.stdout: codecs.getincrementaldecoder("utf-8")(errors="replace"),
                StreamTag.stderr: codecs.getincrementaldecoder("utf-8")(errors="replace"),
            }
            for stream, chunk in container.attach():
                text = decoders[stream].decode(chunk)
                if text:
                    channel.log(stream, text)
            for stream, decoder in decoders.items():
                tail = decoder.decode(b"", final=True)
                if tail:
                    channel.log(stream, tail)
            LOGGER.info("Container %s finished", container.id[:12])
        except Exception as exc:
            channel.log(StreamTag.internalerr, f"internal error: {exc}\n")
            channel.log(StreamTag.internalerr, "Stopping current container and requeueing\n")
            container.kill()
            if isinstance(exc, EngineError):
                raise
            raise RunFailure(str(exc)) from exc
        return container
