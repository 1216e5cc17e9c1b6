from __future__ import annotations

import io
import logging
import re
import tarfile
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, List, NoReturn, Optional, Tuple

import docker
from docker.errors import APIError, DockerException, NotFound
from docker.utils import parse_repository_tag

from app.constants import DEFAULT_CONFIG
from app.services.errors import ContainerNotFound, EngineUnreachable, ImageNotFound, RunFailure, translate_docker_error
from app.services.events import StreamTag

LOGGER = logging.getLogger("quarry.engine")


@dataclass(frozen=True)
class EngineSettings:
    """Connection parameters for the container engine endpoint."""

    base_url: str = str(DEFAULT_CONFIG["docker_base_url"])
    timeout: int = int(DEFAULT_CONFIG["docker_timeout_seconds"])  # type: ignore[arg-type]
    interactive_timeout: int = int(DEFAULT_CONFIG["interactive_timeout_seconds"])  # type: ignore[arg-type]

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EngineSettings":
        return cls(
            base_url=str(config.get("docker_base_url", cls.base_url)),
            timeout=int(config.get("docker_timeout_seconds", cls.timeout)),
            interactive_timeout=int(config.get("interactive_timeout_seconds", cls.interactive_timeout)),
        )


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of a best-effort cleanup. Callers log it and move on."""

    ok: bool
    detail: str = ""


class ContainerHandleProtocol:
    id: str
    name: Optional[str]

    def start(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def attach(self) -> Iterator[Tuple[StreamTag, bytes]]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def state(self) -> Dict[str, Any]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def ip_address(self) -> Optional[str]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def wait(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def kill(self) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def remove(self, force: bool = False) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def get_file(self, path: str) -> Optional[bytes]:  # pragma: no cover - interface stub
        raise NotImplementedError


class ContainerEngine:
    """Operations the pipeline needs from a container engine."""

    def image_exists(self, image_ref: str) -> bool:  # pragma: no cover - interface stub
        raise NotImplementedError

    def pull_image(self, image_ref: str) -> Iterator[str]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def build_image(self, context: BinaryIO) -> Iterator[Dict[str, Any]]:  # pragma: no cover - interface stub
        raise NotImplementedError

    def remove_image(self, image_id: str) -> CleanupResult:  # pragma: no cover - interface stub
        raise NotImplementedError

    def create_container(
        self,
        image: str,
        command: List[str],
        *,
        name: Optional[str],
        environment: List[str],
        user: str,
        cpu_shares: int,
        mem_limit: int,
    ) -> ContainerHandleProtocol:  # pragma: no cover - interface stub
        raise NotImplementedError

    def list_containers(self) -> List[ContainerHandleProtocol]:  # pragma: no cover - interface stub
        raise NotImplementedError


def read_single_file(archive: bytes) -> Optional[bytes]:
    """Return the contents of the first regular file in a tar archive."""
    with tarfile.open(fileobj=io.BytesIO(archive), mode="r") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            handle = tar.extractfile(member)
            if handle is None:
                continue
            with handle:
                return handle.read()
    return None


class SDKContainerHandle(ContainerHandleProtocol):
    def __init__(self, container) -> None:
        self._container = container
        self.id = container.id
        self.name = getattr(container, "name", None)

    def start(self) -> None:
        try:
            self._container.start()
        except (APIError, DockerException, OSError) as exc:
            self._raise(exc)

    def attach(self) -> Iterator[Tuple[StreamTag, bytes]]:
        try:
            frames = self._container.attach(stdout=True, stderr=True, stream=True, logs=True, demux=True)
            for stdout, stderr in frames:
                if stdout:
                    yield StreamTag.stdout, stdout
                if stderr:
                    yield StreamTag.stderr, stderr
        except (APIError, DockerException, OSError) as exc:
            self._raise(exc)

    def _reload(self) -> Dict[str, Any]:
        try:
            self._container.reload()
        except (APIError, DockerException, OSError) as exc:
            self._raise(exc)
        return self._container.attrs

    def state(self) -> Dict[str, Any]:
        return dict(self._reload().get("State", {}))

    def ip_address(self) -> Optional[str]:
        settings = self._reload().get("NetworkSettings") or {}
        return settings.get("IPAddress") or None

    def wait(self) -> None:
        try:
            self._container.wait()
        except (APIError, DockerException, OSError) as exc:
            self._raise(exc)

    def kill(self) -> None:
        try:
            self._container.kill()
        except (APIError, DockerException, OSError) as exc:
            LOGGER.warning("Failed to kill container %s: %s", self.id, exc)

    def remove(self, force: bool = False) -> None:
        try:
            self._container.remove(force=force)
        except NotFound:
            LOGGER.debug("Container %s already removed", self.id)
        except APIError as exc:
            # 409 while another removal of the same container is in progress.
            LOGGER.warning("Failed to remove container %s: %s", self.id, exc)

    def get_file(self, path: str) -> Optional[bytes]:
        try:
            bits, _stat = self._container.get_archive(path)
            return read_single_file(b"".join(bits))
        except NotFound:
            return None
        except (APIError, DockerException, OSError) as exc:
            self._raise(exc)

    def _raise(self, exc: Exception) -> NoReturn:
        if isinstance(exc, NotFound):
            raise ContainerNotFound(f"No such container: {self.id}") from exc
        translated = translate_docker_error(exc, subject=self.name or "")
        if translated is exc:
            raise RunFailure(f"Container {self.id[:12]}: {exc}") from exc
        raise translated from exc


class DockerSDKEngine(ContainerEngine):
    """Container engine backed by the Docker SDK.

    Two clients are kept: one with the ordinary API timeout and one with a
    long read timeout for builds and attach streams, which can legitimately
    stay quiet for a long time.
    """

    def __init__(self, settings: Optional[EngineSettings] = None) -> None:
        self._settings = settings or EngineSettings()
        self._lock = threading.Lock()
        self._client: Optional[docker.DockerClient] = None
        self._interactive: Optional[docker.DockerClient] = None

    def _connect(self, timeout: int) -> docker.DockerClient:
        try:
            return docker.DockerClient(base_url=self._settings.base_url, timeout=timeout)
        except DockerException as exc:
            _raise_engine_error(exc)

    @property
    def client(self) -> docker.DockerClient:
        with self._lock:
            if self._client is None:
                self._client = self._connect(self._settings.timeout)
            return self._client

    @property
    def interactive(self) -> docker.DockerClient:
        with self._lock:
            if self._interactive is None:
                self._interactive = self._connect(self._settings.interactive_timeout)
            return self._interactive

    def image_exists(self, image_ref: str) -> bool:
        try:
            self.client.images.get(image_ref)
        except NotFound:
            return False
        except (APIError, DockerException, OSError) as exc:
            _raise_engine_error(exc)
        return True

    def pull_image(self, image_ref: str) -> Iterator[str]:
        repository, tag = parse_repository_tag(image_ref)
        try:
            for chunk in self.interactive.api.pull(repository, tag=tag or "latest", stream=True, decode=True):
                if chunk.get("error"):
                    raise _pull_error(image_ref, str(chunk["error"]))
                status = chunk.get("status")
                if not status:
                    continue
                progress = chunk.get("progress")
                layer = chunk.get("id")
                parts = [part for part in (layer, status, progress) if part]
                yield " ".join(parts) + "\n"
        except (APIError, DockerException, OSError) as exc:
            _raise_engine_error(exc, subject=image_ref)

    def build_image(self, context: BinaryIO) -> Iterator[Dict[str, Any]]:
        try:
            yield from self.interactive.api.build(
                fileobj=context,
                custom_context=True,
                rm=True,
                decode=True,
            )
        except OSError as exc:
            _raise_engine_error(exc)

    def remove_image(self, image_id: str) -> CleanupResult:
        try:
            self.client.images.remove(image_id, noprune=True)
        except NotFound:
            return CleanupResult(False, f"image {image_id} already gone")
        except APIError as exc:
            return CleanupResult(False, str(exc))
        return CleanupResult(True)

    def create_container(
        self,
        image: str,
        command: List[str],
        *,
        name: Optional[str],
        environment: List[str],
        user: str,
        cpu_shares: int,
        mem_limit: int,
    ) -> ContainerHandleProtocol:
        try:
            container = self.interactive.containers.create(
                image,
                command,
                name=name,
                environment=environment,
                user=user,
                cpu_shares=cpu_shares,
                mem_limit=mem_limit,
            )
        except (APIError, DockerException, OSError) as exc:
            _raise_engine_error(exc, subject=name if _is_conflict(exc) else image)
        return SDKContainerHandle(container)

    def list_containers(self) -> List[ContainerHandleProtocol]:
        try:
            containers = self.client.containers.list(all=True)
        except (APIError, DockerException, OSError) as exc:
            _raise_engine_error(exc)
        return [SDKContainerHandle(container) for container in containers]


def _is_conflict(exc: Exception) -> bool:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) == 409


def _raise_engine_error(exc: Exception, subject: str = "") -> None:
    translated = translate_docker_error(exc, subject=subject)
    if translated is exc:
        raise exc
    raise translated from exc


_MISSING_IMAGE = re.compile(r"not found|manifest unknown|does not exist|pull access denied", re.IGNORECASE)


def _pull_error(image_ref: str, message: str) -> Exception:
    if _MISSING_IMAGE.search(message):
        return ImageNotFound(f"Could not find docker image {image_ref}: {message}")
    return EngineUnreachable(f"Could not pull docker image {image_ref}: {message}")
