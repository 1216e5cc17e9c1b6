from __future__ import annotations

from typing import Optional

import requests
from docker import errors as docker_errors


class EngineError(Exception):
    """Base class for container-engine faults surfaced by the pipeline."""

    retryable = True


class EngineUnreachable(EngineError):
    """The container engine endpoint could not be contacted."""


class ImageNotFound(EngineError):
    """An image referenced by a run no longer exists on the engine."""


class ContainerNotFound(EngineError):
    """A container disappeared while it was being inspected or used."""


class NameConflict(EngineError):
    """A container with the requested name already exists."""

    retryable = False


class RunFailure(EngineError):
    """Starting or attaching to a scraper container failed."""


class SourceSyncFailure(Exception):
    """Fetching scraper code from its remote repository failed."""


def _status_code(exc: docker_errors.APIError) -> Optional[int]:
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None)


def translate_docker_error(exc: Exception, *, subject: str = "") -> Exception:
    """Map docker SDK and transport errors onto the engine error taxonomy.

    Exceptions that are not engine faults are returned unchanged so the caller
    can re-raise them as they are.
    """
    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return EngineUnreachable(f"Could not connect to Docker server: {exc}")
    if isinstance(exc, docker_errors.ImageNotFound):
        return ImageNotFound(f"Could not find docker image {subject or exc}")
    if isinstance(exc, docker_errors.APIError):
        if _status_code(exc) == 409:
            return NameConflict(f"Container name {subject!r} is already in use: {exc.explanation}")
        if _status_code(exc) == 404 and subject:
            return ImageNotFound(f"Could not find docker image {subject}")
        return exc
    if isinstance(exc, docker_errors.DockerException):
        # Raised by the client when it cannot negotiate an API version.
        return EngineUnreachable(f"Could not connect to Docker server: {exc}")
    return exc
