from __future__ import annotations

import logging
import threading
from typing import Optional, Set

from app.services.engine import ContainerEngine
from app.services.events import EventChannel, StreamTag

LOGGER = logging.getLogger("quarry.base_image")


class BaseImageProvider:
    """Make sure the generic build image is present on the engine."""

    def __init__(self, engine: ContainerEngine) -> None:
        self._engine = engine
        self._lock = threading.Lock()
        self._verified: Set[str] = set()

    def ensure(self, image_ref: str, channel: Optional[EventChannel] = None) -> str:
        with self._lock:
            if image_ref in self._verified:
                return image_ref
            if not self._engine.image_exists(image_ref):
                LOGGER.info("Build image %s not present; pulling", image_ref)
                self._pull(image_ref, channel)
            self._verified.add(image_ref)
            return image_ref

    def refresh(self, image_ref: str, channel: Optional[EventChannel] = None) -> str:
        """Pull the image again even if a copy is already present."""
        with self._lock:
            self._verified.discard(image_ref)
            LOGGER.info("Refreshing build image %s", image_ref)
            self._pull(image_ref, channel)
            self._verified.add(image_ref)
            return image_ref

    def _pull(self, image_ref: str, channel: Optional[EventChannel]) -> None:
        for line in self._engine.pull_image(image_ref):
            if channel is not None:
                channel.log(StreamTag.internalout, line)
