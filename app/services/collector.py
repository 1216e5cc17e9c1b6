from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from app.constants import CONTAINER_GRACE_SECONDS
from app.services.engine import ContainerEngine
from app.services.errors import ContainerNotFound

LOGGER = logging.getLogger("quarry.collector")

_FRACTION = re.compile(r"\.(\d+)")


@dataclass(frozen=True)
class RemovedContainer:
    id: str
    name: Optional[str]
    finished_seconds_ago: float


def parse_engine_timestamp(value: str) -> datetime:
    """Parse the RFC 3339 timestamps the engine reports (nanosecond precision)."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GarbageCollector:
    """Delete containers that stopped more than a grace period ago."""

    def __init__(self, engine: ContainerEngine, grace_seconds: int = CONTAINER_GRACE_SECONDS) -> None:
        self._engine = engine
        self._grace_seconds = grace_seconds

    def sweep(self, now: Optional[datetime] = None) -> List[RemovedContainer]:
        current = now or datetime.now(tz=timezone.utc)
        removed: List[RemovedContainer] = []
        for container in self._engine.list_containers():
            try:
                state = container.state()
            except ContainerNotFound:
                LOGGER.debug("Container %s vanished before it could be inspected", container.id[:12])
                continue
            if state.get("Running"):
                continue
            finished_at = state.get("FinishedAt")
            if not finished_at:
                continue
            finished_ago = (current - parse_engine_timestamp(str(finished_at))).total_seconds()
            if finished_ago <= self._grace_seconds:
                continue
            short_id = container.id[:12]
            LOGGER.info(
                "Removing container id: %s, name: %s, finished: %s seconds ago",
                short_id,
                container.name,
                int(finished_ago),
            )
            container.remove(force=True)
            removed.append(RemovedContainer(short_id, container.name, finished_ago))
        return removed
