from __future__ import annotations

import re
from typing import Dict, Optional

from app.schemas import RunMetrics

# Labels printed by GNU time -v, mapped to RunMetrics fields.
TIME_FIELDS: Dict[str, str] = {
    "Elapsed (wall clock) time (h:mm:ss or m:ss)": "wall_time",
    "User time (seconds)": "utime",
    "System time (seconds)": "stime",
    "Maximum resident set size (kbytes)": "maxrss",
    "Minor (reclaiming a frame) page faults": "minflt",
    "Major (requiring I/O) page faults": "majflt",
    "File system inputs": "inblock",
    "File system outputs": "oublock",
    "Voluntary context switches": "nvcsw",
    "Involuntary context switches": "nivcsw",
}

_LINE = re.compile(r"^\s*(?P<label>.+?):\s+(?P<value>\S+)\s*$")


def metric_command(command: str, time_output_path: str) -> str:
    """Wrap ``command`` so that resource usage is written to ``time_output_path``."""
    return f"/usr/bin/time -v -o {time_output_path} {command}"


def parse_wall_time(value: str) -> float:
    """Convert ``h:mm:ss`` or ``m:ss.ss`` to seconds."""
    seconds = 0.0
    for part in value.split(":"):
        seconds = seconds * 60 + float(part)
    return seconds


def parse_time_output(data: Optional[bytes]) -> Optional[RunMetrics]:
    if not data:
        return None
    values: Dict[str, float] = {}
    for line in data.decode("utf-8", errors="replace").splitlines():
        match = _LINE.match(line)
        if not match:
            continue
        field = TIME_FIELDS.get(match.group("label").strip())
        if field is None:
            continue
        raw = match.group("value")
        try:
            values[field] = parse_wall_time(raw) if field == "wall_time" else float(raw)
        except ValueError:
            continue
    if not values:
        return None
    return RunMetrics(**values)
