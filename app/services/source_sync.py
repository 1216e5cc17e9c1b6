from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from app.services.errors import SourceSyncFailure

LOGGER = logging.getLogger("quarry.source_sync")


class SourceSync:
    """Bring a scraper checkout up to date with its remote."""

    def synchronise(self, repo_path: Path, git_url: str) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError


class GitSourceSync(SourceSync):
    def __init__(self, timeout: int = 300) -> None:
        self._timeout = timeout

    def _git(self, args: list[str], cwd: Path | None = None) -> None:
        try:
            proc = subprocess.run(
                ["git", *args],
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=self._timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise SourceSyncFailure(f"git {args[0]} failed: {exc}") from exc
        if proc.returncode != 0:
            raise SourceSyncFailure(proc.stderr.strip() or f"git {args[0]} failed")

    def synchronise(self, repo_path: Path, git_url: str) -> None:
        repo_path = Path(repo_path)
        if (repo_path / ".git").exists():
            LOGGER.info("Pulling %s into %s", git_url, repo_path)
            self._git(["fetch", "--depth", "1", git_url, "HEAD"], cwd=repo_path)
            self._git(["reset", "--hard", "FETCH_HEAD"], cwd=repo_path)
        else:
            LOGGER.info("Cloning %s into %s", git_url, repo_path)
            repo_path.parent.mkdir(parents=True, exist_ok=True)
            self._git(["clone", "--depth", "1", git_url, str(repo_path)])
