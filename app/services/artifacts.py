from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Optional

from fastapi import Depends

from app.constants import DATABASE_FILENAME

LOGGER = logging.getLogger("quarry.artifacts")


class ScraperDataStore:
    """Manage on-disk locations for scraper checkouts and their persisted databases."""

    def __init__(self, data_root: Optional[Path] = None, repo_root: Optional[Path] = None) -> None:
        self._data_root = (data_root or Path.cwd() / "db" / "scrapers" / "data").resolve()
        self._repo_root = (repo_root or Path.cwd() / "db" / "scrapers" / "repos").resolve()
        self._data_root.mkdir(parents=True, exist_ok=True)
        self._repo_root.mkdir(parents=True, exist_ok=True)

    @property
    def data_root(self) -> Path:
        return self._data_root

    def _ensure_dir(self, path: Path) -> Path:
        path.mkdir(parents=True, exist_ok=True)
        return path

    def data_dir(self, scraper_name: str) -> Path:
        return self._ensure_dir(self._data_root / scraper_name)

    def repo_dir(self, scraper_name: str) -> Path:
        return self._repo_root / scraper_name

    def database_path(self, scraper_name: str) -> Path:
        return self.data_dir(scraper_name) / DATABASE_FILENAME

    def stage_database(self, scraper_name: str, dest: Path) -> Path:
        """Put the current database (or an empty placeholder) into ``dest``."""
        source = self.database_path(scraper_name)
        target = Path(dest) / DATABASE_FILENAME
        if source.exists():
            shutil.copy2(source, target)
        else:
            # A zero-sized file overwrites the symbolic link in the image.
            target.touch()
        return target

    def commit_database(self, scraper_name: str, data: Optional[bytes]) -> bool:
        """Atomically replace the persisted database. Does nothing without data."""
        if data is None:
            return False
        live = self.database_path(scraper_name)
        pending = live.with_name(live.name + ".new")
        with pending.open("wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(pending, live)
        LOGGER.info("Committed %s bytes to %s", len(data), live)
        return True

    def database_size(self, scraper_name: str) -> int:
        path = self._data_root / scraper_name / DATABASE_FILENAME
        return path.stat().st_size if path.exists() else 0

    def total_rows(self, scraper_name: str) -> int:
        path = self._data_root / scraper_name / DATABASE_FILENAME
        if not path.exists() or path.stat().st_size == 0:
            return 0
        try:
            with closing(sqlite3.connect(f"file:{path}?mode=ro", uri=True)) as connection:
                tables = [
                    row[0]
                    for row in connection.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
                    )
                ]
                total = 0
                for table in tables:
                    quoted = table.replace('"', '""')
                    total += connection.execute(f'SELECT COUNT(*) FROM "{quoted}"').fetchone()[0]
                return total
        except sqlite3.DatabaseError as exc:
            LOGGER.warning("Could not count rows in %s: %s", path, exc)
            return 0


_data_store: Optional[ScraperDataStore] = None


def get_data_store() -> ScraperDataStore:
    """FastAPI dependency to retrieve the singleton data store."""
    global _data_store
    if _data_store is None:
        from app.services.storage import get_repository

        config = get_repository().get_config()
        _data_store = ScraperDataStore(
            data_root=Path(str(config["data_root"])),
            repo_root=Path(str(config["repo_root"])),
        )
    return _data_store


DataStoreDep = Depends(get_data_store)
