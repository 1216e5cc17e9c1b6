from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable, List, Sequence, Tuple

from app.constants import ALL_CONFIG_FILENAMES


def _entries(directory: Path) -> List[str]:
    return sorted(entry for entry in os.listdir(directory) if entry not in {".", ".."})


def is_config_file(name: str, manifest: Sequence[str] = ALL_CONFIG_FILENAMES) -> bool:
    return name in manifest


def classify(
    directory: Path,
    manifest: Sequence[str] = ALL_CONFIG_FILENAMES,
) -> Tuple[List[str], List[str]]:
    """Split the top-level entries of ``directory`` into config and code entries."""
    config_entries: List[str] = []
    code_entries: List[str] = []
    for entry in _entries(Path(directory)):
        if is_config_file(entry, manifest):
            config_entries.append(entry)
        else:
            code_entries.append(entry)
    return config_entries, code_entries


def copy_entries(source: Path, dest: Path, entries: Iterable[str]) -> None:
    source = Path(source)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    for entry in entries:
        origin = source / entry
        target = dest / entry
        if origin.is_symlink():
            os.symlink(os.readlink(origin), target)
        elif origin.is_dir():
            shutil.copytree(origin, target, symlinks=True)
        else:
            shutil.copy2(origin, target)


def copy_config(source: Path, dest: Path) -> List[str]:
    config_entries, _ = classify(source)
    copy_entries(source, dest, config_entries)
    return config_entries


def copy_code(source: Path, dest: Path) -> List[str]:
    _, code_entries = classify(source)
    copy_entries(source, dest, code_entries)
    return code_entries


def directory_size(directory: Path) -> int:
    """Total size in bytes of regular files below ``directory``; symlinks are not followed."""
    directory = Path(directory)
    if not directory.exists():
        return 0
    total = 0
    for entry in _entries(directory):
        path = directory / entry
        stat = path.lstat()
        if path.is_dir() and not path.is_symlink():
            total += directory_size(path)
        else:
            total += stat.st_size
    return total
