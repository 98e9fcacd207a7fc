"""Promote staged city data into the dataset and update the shared registry."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import os
from pathlib import Path
import time
from typing import AsyncIterator, List

from core import CityEntry
from utils.exceptions import FileLockTimeoutError, ValidationFailure

from .json_io import atomic_write_bytes, write_json_atomic
from .paths import cities_registry_path

logger = logging.getLogger(__name__)

STAGED_FILES = ("schedule.json", "separation.json")
LOCK_POLL_SECONDS = 0.1
REGISTRY_LOCK_TIMEOUT_MS = 5_000


@asynccontextmanager
async def file_lock(lock_path: str | Path, timeout_ms: int) -> AsyncIterator[Path]:
    """
    Cross-process advisory lock based on exclusive file creation.

    Polls every 100 ms and raises ``FileLockTimeoutError`` once ``timeout_ms``
    has elapsed without acquiring the lock. The lock file is removed on exit.
    """
    path = Path(lock_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + max(0, timeout_ms) / 1000.0

    while True:
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise FileLockTimeoutError(
                    f"Failed to acquire lock in {timeout_ms}ms: {path}",
                    lock_path=str(path),
                )
            await asyncio.sleep(LOCK_POLL_SECONDS)

    try:
        os.write(fd, str(os.getpid()).encode("ascii"))
        yield path
    finally:
        os.close(fd)
        try:
            path.unlink()
        except FileNotFoundError:
            pass


def commit_staged_city_data(staging_dir: str | Path, final_dir: str | Path) -> List[str]:
    """Copy every staged output into ``final_dir`` via temp file + rename."""
    staging = Path(staging_dir)
    final = Path(final_dir)
    missing = [str(staging / name) for name in STAGED_FILES if not (staging / name).exists()]
    if missing:
        raise ValidationFailure(f"Missing staged file: {', '.join(missing)}")

    committed: List[str] = []
    for name in STAGED_FILES:
        target = final / name
        atomic_write_bytes(target, (staging / name).read_bytes())
        committed.append(str(target))
    logger.info("committed staged city data to %s (%s files)", final, len(committed))
    return committed


async def update_cities_json_atomic(
    data_root: str | Path,
    entry: CityEntry,
    *,
    timeout_ms: int = REGISTRY_LOCK_TIMEOUT_MS,
) -> None:
    """Upsert ``entry`` by id into ``cities.json`` under the registry lock."""
    cities_path = cities_registry_path(data_root)
    lock_path = cities_path.with_name(cities_path.name + ".lock")

    async with file_lock(lock_path, timeout_ms):
        if cities_path.exists():
            parsed = json.loads(cities_path.read_text(encoding="utf-8"))
        else:
            parsed = {"version": "1.0.0", "cities": []}

        cities = list(parsed.get("cities") or [])
        row = entry.model_dump(mode="json")
        for index, city in enumerate(cities):
            if city.get("id") == entry.id:
                cities[index] = row
                break
        else:
            cities.append(row)

        parsed["version"] = parsed.get("version") or "1.0.0"
        parsed["cities"] = cities
        write_json_atomic(cities_path, parsed)
