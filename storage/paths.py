"""Filesystem layout for datasets, staging areas and run work directories."""

from __future__ import annotations

from pathlib import Path


def city_output_dir(data_root: str | Path, prefecture_id: str, city_id: str) -> Path:
    return Path(data_root) / "jp" / prefecture_id / city_id


def staging_city_dir(data_root: str | Path, run_id: str, prefecture_id: str, city_id: str) -> Path:
    return Path(data_root) / ".staging" / run_id / "jp" / prefecture_id / city_id


def cities_registry_path(data_root: str | Path) -> Path:
    return Path(data_root) / "cities.json"


def default_work_dir(work_root: str | Path, run_id: str) -> Path:
    return Path(work_root) / run_id
