from __future__ import annotations

import json
from pathlib import Path

import pytest

from core import CityEntry
from storage.commit import commit_staged_city_data, file_lock, update_cities_json_atomic
from storage.paths import city_output_dir, staging_city_dir
from utils.exceptions import FileLockTimeoutError, ValidationFailure


def _entry(city_id: str = "kawasaki", name: str = "川崎市") -> CityEntry:
    return CityEntry(
        id=city_id,
        name_ja=name,
        prefecture_ja="神奈川県",
        source_url="https://www.city.kawasaki.jp/",
        data_path=f"jp/kanagawa/{city_id}",
        last_verified="2026-10-19",
    )


def test_commit_copies_staged_outputs(tmp_path: Path) -> None:
    staging = staging_city_dir(tmp_path, "run-1", "kanagawa", "kawasaki")
    staging.mkdir(parents=True)
    (staging / "schedule.json").write_text('{"areas": []}', encoding="utf-8")
    (staging / "separation.json").write_text('{"items": []}', encoding="utf-8")
    final = city_output_dir(tmp_path, "kanagawa", "kawasaki")

    committed = commit_staged_city_data(staging, final)

    assert committed == [str(final / "schedule.json"), str(final / "separation.json")]
    assert json.loads((final / "separation.json").read_text(encoding="utf-8")) == {"items": []}


def test_commit_refuses_partial_staging(tmp_path: Path) -> None:
    staging = tmp_path / "staging"
    staging.mkdir()
    (staging / "schedule.json").write_text("{}", encoding="utf-8")
    final = tmp_path / "final"

    with pytest.raises(ValidationFailure) as excinfo:
        commit_staged_city_data(staging, final)

    assert "separation.json" in excinfo.value.message
    assert not final.exists()


@pytest.mark.asyncio
async def test_registry_upserts_by_id(tmp_path: Path) -> None:
    await update_cities_json_atomic(tmp_path, _entry())
    await update_cities_json_atomic(tmp_path, _entry("yokohama", "横浜市"))
    await update_cities_json_atomic(tmp_path, _entry().model_copy(update={"last_verified": "2026-10-20"}))

    registry = json.loads((tmp_path / "cities.json").read_text(encoding="utf-8"))

    assert registry["version"] == "1.0.0"
    assert [city["id"] for city in registry["cities"]] == ["kawasaki", "yokohama"]
    assert registry["cities"][0]["last_verified"] == "2026-10-20"
    assert not (tmp_path / "cities.json.lock").exists()


@pytest.mark.asyncio
async def test_registry_lock_times_out_when_held(tmp_path: Path) -> None:
    lock_path = tmp_path / "cities.json.lock"

    async with file_lock(lock_path, 1_000):
        with pytest.raises(FileLockTimeoutError) as excinfo:
            await update_cities_json_atomic(tmp_path, _entry(), timeout_ms=150)

    assert excinfo.value.lock_path == str(lock_path)
    assert not lock_path.exists()
    assert not (tmp_path / "cities.json").exists()
