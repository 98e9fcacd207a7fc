"""
Storage Module
Atomic artifact I/O, dataset layout and commit.
"""
from .json_io import (
    atomic_write_bytes,
    extract_json_from_text,
    read_json_file,
    read_ndjson_file,
    write_json_atomic,
    write_ndjson_atomic,
)
from .paths import city_output_dir, cities_registry_path, default_work_dir, staging_city_dir
from .commit import commit_staged_city_data, file_lock, update_cities_json_atomic

__all__ = [
    "atomic_write_bytes",
    "extract_json_from_text",
    "read_json_file",
    "read_ndjson_file",
    "write_json_atomic",
    "write_ndjson_atomic",
    "city_output_dir",
    "cities_registry_path",
    "default_work_dir",
    "staging_city_dir",
    "commit_staged_city_data",
    "file_lock",
    "update_cities_json_atomic",
]
