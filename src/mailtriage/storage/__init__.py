"""On-disk layout and whole-file JSON persistence."""

from mailtriage.storage.files import (
    delete_dir,
    delete_file,
    list_directories,
    load_json,
    read_json,
    save_json,
    write_json,
)
from mailtriage.storage.paths import DataPaths

__all__ = [
    "DataPaths",
    "delete_dir",
    "delete_file",
    "list_directories",
    "load_json",
    "read_json",
    "save_json",
    "write_json",
]
