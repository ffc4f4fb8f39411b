"""Whole-file JSON persistence helpers.

Every document is rewritten in full on save (read-modify-write, never
append).  Loads tolerate a missing or corrupt file by returning the caller's
default.  The async variants push the blocking file IO onto a worker thread
so cache reads and writes are suspension points like any provider call.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

import structlog

logger = structlog.get_logger()


def read_json(path: Path, default: Any) -> Any:
    """Read and decode a JSON document.

    Args:
        path: File to read.
        default: Returned when the file is missing or is not valid JSON.

    Returns:
        The decoded document, or *default*.
    """
    try:
        with path.open(encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return default
    except (OSError, ValueError) as exc:
        logger.warning("json_read_failed", path=str(path), error=str(exc))
        return default


def write_json(path: Path, data: Any) -> None:
    """Serialize *data* and replace *path* with it.

    The document is written to a sibling temp file first and moved into
    place, so readers never observe a half-written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def delete_file(path: Path) -> None:
    path.unlink(missing_ok=True)


def delete_dir(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)


def list_directories(parent: Path) -> list[str]:
    """Return the names of immediate subdirectories, sorted; empty if *parent* is missing."""
    if not parent.is_dir():
        return []
    return sorted(p.name for p in parent.iterdir() if p.is_dir())


async def load_json(path: Path, default: Any) -> Any:
    """Async :func:`read_json`."""
    return await asyncio.to_thread(read_json, path, default)


async def save_json(path: Path, data: Any) -> None:
    """Async :func:`write_json`."""
    await asyncio.to_thread(write_json, path, data)
