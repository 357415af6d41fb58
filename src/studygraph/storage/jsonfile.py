"""Flat JSON file helpers shared by the JSON-backed stores."""
from __future__ import annotations
import json
import logging
import os
import re
import uuid
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def safe_name(name: str) -> str:
    """Make a collection or key usable as a file name ('subject:1' -> 'subject_1')."""
    return _UNSAFE.sub("_", name)


def read_json(path: Path, default: Any) -> Any:
    """Load a JSON file.

    Returns ``default`` when the file is missing, unreadable, malformed or
    holds a value of a different JSON type than ``default``.
    """
    if not path.exists():
        return default

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable JSON file {path}: {e}")
        return default

    if not isinstance(data, type(default)):
        logger.warning(f"Ignoring {path}: expected {type(default).__name__}, got {type(data).__name__}")
        return default

    return data


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file in the same directory, then rename over ``path``.

    Readers see either the old or the new file, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")

    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
