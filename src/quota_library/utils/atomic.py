# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""Atomic JSON file helpers shared by the persistent stores."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

lib_logger = logging.getLogger("quota_library")


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write JSON to path via a temp file and rename.

    Readers never observe a half-written file. Raises OSError on failure.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    temp_path.replace(path)


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON file, returning None if it's missing or corrupt."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        lib_logger.warning(f"Failed to read {path.name}: {e}")
        return None
