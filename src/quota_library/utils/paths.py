# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/quota_library/utils/paths.py
"""
Data and cache directory resolution.

Resolution order:
1. QUOTA_DATA_DIR environment variable
2. Directory next to the executable when running frozen (PyInstaller)
3. Platform default (LOCALAPPDATA, ~/Library/Application Support, XDG)
"""

import os
import sys
from pathlib import Path

APP_DIR_NAME = "QuotaLibrary"


def _platform_data_root() -> Path:
    home = Path.home()
    if sys.platform == "win32":
        local = os.environ.get("LOCALAPPDATA")
        return Path(local) if local else home / "AppData" / "Local"
    if sys.platform == "darwin":
        return home / "Library" / "Application Support"
    xdg = os.environ.get("XDG_DATA_HOME")
    return Path(xdg) if xdg else home / ".local" / "share"


def get_data_dir() -> Path:
    """Get the data directory (credentials, provider table, .env)."""
    override = os.environ.get("QUOTA_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent / "data"
    return _platform_data_root() / APP_DIR_NAME


def get_data_file(name: str) -> Path:
    """Get the path to a file inside the data directory."""
    return get_data_dir() / name
