# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Browser detection.

Finds installed browsers and their profile directories. Chromium-family
browsers keep encrypted cookies in `<profile>/Network/Cookies` with the
wrapping key in `<user data>/Local State`; Firefox keeps plaintext cookies
in `<profile>/cookies.sqlite`.
"""

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

lib_logger = logging.getLogger("quota_library")


class BrowserType:
    CHROME = "chrome"
    EDGE = "edge"
    BRAVE = "brave"
    ARC = "arc"
    CHROMIUM = "chromium"
    FIREFOX = "firefox"

    ALL = (CHROME, EDGE, BRAVE, ARC, CHROMIUM, FIREFOX)

    DISPLAY_NAMES = {
        CHROME: "Google Chrome",
        EDGE: "Microsoft Edge",
        BRAVE: "Brave",
        ARC: "Arc",
        CHROMIUM: "Chromium",
        FIREFOX: "Firefox",
    }

    @classmethod
    def is_chromium_based(cls, browser_type: str) -> bool:
        return browser_type != cls.FIREFOX

    @classmethod
    def display_name(cls, browser_type: str) -> str:
        return cls.DISPLAY_NAMES.get(browser_type, browser_type)


@dataclass(frozen=True)
class BrowserProfile:
    name: str
    path: Path
    is_default: bool = False


@dataclass(frozen=True)
class DetectedBrowser:
    browser_type: str
    user_data_dir: Path
    profiles: tuple = field(default_factory=tuple)

    @property
    def is_chromium_based(self) -> bool:
        return BrowserType.is_chromium_based(self.browser_type)

    @property
    def display_name(self) -> str:
        return BrowserType.display_name(self.browser_type)

    @property
    def local_state_path(self) -> Path:
        return self.user_data_dir / "Local State"

    def cookies_db_path(self, profile: BrowserProfile) -> Path:
        if not self.is_chromium_based:
            return profile.path / "cookies.sqlite"
        # Chromium 96+ moved the database under Network/
        network_path = profile.path / "Network" / "Cookies"
        if network_path.exists():
            return network_path
        return profile.path / "Cookies"


def default_user_data_dirs() -> Dict[str, Path]:
    """Platform default user-data directories per browser type."""
    home = Path.home()
    if sys.platform == "win32":
        local = Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local"))
        roaming = Path(os.environ.get("APPDATA", home / "AppData" / "Roaming"))
        return {
            BrowserType.CHROME: local / "Google" / "Chrome" / "User Data",
            BrowserType.EDGE: local / "Microsoft" / "Edge" / "User Data",
            BrowserType.BRAVE: local / "BraveSoftware" / "Brave-Browser" / "User Data",
            BrowserType.ARC: local / "Arc" / "User Data",
            BrowserType.CHROMIUM: local / "Chromium" / "User Data",
            BrowserType.FIREFOX: roaming / "Mozilla" / "Firefox" / "Profiles",
        }
    if sys.platform == "darwin":
        support = home / "Library" / "Application Support"
        return {
            BrowserType.CHROME: support / "Google" / "Chrome",
            BrowserType.EDGE: support / "Microsoft Edge",
            BrowserType.BRAVE: support / "BraveSoftware" / "Brave-Browser",
            BrowserType.ARC: support / "Arc" / "User Data",
            BrowserType.CHROMIUM: support / "Chromium",
            BrowserType.FIREFOX: support / "Firefox" / "Profiles",
        }
    config = Path(os.environ.get("XDG_CONFIG_HOME", home / ".config"))
    return {
        BrowserType.CHROME: config / "google-chrome",
        BrowserType.EDGE: config / "microsoft-edge",
        BrowserType.BRAVE: config / "BraveSoftware" / "Brave-Browser",
        BrowserType.CHROMIUM: config / "chromium",
        BrowserType.FIREFOX: home / ".mozilla" / "firefox",
    }


def _detect_chromium_profiles(user_data_dir: Path) -> List[BrowserProfile]:
    profiles = []
    default_path = user_data_dir / "Default"
    if default_path.is_dir():
        profiles.append(BrowserProfile("Default", default_path, is_default=True))
    try:
        entries = sorted(user_data_dir.iterdir())
    except OSError:
        return profiles
    for entry in entries:
        if entry.name.startswith("Profile ") and entry.is_dir():
            profiles.append(BrowserProfile(entry.name, entry))
    return profiles


def _detect_firefox_profiles(profiles_dir: Path) -> List[BrowserProfile]:
    profiles = []
    try:
        entries = sorted(profiles_dir.iterdir())
    except OSError:
        return profiles
    for entry in entries:
        # "abcd1234.default" / "abcd1234.default-release"
        if entry.is_dir() and "." in entry.name:
            profiles.append(
                BrowserProfile(entry.name, entry, is_default="default" in entry.name)
            )
    return profiles


def detect_browser(
    browser_type: str, user_data_dir: Optional[Path] = None
) -> Optional[DetectedBrowser]:
    """
    Detect a single browser.

    Args:
        browser_type: One of BrowserType.ALL
        user_data_dir: Override for the user-data directory

    Returns:
        DetectedBrowser, or None if not installed or has no profiles
    """
    if user_data_dir is None:
        user_data_dir = default_user_data_dirs().get(browser_type)
    if user_data_dir is None or not user_data_dir.is_dir():
        return None

    if BrowserType.is_chromium_based(browser_type):
        profiles = _detect_chromium_profiles(user_data_dir)
    else:
        profiles = _detect_firefox_profiles(user_data_dir)

    if not profiles:
        return None

    return DetectedBrowser(browser_type, user_data_dir, tuple(profiles))


def detect_browsers(roots: Optional[Dict[str, Path]] = None) -> List[DetectedBrowser]:
    """
    Detect all installed browsers.

    Args:
        roots: Optional mapping of browser type to user-data directory; when
            given, only those browsers are considered

    Returns:
        Detected browsers in BrowserType.ALL order
    """
    candidates = roots if roots is not None else default_user_data_dirs()
    browsers = []
    for browser_type in BrowserType.ALL:
        if browser_type not in candidates:
            continue
        browser = detect_browser(browser_type, candidates[browser_type])
        if browser:
            lib_logger.debug(
                f"Detected {browser.display_name} with {len(browser.profiles)} profile(s)"
            )
            browsers.append(browser)
    return browsers
