"""Shared fixtures for the quota library tests."""

import os

# Use litellm's bundled model map instead of fetching it at import time
os.environ.setdefault("LITELLM_LOCAL_MODEL_COST_MAP", "True")

import sqlite3
import time
from pathlib import Path

import pytest

from quota_library.browser.cookie_store import WEBKIT_EPOCH_OFFSET
from quota_library.browser.decryptor import (
    CookieDecryptor,
    StaticKeyProvider,
    encrypt_cookie_value,
)
from quota_library.browser.detection import BrowserProfile, DetectedBrowser

TEST_KEY = bytes(range(32))

CHROMIUM_SCHEMA = """
CREATE TABLE cookies (
    creation_utc INTEGER NOT NULL,
    host_key TEXT NOT NULL,
    name TEXT NOT NULL,
    value TEXT NOT NULL,
    encrypted_value BLOB DEFAULT '',
    path TEXT NOT NULL,
    expires_utc INTEGER NOT NULL,
    last_update_utc INTEGER NOT NULL DEFAULT 0
)
"""

CHROMIUM_META_SCHEMA = """
CREATE TABLE meta (
    key LONGVARCHAR NOT NULL UNIQUE PRIMARY KEY,
    value LONGVARCHAR
)
"""

FIREFOX_SCHEMA = """
CREATE TABLE moz_cookies (
    id INTEGER PRIMARY KEY,
    name TEXT,
    value TEXT,
    host TEXT,
    path TEXT,
    expiry INTEGER,
    lastAccessed INTEGER,
    creationTime INTEGER
)
"""


def to_webkit(unix_seconds: float) -> int:
    return int((unix_seconds + WEBKIT_EPOCH_OFFSET) * 1_000_000)


class FakeClock:
    """Manually advanced clock for staleness tests."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingDecryptor(CookieDecryptor):
    def __init__(self, key: bytes = TEST_KEY, log=None):
        super().__init__(StaticKeyProvider(default=key))
        self.calls = 0
        self.log = log

    def decrypt(self, blob, metadata):
        self.calls += 1
        if self.log is not None:
            self.log.append("decrypt")
        return super().decrypt(blob, metadata)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_chrome_profile(tmp_path):
    """
    Factory creating a Chromium user-data dir with one Default profile.

    Each cookie is (host, name, plaintext value, expires unix seconds or None).
    Values are stored encrypted with TEST_KEY. From schema version 24 on they
    carry the SHA-256 binding to their host, as Chromium writes them.
    """

    def factory(
        cookies, name: str = "chrome-data", schema_version: int = 24
    ) -> DetectedBrowser:
        user_data_dir = tmp_path / name
        profile_dir = user_data_dir / "Default" / "Network"
        profile_dir.mkdir(parents=True)
        db_path = profile_dir / "Cookies"
        conn = sqlite3.connect(db_path)
        try:
            conn.execute(CHROMIUM_SCHEMA)
            conn.execute(CHROMIUM_META_SCHEMA)
            conn.execute(
                "INSERT INTO meta VALUES ('version', ?)", (str(schema_version),)
            )
            bound = schema_version >= 24
            now = time.time()
            for index, (host, cookie_name, value, expires) in enumerate(cookies):
                conn.execute(
                    "INSERT INTO cookies VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        to_webkit(now - 100),
                        host,
                        cookie_name,
                        "",
                        encrypt_cookie_value(
                            value, TEST_KEY, host_key=host if bound else None
                        ),
                        "/",
                        to_webkit(expires) if expires is not None else 0,
                        to_webkit(now - 50 + index),
                    ),
                )
            conn.commit()
        finally:
            conn.close()
        return DetectedBrowser(
            "chrome",
            user_data_dir,
            (BrowserProfile("Default", user_data_dir / "Default", is_default=True),),
        )

    return factory


@pytest.fixture
def make_firefox_profile(tmp_path):
    """Factory creating a Firefox profiles dir with one default profile."""

    def factory(cookies) -> DetectedBrowser:
        profiles_dir = tmp_path / "firefox-profiles"
        profile_dir = profiles_dir / "abcd.default-release"
        profile_dir.mkdir(parents=True)
        conn = sqlite3.connect(profile_dir / "cookies.sqlite")
        try:
            conn.execute(FIREFOX_SCHEMA)
            for host, cookie_name, value, expires in cookies:
                conn.execute(
                    "INSERT INTO moz_cookies (name, value, host, path, expiry, lastAccessed, creationTime) "
                    "VALUES (?, ?, ?, '/', ?, ?, ?)",
                    (cookie_name, value, host, int(expires or 0), 1_700_000_000_000_000, 1_600_000_000_000_000),
                )
            conn.commit()
        finally:
            conn.close()
        return DetectedBrowser(
            "firefox",
            profiles_dir,
            (BrowserProfile("abcd.default-release", profile_dir, is_default=True),),
        )

    return factory


@pytest.fixture
def data_dir(tmp_path, monkeypatch) -> Path:
    path = tmp_path / "data"
    path.mkdir()
    monkeypatch.setenv("QUOTA_DATA_DIR", str(path))
    return path
