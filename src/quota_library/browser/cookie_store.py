# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Read-only access to browser cookie databases.

Browsers keep their cookie SQLite files open (and on Windows, exclusively
locked) while running. The reader opens the database with `mode=ro`, retries
briefly while it is locked, and finally reads a temporary snapshot copy.
It never writes to a browser's database.
"""

import logging
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from ..core.constants import DEFAULT_STORE_LOCK_BACKOFF, DEFAULT_STORE_LOCK_RETRIES
from ..core.errors import StoreUnavailable
from .decryptor import EncryptionMetadata
from .detection import BrowserProfile, DetectedBrowser

lib_logger = logging.getLogger("quota_library")

# Seconds between 1601-01-01 (WebKit epoch) and 1970-01-01
WEBKIT_EPOCH_OFFSET = 11644473600

# Chromium cookie schema version that added the SHA-256(host_key) value prefix
DOMAIN_BOUND_SCHEMA_VERSION = 24


@dataclass(frozen=True)
class RawCookie:
    """A cookie row as stored by a browser, value possibly still encrypted."""

    name: str
    value: str
    encrypted_value: bytes
    host: str
    path: str = "/"
    expires: Optional[float] = None  # unix seconds, None for session cookies
    last_modified: float = 0.0
    browser_type: str = ""
    profile_name: str = ""
    user_data_dir: Optional[Path] = None
    encrypted: bool = True
    domain_bound: bool = False

    @property
    def metadata(self) -> EncryptionMetadata:
        return EncryptionMetadata(
            browser_type=self.browser_type,
            profile_name=self.profile_name,
            user_data_dir=self.user_data_dir,
            encrypted=self.encrypted and bool(self.encrypted_value),
            host_key=self.host,
            domain_bound=self.domain_bound,
        )

    @property
    def stored_value(self):
        """The value to hand to the decryptor."""
        if self.encrypted and self.encrypted_value:
            return self.encrypted_value
        return self.value


def webkit_to_unix(value: Optional[int]) -> Optional[float]:
    """Convert Chromium microseconds-since-1601 to unix seconds (0 = unset)."""
    if not value:
        return None
    return value / 1_000_000 - WEBKIT_EPOCH_OFFSET


def firefox_expiry_to_unix(value: Optional[int]) -> Optional[float]:
    """Firefox stores expiry in seconds, newer versions in milliseconds."""
    if not value:
        return None
    if value > 100_000_000_000:
        return value / 1000
    return float(value)


def normalize_domain(domain: str) -> str:
    return domain.strip().lower().lstrip(".")


def domain_matches(host: str, domain: str) -> bool:
    """
    True when a cookie host belongs to a domain.

    Matches the domain itself, its dotted form, and any subdomain.
    """
    host = normalize_domain(host)
    domain = normalize_domain(domain)
    if not host or not domain:
        return False
    return host == domain or host.endswith("." + domain)


def _is_lock_error(error: sqlite3.OperationalError) -> bool:
    message = str(error).lower()
    return "locked" in message or "busy" in message


class CookieStoreReader:
    """
    Reads cookie rows for a set of domains from a detected browser.

    Usage:
        reader = CookieStoreReader()
        rows = reader.read(browser, ["claude.ai"])
    """

    def __init__(
        self,
        lock_retries: int = DEFAULT_STORE_LOCK_RETRIES,
        lock_backoff: float = DEFAULT_STORE_LOCK_BACKOFF,
    ):
        self.lock_retries = lock_retries
        self.lock_backoff = lock_backoff

    def read(self, browser: DetectedBrowser, domains: Sequence[str]) -> List[RawCookie]:
        """
        Read matching cookies from every profile of a browser.

        Args:
            browser: The detected browser
            domains: Cookie domains to match

        Returns:
            Matching rows across all profiles, default profile first

        Raises:
            StoreUnavailable: No profile has a readable cookie database
        """
        cookies: List[RawCookie] = []
        readable = 0
        last_error: Optional[Exception] = None

        profiles = sorted(browser.profiles, key=lambda p: not p.is_default)
        for profile in profiles:
            try:
                cookies.extend(self.read_profile(browser, profile, domains))
                readable += 1
            except StoreUnavailable as e:
                last_error = e
                lib_logger.debug(
                    f"{browser.display_name}/{profile.name}: {e.message}"
                )

        if readable == 0:
            raise StoreUnavailable(
                f"No readable cookie store for {browser.display_name}"
                + (f" ({last_error})" if last_error else "")
            )
        return cookies

    def read_profile(
        self, browser: DetectedBrowser, profile: BrowserProfile, domains: Sequence[str]
    ) -> List[RawCookie]:
        """Read matching cookies from a single profile."""
        db_path = browser.cookies_db_path(profile)
        if not db_path.exists():
            raise StoreUnavailable(f"Cookie database not found: {db_path}")

        rows = self._query_with_fallback(db_path, browser, domains)
        cookies = [
            self._row_to_cookie(row, browser, profile)
            for row in rows
        ]
        matched = [
            c for c in cookies if any(domain_matches(c.host, d) for d in domains)
        ]
        lib_logger.debug(
            f"Read {len(matched)} cookie(s) from {browser.display_name}/{profile.name}"
        )
        return matched

    # =========================================================================
    # SQLITE ACCESS
    # =========================================================================

    def _query_with_fallback(
        self, db_path: Path, browser: DetectedBrowser, domains: Sequence[str]
    ) -> List[dict]:
        for attempt in range(self.lock_retries):
            try:
                return self._query(db_path, browser, domains)
            except sqlite3.OperationalError as e:
                if not _is_lock_error(e):
                    lib_logger.debug(f"Direct read of {db_path.name} failed: {e}")
                    break
                wait_time = self.lock_backoff * (2**attempt)
                lib_logger.debug(
                    f"{db_path.name} locked, retry {attempt + 1}/{self.lock_retries} "
                    f"in {wait_time:.2f}s"
                )
                time.sleep(wait_time)
            except sqlite3.DatabaseError as e:
                raise StoreUnavailable(f"Cookie database unreadable: {e}") from e

        return self._query_snapshot(db_path, browser, domains)

    def _query_snapshot(
        self, db_path: Path, browser: DetectedBrowser, domains: Sequence[str]
    ) -> List[dict]:
        with tempfile.TemporaryDirectory(prefix="quota-cookies-") as temp_dir:
            snapshot = Path(temp_dir) / db_path.name
            try:
                shutil.copy2(db_path, snapshot)
                # Recent writes may still live in the write-ahead log
                for suffix in ("-wal", "-shm"):
                    sidecar = db_path.with_name(db_path.name + suffix)
                    if sidecar.exists():
                        shutil.copy2(sidecar, snapshot.with_name(snapshot.name + suffix))
            except OSError as e:
                raise StoreUnavailable(f"Cannot snapshot {db_path.name}: {e}") from e

            try:
                return self._query(snapshot, browser, domains, read_only=False)
            except sqlite3.DatabaseError as e:
                raise StoreUnavailable(f"Cookie snapshot unreadable: {e}") from e

    def _query(
        self,
        db_path: Path,
        browser: DetectedBrowser,
        domains: Sequence[str],
        read_only: bool = True,
    ) -> List[dict]:
        if read_only:
            uri = f"{db_path.resolve().as_uri()}?mode=ro"
        else:
            # Private snapshot; sqlite may need to replay the WAL into it
            uri = f"{db_path.resolve().as_uri()}?mode=rw"
        conn = sqlite3.connect(uri, uri=True, timeout=0)
        try:
            conn.row_factory = sqlite3.Row
            table, host_column = (
                ("cookies", "host_key") if browser.is_chromium_based else ("moz_cookies", "host")
            )
            columns = self._table_columns(conn, table)
            if not columns:
                raise sqlite3.DatabaseError(f"Table {table} not found")

            where, params = self._domain_filter(host_column, domains)
            cursor = conn.execute(f"SELECT * FROM {table} WHERE {where}", params)
            rows = [dict(row) for row in cursor.fetchall()]
            if browser.is_chromium_based:
                schema_version = self._schema_version(conn)
                for row in rows:
                    row["schema_version"] = schema_version
            return rows
        finally:
            conn.close()

    @staticmethod
    def _table_columns(conn: sqlite3.Connection, table: str) -> Tuple[str, ...]:
        return tuple(row[1] for row in conn.execute(f"PRAGMA table_info({table})"))

    @staticmethod
    def _schema_version(conn: sqlite3.Connection) -> int:
        """Version from the Chromium `meta` table, 0 when absent."""
        if not CookieStoreReader._table_columns(conn, "meta"):
            return 0
        row = conn.execute("SELECT value FROM meta WHERE key = 'version'").fetchone()
        try:
            return int(row[0]) if row else 0
        except (TypeError, ValueError):
            return 0

    @staticmethod
    def _domain_filter(host_column: str, domains: Iterable[str]) -> Tuple[str, list]:
        # Coarse LIKE prefilter; domain_matches() decides precisely
        clauses = []
        params = []
        for domain in domains:
            clauses.append(f"{host_column} LIKE ?")
            params.append(f"%{normalize_domain(domain)}")
        if not clauses:
            return "0", []
        return " OR ".join(clauses), params

    # =========================================================================
    # ROW CONVERSION
    # =========================================================================

    @staticmethod
    def _row_to_cookie(
        row: dict, browser: DetectedBrowser, profile: BrowserProfile
    ) -> RawCookie:
        if browser.is_chromium_based:
            encrypted_value = row.get("encrypted_value") or b""
            if isinstance(encrypted_value, str):
                encrypted_value = encrypted_value.encode("utf-8")
            last_modified = webkit_to_unix(
                row.get("last_update_utc") or row.get("creation_utc")
            )
            domain_bound = (
                row.get("schema_version") or 0
            ) >= DOMAIN_BOUND_SCHEMA_VERSION
            return RawCookie(
                name=row.get("name") or "",
                value=row.get("value") or "",
                encrypted_value=encrypted_value,
                host=row.get("host_key") or "",
                path=row.get("path") or "/",
                expires=webkit_to_unix(row.get("expires_utc")),
                last_modified=last_modified or 0.0,
                browser_type=browser.browser_type,
                profile_name=profile.name,
                user_data_dir=browser.user_data_dir,
                encrypted=True,
                domain_bound=domain_bound,
            )

        # Firefox timestamps are microseconds since the unix epoch
        last_accessed = row.get("lastAccessed") or row.get("creationTime") or 0
        return RawCookie(
            name=row.get("name") or "",
            value=row.get("value") or "",
            encrypted_value=b"",
            host=row.get("host") or "",
            path=row.get("path") or "/",
            expires=firefox_expiry_to_unix(row.get("expiry")),
            last_modified=last_accessed / 1_000_000 if last_accessed else 0.0,
            browser_type=browser.browser_type,
            profile_name=profile.name,
            user_data_dir=browser.user_data_dir,
            encrypted=False,
        )
