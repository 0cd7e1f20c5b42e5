# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Cookie header cache.

Turns browser cookies into a single normalized `k=v; k2=v2` header value per
(provider, account, domain) and keeps it for a staleness window so repeated
fetches don't hit the browser databases or the decryptor.

Concurrency model:
- One asyncio.Lock per cache key; refreshing one key never blocks another.
- One asyncio.Semaphore per browser type bounds concurrent reads of the same
  cookie database.
- SQLite reads and decryption run in worker threads.
- An entry is replaced in a single assignment after all I/O completes, so a
  cancelled refresh leaves the previous state untouched.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.constants import DEFAULT_COOKIE_STALENESS_SECONDS, DEFAULT_MAX_STORE_CONCURRENCY
from ..core.errors import DecryptionError, StoreUnavailable
from ..core.types import Account, ProviderConfig
from ..utils.atomic import read_json, write_json_atomic
from .cookie_store import CookieStoreReader, RawCookie
from .decryptor import CookieDecryptor
from .detection import DetectedBrowser, detect_browsers

lib_logger = logging.getLogger("quota_library")

CacheKey = Tuple[str, str, str]


@dataclass(frozen=True)
class CookieCacheEntry:
    header: str
    stored_at: float
    source_label: str
    staleness_seconds: float

    def is_stale(self, now: float) -> bool:
        return now - self.stored_at >= self.staleness_seconds

    def to_dict(self) -> dict:
        return {
            "header": self.header,
            "stored_at": self.stored_at,
            "source_label": self.source_label,
            "staleness_seconds": self.staleness_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CookieCacheEntry":
        return cls(
            header=str(data["header"]),
            stored_at=float(data["stored_at"]),
            source_label=str(data.get("source_label", "")),
            staleness_seconds=float(data["staleness_seconds"]),
        )


# =============================================================================
# NORMALIZATION
# =============================================================================


def _split_pairs(raw: str) -> List[Tuple[str, str]]:
    pairs = []
    for part in raw.split(";"):
        part = part.strip()
        if not part or "=" not in part:
            continue
        name, value = part.split("=", 1)
        name = name.strip()
        if name:
            pairs.append((name, value.strip()))
    return pairs


def normalize_cookie_header(raw: str) -> str:
    """
    Normalize a manually supplied cookie header.

    Strips a leading `Cookie:`, drops empty parts, and keeps names in order
    of first appearance with the last occurrence's value winning.
    """
    raw = raw.strip()
    if raw.lower().startswith("cookie:"):
        raw = raw[len("cookie:"):]

    values: Dict[str, str] = {}
    for name, value in _split_pairs(raw):
        values[name] = value  # dict keeps first-insertion order
    return "; ".join(f"{name}={value}" for name, value in values.items())


def _expiry_rank(cookie: RawCookie) -> float:
    # Session cookies (no expiry) lose to any explicit expiry
    return cookie.expires if cookie.expires is not None else float("-inf")


def merge_cookies(
    cookies: Iterable[Tuple[RawCookie, str]], now: Optional[float] = None
) -> str:
    """
    Merge decrypted cookies from several browsers into one header value.

    Names are case-sensitive and ordered by first appearance. A duplicate name
    keeps the cookie with the later expiry; equal expiries keep the most
    recently modified one. Cookies already expired are dropped.

    Args:
        cookies: (raw cookie, decrypted value) pairs in discovery order
        now: Reference time for expiry checks

    Returns:
        Header value, empty when nothing usable remains
    """
    now = time.time() if now is None else now
    chosen: Dict[str, Tuple[RawCookie, str]] = {}
    for cookie, value in cookies:
        if not cookie.name or value == "":
            continue
        if cookie.expires is not None and cookie.expires <= now:
            continue
        current = chosen.get(cookie.name)
        if current is None:
            chosen[cookie.name] = (cookie, value)
            continue
        current_cookie = current[0]
        if (_expiry_rank(cookie), cookie.last_modified) > (
            _expiry_rank(current_cookie),
            current_cookie.last_modified,
        ):
            # Reassigning an existing key keeps its original position
            chosen[cookie.name] = (cookie, value)
    return "; ".join(f"{name}={value}" for name, (_, value) in chosen.items())


# =============================================================================
# CACHE
# =============================================================================


class CookieHeaderCache:
    """
    Per-(provider, account, domain) cookie header cache with refresh.

    Usage:
        cache = CookieHeaderCache()
        header = await cache.get_or_refresh(provider, account, "claude.ai")
        ...
        cache.invalidate(provider, account, "claude.ai")  # after a 401
    """

    def __init__(
        self,
        reader: Optional[CookieStoreReader] = None,
        decryptor: Optional[CookieDecryptor] = None,
        browsers_provider: Optional[Callable[[], Sequence[DetectedBrowser]]] = None,
        staleness_seconds: float = DEFAULT_COOKIE_STALENESS_SECONDS,
        max_store_concurrency: int = DEFAULT_MAX_STORE_CONCURRENCY,
        persist_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._reader = reader or CookieStoreReader()
        self._decryptor = decryptor
        self._browsers_provider = browsers_provider or detect_browsers
        self.staleness_seconds = staleness_seconds
        self.max_store_concurrency = max(1, max_store_concurrency)
        self._persist_path = persist_path
        self._clock = clock

        self._entries: Dict[CacheKey, CookieCacheEntry] = {}
        self._key_locks: Dict[CacheKey, asyncio.Lock] = {}
        self._store_semaphores: Dict[str, asyncio.Semaphore] = {}

        # Diagnostics: number of cookie-store refreshes performed
        self.refresh_count = 0

        if self._persist_path is not None:
            self.load()

    @property
    def decryptor(self) -> CookieDecryptor:
        if self._decryptor is None:
            self._decryptor = CookieDecryptor()
        return self._decryptor

    @staticmethod
    def _key(provider: ProviderConfig, account: Account, domain: str) -> CacheKey:
        return (provider.provider_id, account.account_id, domain.lower().lstrip("."))

    def _get_key_lock(self, key: CacheKey) -> asyncio.Lock:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    def _get_store_semaphore(self, browser_type: str) -> asyncio.Semaphore:
        semaphore = self._store_semaphores.get(browser_type)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.max_store_concurrency)
            self._store_semaphores[browser_type] = semaphore
        return semaphore

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def peek(
        self, provider: ProviderConfig, account: Account, domain: str
    ) -> Optional[CookieCacheEntry]:
        """Return the entry if present and fresh, without any I/O."""
        entry = self._entries.get(self._key(provider, account, domain))
        if entry is None or entry.is_stale(self._clock()):
            return None
        return entry

    async def get_or_refresh(
        self,
        provider: ProviderConfig,
        account: Account,
        domain: str,
        manual_header: Optional[str] = None,
    ) -> str:
        """
        Return a cookie header value for the key, refreshing when needed.

        Args:
            provider: Provider whose cookie domain is being read
            account: Account the cookie belongs to
            domain: Cookie domain to match
            manual_header: User-supplied header; stored instead of reading
                browsers

        Returns:
            Normalized header value (`k=v; k2=v2`)

        Raises:
            StoreUnavailable: No browser yielded a cookie for the domain
            DecryptionError: Cookies were found but none could be decrypted
        """
        key = self._key(provider, account, domain)

        entry = self._entries.get(key)
        if entry is not None and not entry.is_stale(self._clock()):
            return entry.header

        async with self._get_key_lock(key):
            # Another task may have refreshed while we waited
            entry = self._entries.get(key)
            if entry is not None and not entry.is_stale(self._clock()):
                return entry.header

            if manual_header is not None:
                header = normalize_cookie_header(manual_header)
                if not header:
                    raise StoreUnavailable("Manual cookie header is empty")
                source_label = "manual"
            else:
                header, source_label = await self._refresh(key[2])

            new_entry = CookieCacheEntry(
                header=header,
                stored_at=self._clock(),
                source_label=source_label,
                staleness_seconds=self.staleness_seconds,
            )
            self._commit(key, new_entry)
            lib_logger.debug(
                f"Cookie header for {provider.provider_id}/{account.label} "
                f"refreshed from {source_label} ({len(header)} chars)"
            )
            return header

    def invalidate(self, provider: ProviderConfig, account: Account, domain: str) -> bool:
        """Drop one entry so the next request re-reads the browsers."""
        if self._entries.pop(self._key(provider, account, domain), None) is None:
            return False
        lib_logger.debug(f"Invalidated cookie header for {provider.provider_id}/{account.label}")
        return True

    def invalidate_account(self, provider_id: str, account_id: str) -> int:
        """Drop every entry of an account. Returns how many were removed."""
        keys = [k for k in self._entries if k[0] == provider_id and k[1] == account_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries = {}

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # REFRESH
    # =========================================================================

    def _commit(self, key: CacheKey, entry: CookieCacheEntry) -> None:
        current = self._entries.get(key)
        if current is not None and current.stored_at > entry.stored_at:
            return
        self._entries[key] = entry

    async def _refresh(self, domain: str) -> Tuple[str, str]:
        self.refresh_count += 1
        browsers = list(await asyncio.to_thread(self._browsers_provider))
        if not browsers:
            raise StoreUnavailable("No supported browser found")

        results = await asyncio.gather(
            *(self._read_browser(browser, domain) for browser in browsers),
            return_exceptions=True,
        )

        collected: List[Tuple[RawCookie, str]] = []
        sources: List[str] = []
        decryption_error: Optional[DecryptionError] = None
        for browser, result in zip(browsers, results):
            if isinstance(result, StoreUnavailable):
                lib_logger.debug(f"{browser.display_name}: {result.message}")
                continue
            if isinstance(result, BaseException):
                raise result
            pairs, error = result
            if error is not None:
                decryption_error = error
            if pairs:
                collected.extend(pairs)
                sources.append(browser.display_name)

        header = merge_cookies(collected, now=self._clock())
        if not header:
            if decryption_error is not None:
                raise decryption_error
            raise StoreUnavailable(f"No browser cookies found for {domain}")
        return header, ", ".join(sources)

    async def _read_browser(
        self, browser: DetectedBrowser, domain: str
    ) -> Tuple[List[Tuple[RawCookie, str]], Optional[DecryptionError]]:
        async with self._get_store_semaphore(browser.browser_type):
            return await asyncio.to_thread(self._read_and_decrypt, browser, domain)

    def _read_and_decrypt(
        self, browser: DetectedBrowser, domain: str
    ) -> Tuple[List[Tuple[RawCookie, str]], Optional[DecryptionError]]:
        raw_cookies = self._reader.read(browser, [domain])
        pairs = []
        last_error: Optional[DecryptionError] = None
        for cookie in raw_cookies:
            try:
                value = self.decryptor.decrypt(cookie.stored_value, cookie.metadata)
            except DecryptionError as e:
                last_error = e
                lib_logger.debug(
                    f"Skipping cookie {cookie.name} from {browser.display_name}: {e.reason}"
                )
                continue
            pairs.append((cookie, value))
        if last_error is not None and not pairs:
            lib_logger.warning(
                f"Could not decrypt {browser.display_name} cookies for {domain}: "
                f"{last_error.reason}"
            )
        return pairs, last_error

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> int:
        """Load persisted entries. Stale entries are skipped."""
        if self._persist_path is None:
            return 0
        data = read_json(self._persist_path)
        if not isinstance(data, dict):
            return 0
        now = self._clock()
        loaded = 0
        for raw_key, raw_entry in (data.get("entries") or {}).items():
            parts = raw_key.split("|")
            if len(parts) != 3:
                continue
            try:
                entry = CookieCacheEntry.from_dict(raw_entry)
            except (KeyError, TypeError, ValueError):
                continue
            if entry.is_stale(now):
                continue
            self._entries[tuple(parts)] = entry
            loaded += 1
        if loaded:
            lib_logger.debug(f"Loaded {loaded} cookie cache entries")
        return loaded

    def save(self) -> None:
        """Persist fresh entries atomically."""
        if self._persist_path is None:
            return
        now = self._clock()
        entries = {
            "|".join(key): entry.to_dict()
            for key, entry in self._entries.items()
            if not entry.is_stale(now)
        }
        write_json_atomic(self._persist_path, {"version": 1, "entries": entries})
