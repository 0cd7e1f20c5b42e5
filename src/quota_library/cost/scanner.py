# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Incremental JSONL scanner for local session logs.

Coding CLIs append one JSON object per line to their session logs. The
scanner remembers, per file, how far it has read and a fingerprint of the
file, so each scan only parses newly appended lines:

1. Stat the file. If it shrank below the cached offset, its inode changed,
   or its first bytes differ, it was replaced: start over from offset 0.
2. Read from the cached offset, parse every complete newline-terminated
   line, and accumulate token usage by event type, model and day. A final
   line without a newline is left for the next scan.
3. Malformed lines are counted and skipped; the offset still moves past
   them so a bad line never blocks a live log.
4. The new entry is committed in one assignment after the whole window.

Supported formats:
    codex   ~/.codex/sessions/YYYY/MM/DD/*.jsonl; `turn_context` lines set the
            model, `event_msg` token_count lines carry cumulative
            `total_token_usage` (or per-turn `last_token_usage`)
    claude  ~/.claude/projects/**/*.jsonl; `assistant` lines carry
            `message.usage`, deduplicated by message id + request id
"""

import asyncio
import datetime
import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..core.constants import SCAN_HEAD_DIGEST_BYTES, SCAN_LOCK_TIMEOUT
from ..utils.atomic import read_json, write_json_atomic
from .pricing import cost_usd, normalize_claude_model, normalize_codex_model

lib_logger = logging.getLogger("quota_library")

FORMATS = ("auto", "codex", "claude")
UNKNOWN_DAY = "unknown"

BucketKey = Tuple[str, str, str]  # (day, model, event type)


# =============================================================================
# ACCUMULATION TYPES
# =============================================================================


@dataclass
class TokenCounts:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    cache_creation_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    events: int = 0
    unpriced_events: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.cached_input_tokens
            + self.cache_creation_tokens
            + self.output_tokens
        )

    def add(self, other: "TokenCounts") -> None:
        self.input_tokens += other.input_tokens
        self.cached_input_tokens += other.cached_input_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        self.output_tokens += other.output_tokens
        self.cost_usd += other.cost_usd
        self.events += other.events
        self.unpriced_events += other.unpriced_events

    def copy(self) -> "TokenCounts":
        return TokenCounts(**self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_tokens": self.input_tokens,
            "cached_input_tokens": self.cached_input_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
            "events": self.events,
            "unpriced_events": self.unpriced_events,
        }


class UsageTotals:
    """
    Token usage bucketed by (day, model, event type).

    The by_day / by_model / by_event views are derived from the buckets, so
    a day-range filter keeps per-model numbers consistent.
    """

    def __init__(self, buckets: Optional[Dict[BucketKey, TokenCounts]] = None):
        self.buckets: Dict[BucketKey, TokenCounts] = buckets or {}

    def add(self, day: str, model: str, event_type: str, counts: TokenCounts) -> None:
        key = (day, model, event_type)
        bucket = self.buckets.get(key)
        if bucket is None:
            self.buckets[key] = counts.copy()
        else:
            bucket.add(counts)

    def merge(self, other: "UsageTotals") -> None:
        for (day, model, event_type), counts in other.buckets.items():
            self.add(day, model, event_type, counts)

    def copy(self) -> "UsageTotals":
        return UsageTotals({key: counts.copy() for key, counts in self.buckets.items()})

    def filter_days(self, since: Optional[str], until: Optional[str]) -> "UsageTotals":
        """Keep buckets whose day key falls within [since, until]."""
        kept = {}
        for key, counts in self.buckets.items():
            day = key[0]
            if since is not None and (day == UNKNOWN_DAY or day < since):
                continue
            if until is not None and (day == UNKNOWN_DAY or day > until):
                continue
            kept[key] = counts.copy()
        return UsageTotals(kept)

    def _group(self, index: int) -> Dict[str, TokenCounts]:
        grouped: Dict[str, TokenCounts] = {}
        for key, counts in self.buckets.items():
            target = grouped.setdefault(key[index], TokenCounts())
            target.add(counts)
        return grouped

    @property
    def by_day(self) -> Dict[str, TokenCounts]:
        return self._group(0)

    @property
    def by_model(self) -> Dict[str, TokenCounts]:
        return self._group(1)

    @property
    def by_event(self) -> Dict[str, TokenCounts]:
        return self._group(2)

    @property
    def total(self) -> TokenCounts:
        total = TokenCounts()
        for counts in self.buckets.values():
            total.add(counts)
        return total

    def is_empty(self) -> bool:
        return not self.buckets

    def to_list(self) -> List[Dict[str, Any]]:
        return [
            {"day": day, "model": model, "event": event_type, **counts.to_dict()}
            for (day, model, event_type), counts in sorted(self.buckets.items())
        ]

    @classmethod
    def from_list(cls, items: Iterable[Dict[str, Any]]) -> "UsageTotals":
        totals = cls()
        for item in items:
            item = dict(item)
            key = (item.pop("day"), item.pop("model"), item.pop("event"))
            totals.buckets[key] = TokenCounts(**item)
        return totals

    def __eq__(self, other: object) -> bool:
        return isinstance(other, UsageTotals) and self.buckets == other.buckets

    def __repr__(self) -> str:
        total = self.total
        return f"UsageTotals(events={total.events}, tokens={total.total_tokens}, cost={total.cost_usd:.4f})"


@dataclass(frozen=True)
class Fingerprint:
    size: int
    mtime_ns: int
    inode: int
    head_len: int
    head_digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "mtime_ns": self.mtime_ns,
            "inode": self.inode,
            "head_len": self.head_len,
            "head_digest": self.head_digest,
        }


@dataclass(frozen=True)
class ScanCacheEntry:
    path: str
    offset: int
    fingerprint: Fingerprint
    totals: UsageTotals
    fmt: str = "auto"
    last_model: Optional[str] = None
    last_totals: Optional[Tuple[int, int, int]] = None  # codex cumulative counters
    seen_ids: frozenset = frozenset()  # claude message dedup keys
    parse_errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offset": self.offset,
            "fingerprint": self.fingerprint.to_dict(),
            "totals": self.totals.to_list(),
            "fmt": self.fmt,
            "last_model": self.last_model,
            "last_totals": list(self.last_totals) if self.last_totals else None,
            "seen_ids": sorted(self.seen_ids),
            "parse_errors": self.parse_errors,
        }

    @classmethod
    def from_dict(cls, path: str, data: Dict[str, Any]) -> "ScanCacheEntry":
        last_totals = data.get("last_totals")
        return cls(
            path=path,
            offset=int(data["offset"]),
            fingerprint=Fingerprint(**data["fingerprint"]),
            totals=UsageTotals.from_list(data.get("totals") or []),
            fmt=data.get("fmt", "auto"),
            last_model=data.get("last_model"),
            last_totals=tuple(last_totals) if last_totals else None,
            seen_ids=frozenset(data.get("seen_ids") or ()),
            parse_errors=int(data.get("parse_errors", 0)),
        )


@dataclass
class UsageDelta:
    """What one scan added. skipped=True means "try again next cycle"."""

    path: str
    totals: UsageTotals = field(default_factory=UsageTotals)
    lines_parsed: int = 0
    parse_errors: int = 0
    offset: int = 0
    reset: bool = False
    skipped: bool = False

    @property
    def is_empty(self) -> bool:
        return self.totals.is_empty()


@dataclass
class CostReport:
    """Aggregated usage across a log directory."""

    fmt: str
    totals: UsageTotals = field(default_factory=UsageTotals)
    files_scanned: int = 0
    files_skipped: int = 0
    parse_errors: int = 0
    since_day: Optional[str] = None
    until_day: Optional[str] = None

    @property
    def total_cost_usd(self) -> float:
        return self.totals.total.cost_usd

    @property
    def cost_by_model(self) -> Dict[str, float]:
        return {model: counts.cost_usd for model, counts in self.totals.by_model.items()}


# =============================================================================
# LINE PARSERS
# =============================================================================


@dataclass
class _ParserState:
    last_model: Optional[str] = None
    last_totals: Optional[Tuple[int, int, int]] = None
    seen_ids: set = field(default_factory=set)


def _int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise TypeError("boolean token count")
    return int(value)


def _day_key(obj: Dict[str, Any]) -> str:
    timestamp = obj.get("timestamp")
    if isinstance(timestamp, str) and len(timestamp) >= 10:
        return timestamp[:10]
    return UNKNOWN_DAY


def _codex_usage(usage: Dict[str, Any]) -> Tuple[int, int, int]:
    cached = usage.get("cached_input_tokens")
    if cached is None:
        cached = usage.get("cache_read_input_tokens")
    return _int(usage.get("input_tokens")), _int(cached), _int(usage.get("output_tokens"))


def _parse_codex(
    obj: Dict[str, Any], state: _ParserState
) -> Optional[Tuple[str, str, TokenCounts]]:
    line_type = obj.get("type")
    payload = obj.get("payload") or {}
    if not isinstance(payload, dict):
        raise TypeError("payload is not an object")

    if line_type == "turn_context":
        model = payload.get("model") or (payload.get("info") or {}).get("model")
        if isinstance(model, str) and model:
            state.last_model = model
        return None

    if line_type != "event_msg" or payload.get("type") != "token_count":
        return None

    info = payload.get("info") or {}
    model = (
        info.get("model")
        or info.get("model_name")
        or payload.get("model")
        or obj.get("model")
        or state.last_model
        or "gpt-5"
    )

    total_usage = info.get("total_token_usage")
    last_usage = info.get("last_token_usage")
    if isinstance(total_usage, dict):
        current = _codex_usage(total_usage)
        previous = state.last_totals or (0, 0, 0)
        delta = tuple(max(0, now - before) for now, before in zip(current, previous))
        state.last_totals = current
    elif isinstance(last_usage, dict):
        delta = tuple(max(0, value) for value in _codex_usage(last_usage))
    else:
        return None

    input_tokens, cached_tokens, output_tokens = delta
    if not (input_tokens or cached_tokens or output_tokens):
        return None
    return (
        "token_count",
        normalize_codex_model(str(model)),
        TokenCounts(
            input_tokens=input_tokens,
            cached_input_tokens=min(cached_tokens, input_tokens),
            output_tokens=output_tokens,
            events=1,
        ),
    )


def _parse_claude(
    obj: Dict[str, Any], state: _ParserState
) -> Optional[Tuple[str, str, TokenCounts]]:
    if obj.get("type") != "assistant":
        return None
    message = obj.get("message") or {}
    if not isinstance(message, dict):
        raise TypeError("message is not an object")
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None

    message_id = message.get("id")
    if message_id:
        # Streaming writes the same message several times
        dedup_key = f"{message_id}:{obj.get('requestId', '')}"
        if dedup_key in state.seen_ids:
            return None
        state.seen_ids.add(dedup_key)

    model = normalize_claude_model(str(message.get("model") or "unknown"))
    return (
        "assistant",
        model,
        TokenCounts(
            input_tokens=max(0, _int(usage.get("input_tokens"))),
            cached_input_tokens=max(0, _int(usage.get("cache_read_input_tokens"))),
            cache_creation_tokens=max(0, _int(usage.get("cache_creation_input_tokens"))),
            output_tokens=max(0, _int(usage.get("output_tokens"))),
            events=1,
        ),
    )


def _detect_format(obj: Dict[str, Any]) -> Optional[str]:
    line_type = obj.get("type")
    if line_type in ("event_msg", "turn_context", "session_meta", "response_item"):
        return "codex"
    if line_type in ("assistant", "user", "summary", "system"):
        return "claude"
    return None


def _price(fmt: str, model: str, counts: TokenCounts) -> None:
    cost = cost_usd(
        fmt,
        model,
        counts.input_tokens,
        counts.cached_input_tokens,
        counts.cache_creation_tokens,
        counts.output_tokens,
    )
    if cost is None:
        counts.unpriced_events = counts.events
    else:
        counts.cost_usd = cost


# =============================================================================
# SCANNER
# =============================================================================


def _head_digest(f, length: int) -> str:
    f.seek(0)
    return hashlib.sha256(f.read(length)).hexdigest()


class JsonlScanner:
    """
    Per-file incremental scanner.

    Usage:
        scanner = JsonlScanner(fmt="codex")
        delta = scanner.scan(path)       # only new lines
        totals = scanner.totals_for(path)  # everything so far
    """

    def __init__(
        self,
        fmt: str = "auto",
        persist_path: Optional[Path] = None,
        lock_timeout: float = SCAN_LOCK_TIMEOUT,
    ):
        if fmt not in FORMATS:
            raise ValueError(f"Unknown log format: {fmt!r}")
        self.fmt = fmt
        self.lock_timeout = lock_timeout
        self._persist_path = persist_path
        self._entries: Dict[str, ScanCacheEntry] = {}
        self._path_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        if persist_path is not None:
            self.load()

    def _get_path_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._path_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._path_locks[key] = lock
            return lock

    def entry(self, path: Union[str, Path]) -> Optional[ScanCacheEntry]:
        return self._entries.get(os.path.abspath(path))

    def totals_for(self, path: Union[str, Path]) -> UsageTotals:
        entry = self.entry(path)
        return entry.totals.copy() if entry is not None else UsageTotals()

    def forget(self, path: Union[str, Path]) -> None:
        self._entries.pop(os.path.abspath(path), None)

    # =========================================================================
    # SCANNING
    # =========================================================================

    def scan(self, path: Union[str, Path]) -> UsageDelta:
        """
        Parse lines appended since the previous scan.

        Returns:
            UsageDelta; skipped=True when the file is busy or unreadable

        Raises:
            FileNotFoundError: The file does not exist
        """
        key = os.path.abspath(path)
        lock = self._get_path_lock(key)
        if not lock.acquire(timeout=self.lock_timeout):
            lib_logger.debug(f"Scan of {Path(key).name} already running; skipping")
            return UsageDelta(key, skipped=True)
        try:
            return self._scan_locked(key)
        except PermissionError as e:
            lib_logger.debug(f"Cannot read {Path(key).name} this cycle: {e}")
            return UsageDelta(key, skipped=True)
        finally:
            lock.release()

    async def scan_async(self, path: Union[str, Path]) -> UsageDelta:
        return await asyncio.to_thread(self.scan, path)

    def _is_replaced(self, entry: ScanCacheEntry, stat: os.stat_result, f) -> bool:
        if stat.st_size < entry.offset:
            return True
        old_inode = entry.fingerprint.inode
        if old_inode and stat.st_ino and old_inode != stat.st_ino:
            return True
        head_len = entry.fingerprint.head_len
        if stat.st_size < head_len:
            return True
        return _head_digest(f, head_len) != entry.fingerprint.head_digest

    def _scan_locked(self, key: str) -> UsageDelta:
        with open(key, "rb") as f:
            stat = os.fstat(f.fileno())
            entry = self._entries.get(key)
            reset = False

            if entry is not None and self._is_replaced(entry, stat, f):
                lib_logger.debug(f"{Path(key).name} was replaced; rescanning from start")
                entry = None
                reset = True

            if entry is None:
                offset = 0
                base_totals = UsageTotals()
                state = _ParserState()
                parse_errors = 0
                fmt = self.fmt
            else:
                offset = entry.offset
                base_totals = entry.totals
                state = _ParserState(
                    entry.last_model, entry.last_totals, set(entry.seen_ids)
                )
                parse_errors = entry.parse_errors
                fmt = entry.fmt

            f.seek(offset)
            data = f.read(max(0, stat.st_size - offset))
            head_len = min(SCAN_HEAD_DIGEST_BYTES, stat.st_size)
            head_digest = _head_digest(f, head_len)

        # Only complete lines; a trailing partial line waits for the writer
        end = data.rfind(b"\n") + 1
        window = data[:end]

        delta = UsageTotals()
        lines = 0
        new_errors = 0
        for raw_line in window.split(b"\n"):
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            lines += 1
            try:
                obj = json.loads(raw_line)
                if not isinstance(obj, dict):
                    raise ValueError("line is not a JSON object")
                if fmt == "auto":
                    fmt = _detect_format(obj) or "auto"
                parsed = self._parse_line(obj, state, fmt)
            except (ValueError, TypeError) as e:
                # JSONDecodeError and UnicodeDecodeError are ValueErrors
                new_errors += 1
                lib_logger.debug(f"Skipping malformed line in {Path(key).name}: {e}")
                continue
            if parsed is None:
                continue
            event_type, model, counts = parsed
            _price("codex" if event_type == "token_count" else "claude", model, counts)
            delta.add(_day_key(obj), model, event_type, counts)

        new_totals = base_totals.copy()
        new_totals.merge(delta)
        new_offset = offset + end

        self._entries[key] = ScanCacheEntry(
            path=key,
            offset=new_offset,
            fingerprint=Fingerprint(
                size=stat.st_size,
                mtime_ns=stat.st_mtime_ns,
                inode=stat.st_ino,
                head_len=head_len,
                head_digest=head_digest,
            ),
            totals=new_totals,
            fmt=fmt,
            last_model=state.last_model,
            last_totals=state.last_totals,
            seen_ids=frozenset(state.seen_ids),
            parse_errors=parse_errors + new_errors,
        )

        if new_errors:
            lib_logger.warning(f"{new_errors} malformed line(s) in {Path(key).name}")
        return UsageDelta(
            path=key,
            totals=delta,
            lines_parsed=lines,
            parse_errors=new_errors,
            offset=new_offset,
            reset=reset,
        )

    @staticmethod
    def _parse_line(
        obj: Dict[str, Any], state: _ParserState, fmt: str
    ) -> Optional[Tuple[str, str, TokenCounts]]:
        if fmt == "codex":
            return _parse_codex(obj, state)
        if fmt == "claude":
            return _parse_claude(obj, state)
        return None

    # =========================================================================
    # DIRECTORY SCANS
    # =========================================================================

    def scan_directory(
        self,
        root: Optional[Path] = None,
        fmt: Optional[str] = None,
        since_days: Optional[int] = None,
        today: Optional[datetime.date] = None,
    ) -> CostReport:
        """
        Scan every session log under a root and aggregate the totals.

        Args:
            root: Log root; defaults to the CLI's standard location
            fmt: "codex" or "claude"; defaults to the scanner's format
            since_days: Only count usage from the last N days
            today: Reference date (UTC) for the day window

        Returns:
            CostReport over the selected days
        """
        fmt = fmt or self.fmt
        if fmt not in ("codex", "claude"):
            raise ValueError("scan_directory needs an explicit 'codex' or 'claude' format")

        today = today or datetime.datetime.now(datetime.timezone.utc).date()
        since = today - datetime.timedelta(days=since_days) if since_days is not None else None
        report = CostReport(
            fmt=fmt,
            since_day=since.isoformat() if since else None,
            until_day=today.isoformat() if since else None,
        )

        if fmt == "codex":
            roots = [root] if root is not None else [codex_sessions_root()]
            files = []
            for candidate in roots:
                files.extend(list_codex_session_files(candidate, since, today))
        else:
            roots = [root] if root is not None else claude_projects_roots()
            files = []
            for candidate in roots:
                files.extend(list_claude_project_files(candidate, since))

        for file_path in files:
            try:
                delta = self.scan(file_path)
            except FileNotFoundError:
                report.files_skipped += 1
                continue
            if delta.skipped:
                report.files_skipped += 1
                continue
            report.files_scanned += 1
            report.parse_errors += delta.parse_errors
            report.totals.merge(
                self.totals_for(file_path).filter_days(report.since_day, report.until_day)
            )

        lib_logger.info(
            f"Scanned {report.files_scanned} {fmt} log(s): "
            f"${report.total_cost_usd:.2f}, {report.totals.total.total_tokens} tokens"
        )
        return report

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def load(self) -> int:
        if self._persist_path is None:
            return 0
        data = read_json(self._persist_path)
        if not isinstance(data, dict):
            return 0
        loaded = 0
        for path, raw in (data.get("files") or {}).items():
            try:
                self._entries[path] = ScanCacheEntry.from_dict(path, raw)
                loaded += 1
            except (KeyError, TypeError, ValueError) as e:
                lib_logger.debug(f"Dropping unreadable scan cache entry for {path}: {e}")
        return loaded

    def save(self) -> None:
        if self._persist_path is None:
            return
        entries = dict(self._entries)
        write_json_atomic(
            self._persist_path,
            {"version": 1, "files": {path: e.to_dict() for path, e in entries.items()}},
        )


# =============================================================================
# LOG LOCATIONS
# =============================================================================


def codex_sessions_root() -> Path:
    codex_home = os.environ.get("CODEX_HOME", "").strip()
    if codex_home:
        return Path(codex_home) / "sessions"
    return Path.home() / ".codex" / "sessions"


def claude_projects_roots() -> List[Path]:
    roots = []
    config_dir = os.environ.get("CLAUDE_CONFIG_DIR", "").strip()
    if config_dir:
        roots.append(Path(config_dir) / "projects")
    home = Path.home()
    for candidate in (home / ".claude" / "projects", home / ".config" / "claude" / "projects"):
        if candidate not in roots:
            roots.append(candidate)
    return [root for root in roots if root.is_dir()]


def list_codex_session_files(
    root: Path, since: Optional[datetime.date], until: datetime.date
) -> List[Path]:
    """Session files under root/YYYY/MM/DD, one day of slack on each side."""
    if not root.is_dir():
        return []
    if since is None:
        return sorted(root.rglob("*.jsonl"))
    files = []
    day = since - datetime.timedelta(days=1)
    last = until + datetime.timedelta(days=1)
    while day <= last:
        day_dir = root / f"{day.year:04d}" / f"{day.month:02d}" / f"{day.day:02d}"
        if day_dir.is_dir():
            files.extend(sorted(p for p in day_dir.iterdir() if p.suffix.lower() == ".jsonl"))
        day += datetime.timedelta(days=1)
    return files


def list_claude_project_files(root: Path, since: Optional[datetime.date]) -> List[Path]:
    """Project logs under root, skipping files untouched since the cutoff."""
    if not root.is_dir():
        return []
    files = sorted(root.rglob("*.jsonl"))
    if since is None:
        return files
    cutoff = datetime.datetime.combine(since, datetime.time.min, datetime.timezone.utc).timestamp()
    recent = []
    for path in files:
        try:
            if path.stat().st_mtime >= cutoff:
                recent.append(path)
        except OSError:
            continue
    return recent
