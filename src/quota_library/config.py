# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Runtime configuration.

Values come from the environment, after an optional `.env` in the data
directory has been loaded (existing variables win). The provider table is
built from the defaults below, then overridden per provider by
`providers.json` in the data directory.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from .core.constants import (
    DEFAULT_BACKOFF_BASE,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_COOKIE_STALENESS_SECONDS,
    DEFAULT_MAX_ACCOUNTS_PER_PROVIDER,
    DEFAULT_MAX_CONCURRENT_FETCHES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_STORE_CONCURRENCY,
    DEFAULT_STRATEGY_TIMEOUT,
    PROVIDERS_FILE,
)
from .core.types import CredentialKind, ProviderConfig, StrategyConfig
from .utils.atomic import read_json
from .utils.paths import get_data_dir

lib_logger = logging.getLogger("quota_library")


def _env_int(name: str, default: int) -> int:
    """Parse an integer from environment variable with fallback to default."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid integer for {name}: {raw!r}; using {default}")
        return default


def _env_float(name: str, default: float) -> float:
    """Parse a float from environment variable with fallback to default."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid number for {name}: {raw!r}; using {default}")
        return default


def _env_list(name: str) -> Optional[List[str]]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class CoreConfig:
    data_dir: Path
    cookie_staleness_seconds: int = DEFAULT_COOKIE_STALENESS_SECONDS
    max_concurrent_fetches: int = DEFAULT_MAX_CONCURRENT_FETCHES
    max_store_concurrency: int = DEFAULT_MAX_STORE_CONCURRENCY
    default_timeout: float = DEFAULT_STRATEGY_TIMEOUT
    default_max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX
    max_accounts_per_provider: int = DEFAULT_MAX_ACCOUNTS_PER_PROVIDER
    enabled_providers: Optional[List[str]] = field(default=None)
    log_level: str = "INFO"


def load_core_config(data_dir: Optional[Path] = None, load_env_file: bool = True) -> CoreConfig:
    """
    Build the configuration from the environment.

    Args:
        data_dir: Overrides QUOTA_DATA_DIR / the platform default
        load_env_file: Load `<data_dir>/.env` first (never overriding
            variables that are already set)
    """
    data_dir = Path(data_dir) if data_dir is not None else get_data_dir()
    env_path = data_dir / ".env"
    if load_env_file and env_path.is_file():
        load_dotenv(dotenv_path=env_path, override=False)
        lib_logger.debug(f"Loaded environment from {env_path}")

    return CoreConfig(
        data_dir=data_dir,
        cookie_staleness_seconds=max(
            0, _env_int("QUOTA_COOKIE_STALENESS_SECONDS", DEFAULT_COOKIE_STALENESS_SECONDS)
        ),
        max_concurrent_fetches=max(
            1, _env_int("QUOTA_MAX_CONCURRENT_FETCHES", DEFAULT_MAX_CONCURRENT_FETCHES)
        ),
        max_store_concurrency=max(
            1, _env_int("QUOTA_MAX_STORE_CONCURRENCY", DEFAULT_MAX_STORE_CONCURRENCY)
        ),
        default_timeout=_env_float("QUOTA_DEFAULT_TIMEOUT", DEFAULT_STRATEGY_TIMEOUT),
        default_max_retries=max(0, _env_int("QUOTA_DEFAULT_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
        backoff_base=_env_float("QUOTA_BACKOFF_BASE", DEFAULT_BACKOFF_BASE),
        backoff_max=_env_float("QUOTA_BACKOFF_MAX", DEFAULT_BACKOFF_MAX),
        max_accounts_per_provider=max(
            1, _env_int("QUOTA_MAX_ACCOUNTS_PER_PROVIDER", DEFAULT_MAX_ACCOUNTS_PER_PROVIDER)
        ),
        enabled_providers=_env_list("QUOTA_ENABLED_PROVIDERS"),
        log_level=os.environ.get("QUOTA_LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


# =============================================================================
# PROVIDER TABLE
# =============================================================================

_OAUTH = CredentialKind.OAUTH_TOKEN
_COOKIE = CredentialKind.COOKIE_HEADER
_API_KEY = CredentialKind.API_KEY
_CLI = CredentialKind.CLI_SESSION

# Same shape as a providers.json entry; strategies run in list order
DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "codex": {
        "display_name": "Codex",
        "strategies": [_OAUTH, _CLI, _COOKIE],
        "cookie_domains": ["chatgpt.com"],
    },
    "claude": {
        "display_name": "Claude",
        "strategies": [_OAUTH, _COOKIE, _CLI],
        "cookie_domains": ["claude.ai"],
        "cookie_name": "sessionKey",
    },
    "cursor": {
        "display_name": "Cursor",
        "strategies": [_COOKIE],
        "cookie_domains": ["cursor.com"],
    },
    "factory": {
        "display_name": "Factory",
        "strategies": [_COOKIE],
        "cookie_domains": ["factory.ai"],
    },
    "opencode": {
        "display_name": "OpenCode",
        "strategies": [_COOKIE],
        "cookie_domains": ["opencode.ai"],
    },
    "zai": {
        "display_name": "z.ai",
        "strategies": [_API_KEY],
    },
    "minimax": {
        "display_name": "MiniMax",
        "strategies": [_COOKIE, _API_KEY],
        "cookie_domains": ["minimax.io"],
    },
    "augment": {
        "display_name": "Augment",
        "strategies": [_COOKIE],
        "cookie_domains": ["augmentcode.com"],
    },
    "copilot": {
        "display_name": "Copilot",
        "strategies": [_OAUTH],
    },
    "gemini": {
        "display_name": "Gemini",
        "strategies": [_CLI, _OAUTH],
    },
}


def _build_strategy(raw: Any, config: CoreConfig) -> StrategyConfig:
    if isinstance(raw, str):
        raw = {"kind": raw}
    return StrategyConfig(
        kind=raw["kind"],
        strategy_id=raw.get("strategy_id", ""),
        timeout=float(raw.get("timeout", config.default_timeout)),
        max_retries=int(raw.get("max_retries", config.default_max_retries)),
        backoff_base=float(raw.get("backoff_base", config.backoff_base)),
        backoff_max=float(raw.get("backoff_max", config.backoff_max)),
    )


def _build_provider(provider_id: str, raw: Dict[str, Any], config: CoreConfig) -> ProviderConfig:
    return ProviderConfig(
        provider_id=provider_id,
        display_name=raw.get("display_name", ""),
        enabled=bool(raw.get("enabled", True)),
        strategies=tuple(_build_strategy(s, config) for s in raw.get("strategies", [])),
        cookie_domains=tuple(raw.get("cookie_domains", [])),
        cookie_name=raw.get("cookie_name"),
    )


def load_provider_table(
    config: CoreConfig, overrides_path: Optional[Path] = None
) -> Dict[str, ProviderConfig]:
    """
    Build the immutable provider table.

    Entries in providers.json replace fields of the built-in entry with the
    same id, or add new providers. QUOTA_ENABLED_PROVIDERS, when set, limits
    which providers are enabled.

    Returns:
        provider_id -> ProviderConfig, in table order
    """
    raw_table: Dict[str, Dict[str, Any]] = {
        pid: dict(entry) for pid, entry in DEFAULT_PROVIDERS.items()
    }

    path = overrides_path if overrides_path is not None else config.data_dir / PROVIDERS_FILE
    overrides = read_json(path) if path.exists() else None
    if isinstance(overrides, dict):
        for pid, entry in (overrides.get("providers") or {}).items():
            if not isinstance(entry, dict):
                lib_logger.warning(f"Ignoring provider override for '{pid}': not an object")
                continue
            merged = raw_table.setdefault(pid.lower(), {})
            merged.update(entry)

    table: Dict[str, ProviderConfig] = {}
    for pid, entry in raw_table.items():
        if config.enabled_providers is not None:
            entry = {**entry, "enabled": pid in config.enabled_providers}
        try:
            table[pid] = _build_provider(pid, entry, config)
        except (KeyError, TypeError, ValueError) as e:
            lib_logger.warning(f"Invalid configuration for provider '{pid}': {e}")
    return table
