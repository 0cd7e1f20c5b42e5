# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Shared type definitions for the quota library.

This module contains the dataclasses used across the browser, credentials,
accounts, fetch and cost packages. Credentials and fetch results are tagged
unions: a handful of small frozen dataclasses joined by a Union alias and
dispatched with isinstance.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

from .errors import ClassifiedError, ErrorKind


# =============================================================================
# CREDENTIAL TYPES
# =============================================================================


class CredentialKind:
    """
    Authentication channel kinds.

    Also used as the strategy kind: each strategy consumes exactly one kind.
    """

    OAUTH_TOKEN = "oauth_token"
    COOKIE_HEADER = "cookie_header"
    API_KEY = "api_key"
    CLI_SESSION = "cli_session"

    ALL = (OAUTH_TOKEN, COOKIE_HEADER, API_KEY, CLI_SESSION)

    @classmethod
    def validate(cls, kind: str) -> str:
        if kind not in cls.ALL:
            raise ValueError(f"Unknown credential kind: {kind!r}")
        return kind


@dataclass(frozen=True)
class OAuthToken:
    """OAuth access token, optionally with a refresh token."""

    kind: ClassVar[str] = CredentialKind.OAUTH_TOKEN

    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None
    schema_version: int = 1

    @property
    def secret(self) -> str:
        return self.access_token


@dataclass(frozen=True)
class CookieHeader:
    """A manually supplied, already-normalized Cookie header value."""

    kind: ClassVar[str] = CredentialKind.COOKIE_HEADER

    header: str
    expires_at: Optional[float] = None
    schema_version: int = 1

    @property
    def secret(self) -> str:
        return self.header


@dataclass(frozen=True)
class ApiKey:
    """A static API key."""

    kind: ClassVar[str] = CredentialKind.API_KEY

    key: str
    expires_at: Optional[float] = None
    schema_version: int = 1

    @property
    def secret(self) -> str:
        return self.key


@dataclass(frozen=True)
class CliSessionRef:
    """
    Reference to a token stored on disk by a provider's own CLI.

    The token itself is read at fetch time so a CLI re-login is picked up
    without touching our store.
    """

    kind: ClassVar[str] = CredentialKind.CLI_SESSION

    path: str
    token_field: str = "access_token"
    expires_at: Optional[float] = None
    schema_version: int = 1

    @property
    def secret(self) -> str:
        return self.path


Credential = Union[OAuthToken, CookieHeader, ApiKey, CliSessionRef]


def credential_is_expired(credential: Credential, now: Optional[float] = None) -> bool:
    """Return True if the credential carries an expiry that has passed."""
    if credential.expires_at is None:
        return False
    return credential.expires_at <= (now if now is not None else time.time())


# =============================================================================
# CONFIGURATION TYPES
# =============================================================================


@dataclass(frozen=True)
class StrategyConfig:
    """
    One step of a provider's fetch plan.

    Defines which channel to try and how patiently to try it.
    """

    kind: str
    strategy_id: str = ""
    timeout: float = 30.0  # seconds per attempt
    max_retries: int = 2  # extra attempts for transient errors
    backoff_base: float = 1.0
    backoff_max: float = 30.0

    def __post_init__(self):
        CredentialKind.validate(self.kind)
        if not self.strategy_id:
            object.__setattr__(self, "strategy_id", self.kind)
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.timeout <= 0:
            raise ValueError("timeout must be > 0")


@dataclass(frozen=True)
class ProviderConfig:
    """
    Complete configuration for a provider.

    Loaded once at startup by load_provider_table() and never mutated.
    """

    provider_id: str
    display_name: str = ""
    enabled: bool = True
    strategies: Tuple[StrategyConfig, ...] = ()
    cookie_domains: Tuple[str, ...] = ()
    cookie_name: Optional[str] = None  # Wraps bare session tokens

    def __post_init__(self):
        if not self.display_name:
            object.__setattr__(self, "display_name", self.provider_id)
        object.__setattr__(self, "strategies", tuple(self.strategies))
        object.__setattr__(self, "cookie_domains", tuple(self.cookie_domains))

    @property
    def strategy_kinds(self) -> List[str]:
        return [s.kind for s in self.strategies]

    def supports(self, kind: str) -> bool:
        return kind in self.strategy_kinds


# =============================================================================
# ACCOUNT TYPES
# =============================================================================


@dataclass
class Account:
    """
    A single account for a provider.

    Holds at most one credential per kind. Accounts of the same provider are
    fetched independently.
    """

    provider_id: str
    label: str
    account_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    added_at: float = field(default_factory=time.time)
    last_used: Optional[float] = None
    credentials: Dict[str, Credential] = field(default_factory=dict)

    def credential(self, kind: str) -> Optional[Credential]:
        return self.credentials.get(kind)

    def set_credential(self, credential: Credential) -> None:
        self.credentials[credential.kind] = credential

    def mark_used(self) -> None:
        self.last_used = time.time()

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider_id, self.account_id)


# =============================================================================
# SNAPSHOT TYPES
# =============================================================================


@dataclass(frozen=True)
class RateWindow:
    """A usage window as reported by a provider (e.g. 5h session, weekly)."""

    used_percent: float
    window_minutes: Optional[int] = None
    resets_at: Optional[float] = None
    label: Optional[str] = None

    @property
    def remaining_percent(self) -> float:
        return max(0.0, 100.0 - self.used_percent)


@dataclass(frozen=True)
class UsageSnapshot:
    """
    Normalized usage for one provider account.

    This is what the UI/CLI layer consumes; adapters fill whatever their
    channel exposes and leave the rest as None.
    """

    primary: Optional[RateWindow] = None
    secondary: Optional[RateWindow] = None
    tertiary: Optional[RateWindow] = None
    credits_remaining: Optional[float] = None
    cost_usd: Optional[float] = None
    account_email: Optional[str] = None
    plan: Optional[str] = None
    source_label: Optional[str] = None
    updated_at: float = field(default_factory=time.time)
    extra: Dict[str, Any] = field(default_factory=dict)

    HEADLINE_FIELDS: ClassVar[Tuple[str, ...]] = (
        "primary",
        "secondary",
        "credits_remaining",
        "account_email",
        "plan",
    )

    def missing_fields(self) -> List[str]:
        """Headline fields this snapshot did not fill."""
        return [name for name in self.HEADLINE_FIELDS if getattr(self, name) is None]

    def merge(self, other: "UsageSnapshot") -> "UsageSnapshot":
        """
        Fill this snapshot's gaps from another one.

        Values already present win; extra dicts are combined with ours taking
        precedence.
        """
        updates: Dict[str, Any] = {}
        for name in (
            "primary",
            "secondary",
            "tertiary",
            "credits_remaining",
            "cost_usd",
            "account_email",
            "plan",
        ):
            if getattr(self, name) is None and getattr(other, name) is not None:
                updates[name] = getattr(other, name)
        merged_extra = dict(other.extra)
        merged_extra.update(self.extra)
        updates["extra"] = merged_extra
        updates["updated_at"] = max(self.updated_at, other.updated_at)
        return replace(self, **updates)


# =============================================================================
# FETCH RESULT TYPES
# =============================================================================


@dataclass(frozen=True)
class FetchAttempt:
    """Record of one strategy execution (all of its retries)."""

    strategy_id: str
    kind: str
    was_available: bool
    attempts: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0
    outcome: str = "failed"  # "success", "partial", "failed", "unavailable"


@dataclass(frozen=True)
class StrategyOutcome:
    """
    What a strategy returns when it got data.

    A non-empty warning marks the data as usable but incomplete.
    """

    snapshot: UsageSnapshot
    warning: Optional[str] = None

    @property
    def is_partial(self) -> bool:
        return self.warning is not None


@dataclass(frozen=True)
class Success:
    snapshot: UsageSnapshot
    strategy_id: str = ""
    attempts: Tuple[FetchAttempt, ...] = ()

    is_success: ClassVar[bool] = True
    is_cancelled: ClassVar[bool] = False


@dataclass(frozen=True)
class PartialSuccess:
    snapshot: UsageSnapshot
    warning: str
    strategy_id: str = ""
    attempts: Tuple[FetchAttempt, ...] = ()

    is_success: ClassVar[bool] = True
    is_cancelled: ClassVar[bool] = False


@dataclass(frozen=True)
class Failure:
    error: ClassifiedError
    attempts: Tuple[FetchAttempt, ...] = ()

    is_success: ClassVar[bool] = False

    @property
    def kind(self) -> str:
        return self.error.error_type

    @property
    def is_cancelled(self) -> bool:
        return self.error.error_type == ErrorKind.CANCELLED


FetchResult = Union[Success, PartialSuccess, Failure]
