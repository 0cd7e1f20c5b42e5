# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential schema migration.

Stored credentials carry a schema_version. At startup every record is walked
through an ordered table of version-to-version steps until it reaches
LATEST_SCHEMA_VERSION. Each step works on a copy of the payload and the
result is persisted before the next step runs, so a crash mid-chain resumes
from the last persisted version.

Schema history:
    v1  legacy token account: {"token": "...", "expires": <ms>?}
    v2  {"kind": <credential kind>, "secret": "...", "expires": <ms>?}
    v3  secret normalized (no "Bearer " / "Cookie:"), expiry as "expires_at"
        in unix seconds
    v4  bare cookie tokens wrapped in the provider's cookie name, OAuth
        "access:refresh" secrets split into "secret" + "refresh_token"
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..browser.cookie_cache import normalize_cookie_header
from ..core.errors import ErrorKind, MigrationFailed, mask_credential
from ..core.types import CredentialKind, ProviderConfig

lib_logger = logging.getLogger("quota_library")

LATEST_SCHEMA_VERSION = 4


@dataclass(frozen=True)
class CredentialRecord:
    """
    One stored credential, keyed by (provider, account, kind).

    migrated_seq is a store-wide monotonic marker written every time the
    record is migrated.
    """

    provider_id: str
    account_id: str
    kind: str
    schema_version: int
    payload: Dict[str, Any] = field(default_factory=dict)
    migrated_seq: int = 0

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.provider_id, self.account_id, self.kind)


@dataclass(frozen=True)
class MigrationContext:
    """Provider facts a step may need (kind inference, cookie wrapping)."""

    provider_id: str
    cookie_name: Optional[str] = None
    supported_kinds: Tuple[str, ...] = ()

    @classmethod
    def for_provider(cls, provider: Optional[ProviderConfig], provider_id: str) -> "MigrationContext":
        if provider is None:
            return cls(provider_id)
        return cls(
            provider_id=provider.provider_id,
            cookie_name=provider.cookie_name,
            supported_kinds=tuple(provider.strategy_kinds),
        )


@dataclass(frozen=True)
class MigrationStep:
    from_version: int
    to_version: int
    name: str
    transform: Callable[[Dict[str, Any], MigrationContext], Dict[str, Any]]

    def __post_init__(self):
        if self.to_version <= self.from_version:
            raise ValueError(
                f"Step {self.name} must move forward ({self.from_version} -> {self.to_version})"
            )


# =============================================================================
# OUTCOMES
# =============================================================================


@dataclass(frozen=True)
class Unchanged:
    record: CredentialRecord
    warning: Optional[str] = None


@dataclass(frozen=True)
class Migrated:
    record: CredentialRecord
    steps: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Failed:
    error: MigrationFailed
    record: CredentialRecord  # last successfully persisted state

    @property
    def kind(self) -> str:
        return ErrorKind.MIGRATION_FAILED


MigrationOutcome = Union[Unchanged, Migrated, Failed]


# =============================================================================
# BUILT-IN STEPS
# =============================================================================


def _strip_bearer(value: str) -> str:
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def _looks_like_cookie(value: str) -> bool:
    return "cookie:" in value.lower() or "=" in value


def infer_kind(token: str, context: MigrationContext) -> str:
    """Guess the credential kind of a legacy token."""
    trimmed = token.strip()
    lower = trimmed.lower()
    if not _looks_like_cookie(trimmed) and (
        lower.startswith("bearer ") or _strip_bearer(lower).startswith("sk-ant-oat")
    ):
        return CredentialKind.OAUTH_TOKEN
    if _looks_like_cookie(trimmed):
        return CredentialKind.COOKIE_HEADER
    if context.cookie_name or CredentialKind.COOKIE_HEADER in context.supported_kinds:
        return CredentialKind.COOKIE_HEADER
    if trimmed.endswith(".json") and ("/" in trimmed or "\\" in trimmed):
        return CredentialKind.CLI_SESSION
    return CredentialKind.API_KEY


def _v1_to_v2(payload: Dict[str, Any], context: MigrationContext) -> Dict[str, Any]:
    token = payload.pop("token", None)
    if not isinstance(token, str) or not token.strip():
        raise ValueError("legacy record has no token")
    payload["secret"] = token
    payload.setdefault("kind", infer_kind(token, context))
    return payload


def _v2_to_v3(payload: Dict[str, Any], context: MigrationContext) -> Dict[str, Any]:
    kind = CredentialKind.validate(payload["kind"])
    secret = str(payload["secret"]).strip()
    if kind == CredentialKind.OAUTH_TOKEN:
        secret = _strip_bearer(secret)
    elif kind == CredentialKind.COOKIE_HEADER and _looks_like_cookie(secret):
        secret = normalize_cookie_header(secret)
    if not secret:
        raise ValueError("secret is empty after normalization")
    payload["secret"] = secret

    expires = payload.pop("expires", None)
    if expires is not None:
        payload["expires_at"] = float(expires) / 1000.0
    return payload


def _v3_to_v4(payload: Dict[str, Any], context: MigrationContext) -> Dict[str, Any]:
    kind = payload["kind"]
    secret = payload["secret"]
    if kind == CredentialKind.COOKIE_HEADER and "=" not in secret:
        if not context.cookie_name:
            raise ValueError(
                f"bare cookie token for {context.provider_id} has no cookie name"
            )
        payload["secret"] = f"{context.cookie_name}={secret}"
    elif kind == CredentialKind.OAUTH_TOKEN and ":" in secret and not payload.get("refresh_token"):
        access, refresh = secret.split(":", 1)
        payload["secret"] = access
        if refresh:
            payload["refresh_token"] = refresh
    return payload


DEFAULT_STEPS: Tuple[MigrationStep, ...] = (
    MigrationStep(1, 2, "token_to_secret", _v1_to_v2),
    MigrationStep(2, 3, "normalize_secret", _v2_to_v3),
    MigrationStep(3, 4, "wrap_and_split", _v3_to_v4),
)


# =============================================================================
# ENGINE
# =============================================================================


class MigrationEngine:
    """
    Applies the minimal chain of steps that brings a record up to date.

    Usage:
        engine = MigrationEngine(persist=store.write_record, seq_source=store.next_seq)
        for outcome in engine.migrate_all(store.iter_records()):
            ...
    """

    def __init__(
        self,
        steps: Sequence[MigrationStep] = DEFAULT_STEPS,
        persist: Optional[Callable[[CredentialRecord], None]] = None,
        latest_version: Optional[int] = None,
        providers: Optional[Dict[str, ProviderConfig]] = None,
        seq_source: Optional[Callable[[], int]] = None,
    ):
        self.steps = tuple(steps)
        self.latest_version = (
            latest_version
            if latest_version is not None
            else max((s.to_version for s in self.steps), default=1)
        )
        self._persist = persist
        self._providers = providers or {}
        if seq_source is None:
            counter = itertools.count(1)
            seq_source = lambda: next(counter)  # noqa: E731
        self._seq_source = seq_source

    def plan(self, from_version: int) -> List[MigrationStep]:
        """
        Minimal chain of steps from a version to the latest.

        Where several steps start at the same version, the one that jumps
        furthest (without overshooting) is taken.

        Raises:
            MigrationFailed: A version in the chain has no outgoing step
        """
        chain = []
        version = from_version
        while version < self.latest_version:
            candidates = [
                s
                for s in self.steps
                if s.from_version == version and s.to_version <= self.latest_version
            ]
            if not candidates:
                raise MigrationFailed(
                    f"No migration step from version {version}", from_version=version
                )
            step = max(candidates, key=lambda s: s.to_version)
            chain.append(step)
            version = step.to_version
        return chain

    def migrate(self, record: CredentialRecord) -> MigrationOutcome:
        """
        Bring one record to the latest schema version.

        Returns:
            Unchanged if already current (or newer than known), Migrated with
            the final record, or Failed with the last persisted record
        """
        if record.schema_version == self.latest_version:
            return Unchanged(record)

        if record.schema_version > self.latest_version:
            warning = (
                f"{record.provider_id} credential has schema v{record.schema_version}, "
                f"newer than supported v{self.latest_version}; left untouched"
            )
            lib_logger.warning(warning)
            return Unchanged(record, warning=warning)

        try:
            chain = self.plan(record.schema_version)
        except MigrationFailed as e:
            lib_logger.warning(f"Cannot migrate {record.provider_id} credential: {e.message}")
            return Failed(e, record)

        context = MigrationContext.for_provider(
            self._providers.get(record.provider_id), record.provider_id
        )
        current = record
        applied = []
        for step in chain:
            try:
                payload = step.transform(copy.deepcopy(current.payload), context)
                if not isinstance(payload, dict):
                    raise TypeError(f"step returned {type(payload).__name__}")
            except Exception as e:
                error = MigrationFailed(
                    f"Step {step.name} (v{step.from_version}->v{step.to_version}) failed: {e}",
                    from_version=current.schema_version,
                )
                lib_logger.warning(
                    f"Migration of {record.provider_id} credential "
                    f"{mask_credential(record.account_id)} stopped at v{current.schema_version}: {e}"
                )
                return Failed(error, current)

            migrated = replace(
                current,
                kind=payload.get("kind", current.kind) or current.kind,
                schema_version=step.to_version,
                payload=payload,
                migrated_seq=self._seq_source(),
            )

            if self._persist is not None:
                try:
                    self._persist(migrated)
                except (OSError, KeyError, ValueError) as e:
                    error = MigrationFailed(
                        f"Could not persist v{step.to_version}: {e}",
                        from_version=current.schema_version,
                    )
                    lib_logger.error(f"Failed to persist migrated credential: {e}")
                    return Failed(error, current)

            current = migrated
            applied.append(step.name)

        lib_logger.info(
            f"Migrated {record.provider_id} credential v{record.schema_version} -> "
            f"v{current.schema_version} ({', '.join(applied)})"
        )
        return Migrated(current, tuple(applied))

    def migrate_all(self, records: Iterable[CredentialRecord]) -> List[MigrationOutcome]:
        """Migrate every record; one record failing never affects another."""
        return [self.migrate(record) for record in records]
