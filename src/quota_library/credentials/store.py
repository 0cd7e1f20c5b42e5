# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Persistent credential store (credentials.json).

File layout:
    {
      "version": 1,
      "migrated_seq": 7,
      "providers": {
        "claude": {
          "version": 1,
          "active_index": 0,
          "accounts": [
            {
              "id": "...", "label": "Work", "added_at": 1700000000,
              "last_used": 1700003600,
              "credentials": {
                "cookie_header": {"schema_version": 4, "migrated_seq": 3,
                                  "payload": {"kind": "cookie_header", "secret": "..."}}
              }
            }
          ]
        }
      }
    }

Legacy token-account entries ({"id", "label", "token", "added_at"}) are read
as schema v1 records; the migration engine upgrades them in place.
"""

import copy
import logging
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..core.constants import CREDENTIALS_FILE
from ..core.types import (
    Account,
    ApiKey,
    CliSessionRef,
    CookieHeader,
    Credential,
    CredentialKind,
    OAuthToken,
    ProviderConfig,
)
from ..utils.atomic import read_json, write_json_atomic
from ..utils.paths import get_data_file
from .migration import LATEST_SCHEMA_VERSION, CredentialRecord

lib_logger = logging.getLogger("quota_library")

STORE_FORMAT_VERSION = 1
LEGACY_FIELDS = ("token", "expires")


def record_to_credential(record: CredentialRecord) -> Credential:
    """
    Build a Credential from a current-schema record.

    Raises:
        ValueError: Record is not at the latest schema or has an unknown kind
    """
    if record.schema_version != LATEST_SCHEMA_VERSION:
        raise ValueError(
            f"record at v{record.schema_version}, expected v{LATEST_SCHEMA_VERSION}"
        )
    payload = record.payload
    secret = payload["secret"]
    expires_at = payload.get("expires_at")
    version = record.schema_version

    if record.kind == CredentialKind.OAUTH_TOKEN:
        return OAuthToken(
            access_token=secret,
            refresh_token=payload.get("refresh_token"),
            expires_at=expires_at,
            schema_version=version,
        )
    if record.kind == CredentialKind.COOKIE_HEADER:
        return CookieHeader(header=secret, expires_at=expires_at, schema_version=version)
    if record.kind == CredentialKind.API_KEY:
        return ApiKey(key=secret, expires_at=expires_at, schema_version=version)
    if record.kind == CredentialKind.CLI_SESSION:
        return CliSessionRef(
            path=secret,
            token_field=payload.get("token_field", "access_token"),
            expires_at=expires_at,
            schema_version=version,
        )
    raise ValueError(f"Unknown credential kind: {record.kind!r}")


def credential_to_payload(credential: Credential) -> Dict[str, Any]:
    """Inverse of record_to_credential for the payload part."""
    payload: Dict[str, Any] = {"kind": credential.kind, "secret": credential.secret}
    if credential.expires_at is not None:
        payload["expires_at"] = credential.expires_at
    if isinstance(credential, OAuthToken) and credential.refresh_token:
        payload["refresh_token"] = credential.refresh_token
    if isinstance(credential, CliSessionRef):
        payload["token_field"] = credential.token_field
    return payload


class CredentialStore:
    """
    Reads and writes credentials.json. Every write is an atomic replace.

    Thread-safe; the manager drives it from worker threads during startup.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_data_file(CREDENTIALS_FILE)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self._loaded = False

    # =========================================================================
    # LOADING / SAVING
    # =========================================================================

    def load(self) -> None:
        with self._lock:
            self._load_locked()
        lib_logger.debug(
            f"Loaded credential store with {len(self._data['providers'])} provider(s)"
        )

    def _load_locked(self) -> None:
        data = read_json(self.path)
        if not isinstance(data, dict):
            data = {}
        data.setdefault("version", STORE_FORMAT_VERSION)
        data.setdefault("migrated_seq", 0)
        if not isinstance(data.get("providers"), dict):
            data["providers"] = {}
        self._data = data
        self._loaded = True

    def _ensure_loaded(self) -> None:
        with self._lock:
            if not self._loaded:
                self._load_locked()

    def _save_locked(self, backup: Dict[str, Any]) -> None:
        """Write `_data`, putting `backup` back in memory if the write fails."""
        try:
            write_json_atomic(self.path, self._data)
        except Exception:
            self._data = backup
            raise

    def _provider_entry(self, provider_id: str) -> Dict[str, Any]:
        providers = self._data["providers"]
        entry = providers.get(provider_id)
        if not isinstance(entry, dict):
            entry = {"version": 1, "accounts": [], "active_index": 0}
            providers[provider_id] = entry
        entry.setdefault("accounts", [])
        entry.setdefault("active_index", 0)
        return entry

    def _find_account(self, provider_id: str, account_id: str) -> Optional[Dict[str, Any]]:
        entry = self._data["providers"].get(provider_id)
        if not isinstance(entry, dict):
            return None
        for account in entry.get("accounts", []):
            if str(account.get("id")) == account_id:
                return account
        return None

    # =========================================================================
    # RECORDS
    # =========================================================================

    def next_seq(self) -> int:
        """Allocate the next store-wide migration sequence number."""
        with self._lock:
            if not self._loaded:
                self._load_locked()
            self._data["migrated_seq"] = int(self._data.get("migrated_seq", 0)) + 1
            return self._data["migrated_seq"]

    def iter_records(self) -> Iterator[CredentialRecord]:
        """Yield every stored credential, legacy entries as v1 records."""
        self._ensure_loaded()
        with self._lock:
            snapshot = []
            for provider_id, entry in self._data["providers"].items():
                if not isinstance(entry, dict):
                    continue
                for account in entry.get("accounts", []):
                    account_id = str(account.get("id", ""))
                    if not account_id:
                        continue
                    if "token" in account and not account.get("credentials"):
                        payload = {k: account[k] for k in LEGACY_FIELDS if k in account}
                        snapshot.append(
                            CredentialRecord(provider_id, account_id, "", 1, payload, 0)
                        )
                        continue
                    for kind, stored in (account.get("credentials") or {}).items():
                        if not isinstance(stored, dict):
                            continue
                        snapshot.append(
                            CredentialRecord(
                                provider_id=provider_id,
                                account_id=account_id,
                                kind=kind,
                                schema_version=int(stored.get("schema_version", 1)),
                                payload=dict(stored.get("payload") or {}),
                                migrated_seq=int(stored.get("migrated_seq", 0)),
                            )
                        )
        return iter(snapshot)

    def write_record(self, record: CredentialRecord) -> None:
        """
        Persist one record atomically.

        Legacy fields of the owning account are dropped once the record has a
        kind. Raises OSError if the file cannot be written.
        """
        self._ensure_loaded()
        with self._lock:
            account = self._find_account(record.provider_id, record.account_id)
            if account is None:
                raise KeyError(
                    f"No account {record.account_id} for {record.provider_id}"
                )
            if not record.kind:
                raise ValueError("record has no credential kind")

            existing = (account.get("credentials") or {}).get(record.kind)
            if isinstance(existing, dict) and int(existing.get("schema_version", 1)) > record.schema_version:
                raise ValueError(
                    f"refusing to downgrade {record.kind} from "
                    f"v{existing['schema_version']} to v{record.schema_version}"
                )

            backup = copy.deepcopy(self._data)
            for legacy_field in LEGACY_FIELDS:
                account.pop(legacy_field, None)
            credentials = account.setdefault("credentials", {})
            credentials[record.kind] = {
                "schema_version": record.schema_version,
                "migrated_seq": record.migrated_seq,
                "payload": record.payload,
            }
            self._data["migrated_seq"] = max(
                int(self._data.get("migrated_seq", 0)), record.migrated_seq
            )
            self._save_locked(backup)

    # =========================================================================
    # ACCOUNTS
    # =========================================================================

    def load_accounts(
        self, providers: Optional[Dict[str, ProviderConfig]] = None
    ) -> List[Account]:
        """
        Build Account objects from current-schema records.

        Records that haven't reached the latest schema are left out; the
        account itself is still returned.
        """
        self._ensure_loaded()
        records: Dict[tuple, List[CredentialRecord]] = {}
        for record in self.iter_records():
            records.setdefault((record.provider_id, record.account_id), []).append(record)

        accounts = []
        with self._lock:
            for provider_id, entry in self._data["providers"].items():
                if providers is not None and provider_id not in providers:
                    lib_logger.debug(f"Skipping accounts of unknown provider '{provider_id}'")
                    continue
                for raw in entry.get("accounts", []):
                    account_id = str(raw.get("id", ""))
                    if not account_id:
                        continue
                    account = Account(
                        provider_id=provider_id,
                        label=str(raw.get("label") or account_id[:8]),
                        account_id=account_id,
                        added_at=float(raw.get("added_at") or time.time()),
                        last_used=raw.get("last_used"),
                    )
                    for record in records.get((provider_id, account_id), []):
                        try:
                            account.set_credential(record_to_credential(record))
                        except (KeyError, ValueError) as e:
                            lib_logger.warning(
                                f"Ignoring {record.kind or 'legacy'} credential of "
                                f"{provider_id}/{account.label}: {e}"
                            )
                    accounts.append(account)
        return accounts

    def save_account(self, account: Account) -> None:
        """Insert or update an account and its credentials."""
        self._ensure_loaded()
        with self._lock:
            backup = copy.deepcopy(self._data)
            entry = self._provider_entry(account.provider_id)
            raw = self._find_account(account.provider_id, account.account_id)
            if raw is None:
                raw = {"id": account.account_id}
                entry["accounts"].append(raw)
            raw["label"] = account.label
            raw["added_at"] = int(account.added_at)
            if account.last_used is not None:
                raw["last_used"] = int(account.last_used)
            for legacy_field in LEGACY_FIELDS:
                raw.pop(legacy_field, None)
            credentials = raw.setdefault("credentials", {})
            for kind, credential in account.credentials.items():
                previous = credentials.get(kind) or {}
                credentials[kind] = {
                    "schema_version": LATEST_SCHEMA_VERSION,
                    "migrated_seq": int(previous.get("migrated_seq", 0)),
                    "payload": credential_to_payload(credential),
                }
            self._save_locked(backup)

    def remove_account(self, provider_id: str, account_id: str) -> bool:
        """Remove an account. Returns False if it wasn't stored."""
        self._ensure_loaded()
        with self._lock:
            entry = self._data["providers"].get(provider_id)
            if not isinstance(entry, dict):
                return False
            accounts = entry.get("accounts", [])
            for index, raw in enumerate(accounts):
                if str(raw.get("id")) == account_id:
                    backup = copy.deepcopy(self._data)
                    del accounts[index]
                    if entry.get("active_index", 0) >= len(accounts) and accounts:
                        entry["active_index"] = len(accounts) - 1
                    self._save_locked(backup)
                    return True
        return False

    def set_active(self, provider_id: str, account_id: str) -> bool:
        """Mark an account as the provider's active one."""
        self._ensure_loaded()
        with self._lock:
            entry = self._data["providers"].get(provider_id)
            if not isinstance(entry, dict):
                return False
            for index, raw in enumerate(entry.get("accounts", [])):
                if str(raw.get("id")) == account_id:
                    backup = copy.deepcopy(self._data)
                    entry["active_index"] = index
                    self._save_locked(backup)
                    return True
        return False

    def active_account_id(self, provider_id: str) -> Optional[str]:
        """The active account of a provider, index clamped to the list."""
        self._ensure_loaded()
        with self._lock:
            entry = self._data["providers"].get(provider_id)
            if not isinstance(entry, dict) or not entry.get("accounts"):
                return None
            accounts = entry["accounts"]
            index = min(int(entry.get("active_index", 0)), len(accounts) - 1)
            return str(accounts[index].get("id"))
