# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Browser cookie value decryption.

Chromium-family browsers encrypt cookie values in two stages:

1. A per-profile AES-256 key is stored in `Local State` under
   `os_crypt.encrypted_key`, itself wrapped by the platform secret store
   (DPAPI on Windows).
2. Each cookie value is `v10|v11|v20` + 12-byte nonce + AES-256-GCM
   ciphertext + 16-byte tag. Cookie databases from schema version 24 on (and
   every app-bound `v20` value) prepend SHA-256(host_key) to the plaintext,
   binding the value to its originating cookie domain.

Values without a version prefix are legacy blobs wrapped directly by DPAPI.
Firefox stores plaintext values; those bypass decryption entirely.

Decryption is pure: no caching of plaintext, and plaintext is never logged.
"""

import base64
import hashlib
import json
import logging
import os
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.errors import DecryptionError, ErrorKind

lib_logger = logging.getLogger("quota_library")

GCM_PREFIXES = (b"v10", b"v11", b"v20")
APP_BOUND_PREFIX = b"v20"
PREFIX_LEN = 3
NONCE_LEN = 12
TAG_LEN = 16
KEY_LEN = 32
DOMAIN_BINDING_LEN = 32  # SHA-256 digest length
DPAPI_KEY_PREFIX = b"DPAPI"


@dataclass(frozen=True)
class EncryptionMetadata:
    """
    Where an encrypted value came from.

    Used to pick the wrapping key (browser + user-data dir), to check the
    domain binding, and to supply associated data for stores that use it.
    `domain_bound` is set when the cookie database schema guarantees the
    SHA-256(host_key) prefix.
    """

    browser_type: str
    profile_name: str = "Default"
    user_data_dir: Optional[Path] = None
    encrypted: bool = True
    host_key: Optional[str] = None
    associated_data: Optional[bytes] = None
    domain_bound: bool = False


# =============================================================================
# PLATFORM SECRET UNWRAPPING
# =============================================================================


def dpapi_unprotect(data: bytes) -> bytes:
    """
    Unwrap a blob with Windows DPAPI (CryptUnprotectData).

    Raises:
        DecryptionError(KEY_UNAVAILABLE) off Windows or when DPAPI refuses
    """
    if sys.platform != "win32":
        raise DecryptionError(
            ErrorKind.KEY_UNAVAILABLE, "DPAPI is only available on Windows"
        )

    import ctypes
    from ctypes import wintypes

    class DataBlob(ctypes.Structure):
        _fields_ = [
            ("cbData", wintypes.DWORD),
            ("pbData", ctypes.POINTER(ctypes.c_char)),
        ]

    buffer = ctypes.create_string_buffer(data, len(data))
    blob_in = DataBlob(len(data), ctypes.cast(buffer, ctypes.POINTER(ctypes.c_char)))
    blob_out = DataBlob()

    ok = ctypes.windll.crypt32.CryptUnprotectData(
        ctypes.byref(blob_in), None, None, None, None, 0, ctypes.byref(blob_out)
    )
    if not ok:
        raise DecryptionError(
            ErrorKind.KEY_UNAVAILABLE,
            f"CryptUnprotectData failed (error {ctypes.GetLastError()})",
        )
    try:
        return ctypes.string_at(blob_out.pbData, blob_out.cbData)
    finally:
        ctypes.windll.kernel32.LocalFree(blob_out.pbData)


class KeyProvider:
    """
    Supplies the per-profile AES key and unwraps legacy platform blobs.

    Subclasses raise DecryptionError(KEY_UNAVAILABLE) when they can't help.
    """

    def get_key(self, metadata: EncryptionMetadata) -> bytes:
        raise DecryptionError(ErrorKind.KEY_UNAVAILABLE, "No key provider configured")

    def unprotect(self, blob: bytes) -> bytes:
        raise DecryptionError(
            ErrorKind.KEY_UNAVAILABLE, "Legacy platform-wrapped values not supported"
        )


class LocalStateKeyProvider(KeyProvider):
    """
    Reads the wrapped key from a Chromium `Local State` file.

    Keys are cached per user-data directory since every cookie from the same
    browser shares one key.
    """

    def __init__(self, unwrap=dpapi_unprotect):
        self._unwrap = unwrap
        self._keys: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get_key(self, metadata: EncryptionMetadata) -> bytes:
        if metadata.user_data_dir is None:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, "No user data directory for key lookup"
            )
        cache_key = str(metadata.user_data_dir)
        with self._lock:
            cached = self._keys.get(cache_key)
        if cached is not None:
            return cached

        key = self._unwrap(self._read_wrapped_key(metadata.user_data_dir / "Local State"))
        if len(key) != KEY_LEN:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, f"Unwrapped key has {len(key)} bytes"
            )
        with self._lock:
            self._keys[cache_key] = key
        lib_logger.debug(f"Loaded cookie key for {metadata.browser_type}")
        return key

    def unprotect(self, blob: bytes) -> bytes:
        return self._unwrap(blob)

    @staticmethod
    def _read_wrapped_key(local_state_path: Path) -> bytes:
        try:
            with open(local_state_path, "r", encoding="utf-8") as f:
                local_state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, f"Cannot read Local State: {e}"
            ) from e

        encoded = (local_state.get("os_crypt") or {}).get("encrypted_key")
        if not isinstance(encoded, str):
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, "Local State has no os_crypt.encrypted_key"
            )
        try:
            wrapped = base64.b64decode(encoded)
        except ValueError as e:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, f"encrypted_key is not base64: {e}"
            ) from e

        if not wrapped.startswith(DPAPI_KEY_PREFIX):
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, "encrypted_key lacks the DPAPI prefix"
            )
        return wrapped[len(DPAPI_KEY_PREFIX):]


class StaticKeyProvider(KeyProvider):
    """
    Explicitly supplied keys, per browser type.

    Useful on platforms where the wrapping secret is obtained out-of-band,
    and in tests.
    """

    def __init__(self, keys: Optional[Dict[str, bytes]] = None, default: Optional[bytes] = None):
        self._keys = dict(keys or {})
        self._default = default

    @classmethod
    def from_env(cls) -> "StaticKeyProvider":
        """Load hex or base64 keys from QUOTA_BROWSER_KEY_<BROWSER> variables."""
        keys = {}
        for name, value in os.environ.items():
            if not name.startswith("QUOTA_BROWSER_KEY_") or not value.strip():
                continue
            browser_type = name[len("QUOTA_BROWSER_KEY_"):].lower()
            raw = value.strip()
            try:
                key = bytes.fromhex(raw)
            except ValueError:
                try:
                    key = base64.b64decode(raw)
                except ValueError:
                    lib_logger.warning(f"Ignoring malformed key in {name}")
                    continue
            keys[browser_type] = key
        return cls(keys)

    def get_key(self, metadata: EncryptionMetadata) -> bytes:
        key = self._keys.get(metadata.browser_type, self._default)
        if key is None:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, f"No key configured for {metadata.browser_type}"
            )
        return key


class ChainedKeyProvider(KeyProvider):
    """Tries several key providers in order."""

    def __init__(self, providers: Iterable[KeyProvider]):
        self._providers = list(providers)

    def get_key(self, metadata: EncryptionMetadata) -> bytes:
        last_error: Optional[DecryptionError] = None
        for provider in self._providers:
            try:
                return provider.get_key(metadata)
            except DecryptionError as e:
                last_error = e
        raise last_error or DecryptionError(ErrorKind.KEY_UNAVAILABLE, "No key providers")

    def unprotect(self, blob: bytes) -> bytes:
        last_error: Optional[DecryptionError] = None
        for provider in self._providers:
            try:
                return provider.unprotect(blob)
            except DecryptionError as e:
                last_error = e
        raise last_error or DecryptionError(ErrorKind.KEY_UNAVAILABLE, "No key providers")


def default_key_provider() -> KeyProvider:
    """Environment-supplied keys first, then the platform Local State key."""
    return ChainedKeyProvider([StaticKeyProvider.from_env(), LocalStateKeyProvider()])


# =============================================================================
# COOKIE VALUE DECRYPTION
# =============================================================================


def _is_utf8(data: bytes) -> bool:
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return False
    return True


def _check_domain_binding(
    plaintext: bytes, host_key: Optional[str], bound: bool
) -> bytes:
    """
    Verify and remove the SHA-256(host_key) prefix.

    A bound value must carry the digest of its own host. An unbound value
    keeps its bytes unless they start with exactly that digest.

    Raises:
        DecryptionError(AUTHENTICATION_TAG_MISMATCH) when the value is bound
            to a different host
        DecryptionError(CIPHERTEXT_MALFORMED) when a bound value is too short
    """
    binding = hashlib.sha256(host_key.encode("utf-8")).digest() if host_key else None
    prefix = plaintext[:DOMAIN_BINDING_LEN]

    if bound:
        if len(plaintext) < DOMAIN_BINDING_LEN:
            raise DecryptionError(
                ErrorKind.CIPHERTEXT_MALFORMED, "Value shorter than its domain binding"
            )
        if binding is not None and prefix != binding:
            raise DecryptionError(
                ErrorKind.AUTHENTICATION_TAG_MISMATCH,
                "Value is bound to a different cookie host",
            )
        return plaintext[DOMAIN_BINDING_LEN:]

    if binding is None or len(plaintext) < DOMAIN_BINDING_LEN:
        return plaintext
    if prefix == binding:
        return plaintext[DOMAIN_BINDING_LEN:]
    # Text values are kept whole; a binary head is another host's digest
    if not _is_utf8(plaintext):
        raise DecryptionError(
            ErrorKind.AUTHENTICATION_TAG_MISMATCH,
            "Value is bound to a different cookie host",
        )
    return plaintext


class CookieDecryptor:
    """
    Turns stored cookie values into plaintext session tokens.

    Usage:
        decryptor = CookieDecryptor(default_key_provider())
        value = decryptor.decrypt(raw.encrypted_value, raw.metadata)
    """

    def __init__(self, key_provider: Optional[KeyProvider] = None):
        self._key_provider = key_provider or default_key_provider()

    def decrypt(self, blob: Union[bytes, str], metadata: EncryptionMetadata) -> str:
        """
        Decrypt one cookie value.

        Args:
            blob: Stored value (bytes for encrypted stores, str for plaintext)
            metadata: Origin of the value

        Returns:
            Plaintext cookie value

        Raises:
            DecryptionError: KEY_UNAVAILABLE, CIPHERTEXT_MALFORMED or
                AUTHENTICATION_TAG_MISMATCH
        """
        if not metadata.encrypted:
            if isinstance(blob, bytes):
                return blob.decode("utf-8", errors="replace")
            return blob

        if isinstance(blob, str):
            blob = blob.encode("utf-8")
        if not blob:
            return ""

        if blob[:PREFIX_LEN] in GCM_PREFIXES:
            plaintext = self._decrypt_gcm(blob, metadata)
        else:
            plaintext = self._key_provider.unprotect(blob)

        # App-bound values always carry the domain binding
        bound = metadata.domain_bound or blob[:PREFIX_LEN] == APP_BOUND_PREFIX
        plaintext = _check_domain_binding(plaintext, metadata.host_key, bound)
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(
                ErrorKind.CIPHERTEXT_MALFORMED, "Decrypted value is not UTF-8"
            ) from e

    def _decrypt_gcm(self, blob: bytes, metadata: EncryptionMetadata) -> bytes:
        if len(blob) < PREFIX_LEN + NONCE_LEN + TAG_LEN:
            raise DecryptionError(
                ErrorKind.CIPHERTEXT_MALFORMED,
                f"Encrypted value too short ({len(blob)} bytes)",
            )

        key = self._key_provider.get_key(metadata)
        if len(key) != KEY_LEN:
            raise DecryptionError(
                ErrorKind.KEY_UNAVAILABLE, f"Key has {len(key)} bytes, expected {KEY_LEN}"
            )

        nonce = blob[PREFIX_LEN:PREFIX_LEN + NONCE_LEN]
        ciphertext = blob[PREFIX_LEN + NONCE_LEN:]
        try:
            return AESGCM(key).decrypt(nonce, ciphertext, metadata.associated_data)
        except InvalidTag as e:
            lib_logger.debug(
                f"GCM tag mismatch for {metadata.browser_type}/{metadata.profile_name} "
                f"({len(blob)} bytes)"
            )
            raise DecryptionError(ErrorKind.AUTHENTICATION_TAG_MISMATCH) from e


def encrypt_cookie_value(
    plaintext: str,
    key: bytes,
    associated_data: Optional[bytes] = None,
    nonce: Optional[bytes] = None,
    prefix: bytes = b"v10",
    host_key: Optional[str] = None,
) -> bytes:
    """
    Produce a blob in the Chromium v10/v11/v20 layout.

    The inverse of CookieDecryptor.decrypt for GCM blobs. When host_key is
    given the plaintext carries the SHA-256 domain binding.
    """
    if prefix not in GCM_PREFIXES:
        raise ValueError(f"Unsupported prefix: {prefix!r}")
    if nonce is None:
        nonce = os.urandom(NONCE_LEN)
    if len(nonce) != NONCE_LEN:
        raise ValueError(f"Nonce must be {NONCE_LEN} bytes")
    data = plaintext.encode("utf-8")
    if host_key:
        data = hashlib.sha256(host_key.encode("utf-8")).digest() + data
    return prefix + nonce + AESGCM(key).encrypt(nonce, data, associated_data)
