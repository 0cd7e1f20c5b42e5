"""Tests for browser cookie decryption."""

import base64
import json
import os

import pytest

from quota_library.browser.decryptor import (
    ChainedKeyProvider,
    CookieDecryptor,
    EncryptionMetadata,
    LocalStateKeyProvider,
    StaticKeyProvider,
    encrypt_cookie_value,
)
from quota_library.core.errors import DecryptionError, ErrorKind

from conftest import TEST_KEY


def _decryptor(key=TEST_KEY):
    return CookieDecryptor(StaticKeyProvider(default=key))


META = EncryptionMetadata(browser_type="chrome")


class TestRoundTrip:
    @pytest.mark.parametrize("prefix", [b"v10", b"v11"])
    def test_decrypts_what_was_encrypted(self, prefix):
        blob = encrypt_cookie_value("sk-session-value", TEST_KEY, prefix=prefix)
        assert _decryptor().decrypt(blob, META) == "sk-session-value"

    def test_app_bound_value_drops_its_binding(self):
        blob = encrypt_cookie_value("sk-session-value", TEST_KEY, prefix=b"v20", host_key=".claude.ai")
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai")
        assert _decryptor().decrypt(blob, meta) == "sk-session-value"
        assert _decryptor().decrypt(blob, META) == "sk-session-value"

    def test_associated_data_round_trip(self):
        meta = EncryptionMetadata(browser_type="chrome", associated_data=b"claude.ai")
        blob = encrypt_cookie_value("value", TEST_KEY, associated_data=b"claude.ai")
        assert _decryptor().decrypt(blob, meta) == "value"

    def test_domain_binding_is_stripped(self):
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai")
        blob = encrypt_cookie_value("sessionvalue", TEST_KEY, host_key=".claude.ai")
        assert _decryptor().decrypt(blob, meta) == "sessionvalue"

    def test_unicode_value(self):
        blob = encrypt_cookie_value("wert-äöü", TEST_KEY)
        assert _decryptor().decrypt(blob, META) == "wert-äöü"

    def test_long_non_ascii_value_is_not_truncated(self):
        value = "café-" * 10
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai")
        assert _decryptor().decrypt(encrypt_cookie_value(value, TEST_KEY), meta) == value
        assert _decryptor().decrypt(encrypt_cookie_value(value, TEST_KEY), META) == value

    def test_bound_schema_value_round_trip(self):
        value = "ümlaut-session-" * 4
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai", domain_bound=True)
        blob = encrypt_cookie_value(value, TEST_KEY, host_key=".claude.ai")
        assert _decryptor().decrypt(blob, meta) == value

    def test_plaintext_store_passthrough(self):
        meta = EncryptionMetadata(browser_type="firefox", encrypted=False)
        assert _decryptor().decrypt("plain", meta) == "plain"

    def test_empty_blob_is_empty_value(self):
        assert _decryptor().decrypt(b"", META) == ""


class TestTampering:
    def test_every_ciphertext_bit_flip_is_rejected(self):
        blob = encrypt_cookie_value("abc123", TEST_KEY, nonce=b"\x01" * 12)
        decryptor = _decryptor()
        # Everything after the prefix: nonce, ciphertext and tag
        for index in range(3, len(blob)):
            for bit in range(8):
                tampered = bytearray(blob)
                tampered[index] ^= 1 << bit
                with pytest.raises(DecryptionError) as excinfo:
                    decryptor.decrypt(bytes(tampered), META)
                assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH

    def test_associated_data_bit_flip_is_rejected(self):
        aad = b"chatgpt.com"
        blob = encrypt_cookie_value("abc123", TEST_KEY, associated_data=aad)
        for index in range(len(aad)):
            flipped = bytearray(aad)
            flipped[index] ^= 0x01
            meta = EncryptionMetadata(browser_type="chrome", associated_data=bytes(flipped))
            with pytest.raises(DecryptionError) as excinfo:
                _decryptor().decrypt(blob, meta)
            assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH

    def test_wrong_key_is_tag_mismatch(self):
        blob = encrypt_cookie_value("abc", TEST_KEY)
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor(key=os.urandom(32)).decrypt(blob, META)
        assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH

    def test_value_bound_to_another_host_is_rejected(self):
        blob = encrypt_cookie_value("stolen-session", TEST_KEY, host_key=".evil.example")
        for domain_bound in (False, True):
            meta = EncryptionMetadata(
                browser_type="chrome", host_key=".claude.ai", domain_bound=domain_bound
            )
            with pytest.raises(DecryptionError) as excinfo:
                _decryptor().decrypt(blob, meta)
            assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH

    def test_app_bound_value_from_another_host_is_rejected(self):
        blob = encrypt_cookie_value("stolen-session", TEST_KEY, prefix=b"v20", host_key=".evil.example")
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai")
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor().decrypt(blob, meta)
        assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH

    def test_bound_schema_value_without_binding_is_rejected(self):
        # Long enough to have a 32 byte head, but it is text, not a digest
        blob = encrypt_cookie_value("x" * 40, TEST_KEY)
        meta = EncryptionMetadata(browser_type="chrome", host_key=".claude.ai", domain_bound=True)
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor().decrypt(blob, meta)
        assert excinfo.value.reason == ErrorKind.AUTHENTICATION_TAG_MISMATCH


class TestMalformedInput:
    def test_truncated_blob(self):
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor().decrypt(b"v10" + b"\x00" * 10, META)
        assert excinfo.value.reason == ErrorKind.CIPHERTEXT_MALFORMED

    def test_short_key_is_key_unavailable(self):
        blob = encrypt_cookie_value("abc", TEST_KEY)
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor(key=b"short").decrypt(blob, META)
        assert excinfo.value.reason == ErrorKind.KEY_UNAVAILABLE

    def test_missing_key(self):
        blob = encrypt_cookie_value("abc", TEST_KEY)
        with pytest.raises(DecryptionError) as excinfo:
            CookieDecryptor(StaticKeyProvider()).decrypt(blob, META)
        assert excinfo.value.reason == ErrorKind.KEY_UNAVAILABLE

    def test_unprefixed_blob_without_platform_support(self):
        with pytest.raises(DecryptionError) as excinfo:
            _decryptor().decrypt(b"\x01\x00\x00\x00legacy-dpapi-blob", META)
        assert excinfo.value.reason == ErrorKind.KEY_UNAVAILABLE


class TestKeyProviders:
    def test_static_provider_from_env(self, monkeypatch):
        monkeypatch.setenv("QUOTA_BROWSER_KEY_EDGE", TEST_KEY.hex())
        monkeypatch.setenv("QUOTA_BROWSER_KEY_BRAVE", base64.b64encode(TEST_KEY).decode())
        provider = StaticKeyProvider.from_env()
        assert provider.get_key(EncryptionMetadata("edge")) == TEST_KEY
        assert provider.get_key(EncryptionMetadata("brave")) == TEST_KEY

    def test_local_state_key_is_unwrapped_and_cached(self, tmp_path):
        unwrap_calls = []

        def unwrap(data):
            unwrap_calls.append(data)
            return TEST_KEY

        (tmp_path / "Local State").write_text(
            json.dumps({"os_crypt": {"encrypted_key": base64.b64encode(b"DPAPIwrapped").decode()}}),
            encoding="utf-8",
        )
        provider = LocalStateKeyProvider(unwrap=unwrap)
        meta = EncryptionMetadata("chrome", user_data_dir=tmp_path)

        assert provider.get_key(meta) == TEST_KEY
        assert provider.get_key(meta) == TEST_KEY
        assert unwrap_calls == [b"wrapped"]

    def test_local_state_missing(self, tmp_path):
        provider = LocalStateKeyProvider(unwrap=lambda data: TEST_KEY)
        with pytest.raises(DecryptionError) as excinfo:
            provider.get_key(EncryptionMetadata("chrome", user_data_dir=tmp_path))
        assert excinfo.value.reason == ErrorKind.KEY_UNAVAILABLE

    def test_chain_falls_through(self, tmp_path):
        chain = ChainedKeyProvider([StaticKeyProvider(), StaticKeyProvider(default=TEST_KEY)])
        assert chain.get_key(META) == TEST_KEY
