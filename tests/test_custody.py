"""Tests for key custody and signing key handling."""
from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from cardpay.custody import FernetKeyCustody, SigningKey, load_custody
from cardpay.exceptions import KeyCustodyError

from conftest import TEST_PRIVATE_KEY


class TestSigningKey:
    def test_from_hex(self):
        key = SigningKey.from_hex(TEST_PRIVATE_KEY)
        assert key.secret_bytes() == bytes.fromhex("11" * 32)

    def test_wrong_length(self):
        with pytest.raises(KeyCustodyError):
            SigningKey(b"\x01" * 31)

    def test_not_hex(self):
        with pytest.raises(KeyCustodyError):
            SigningKey.from_hex("0x" + "zz" * 32)

    def test_context_manager_wipes(self):
        key = SigningKey.from_hex(TEST_PRIVATE_KEY)
        with key as inside:
            assert inside.secret_bytes()
        assert key.wiped
        with pytest.raises(KeyCustodyError):
            key.secret_bytes()

    def test_repr_is_masked(self):
        key = SigningKey.from_hex(TEST_PRIVATE_KEY)
        assert "11" not in repr(key)
        assert str(key) == "SigningKey(***)"


class TestFernetKeyCustody:
    @pytest.mark.asyncio
    async def test_encrypt_decrypt_round_trip(self, custody):
        handle = custody.encrypt(TEST_PRIVATE_KEY)
        assert handle.startswith("fernet:")
        assert "11" * 32 not in handle

        key = await custody.decrypt(handle)
        assert key.secret_bytes() == bytes.fromhex("11" * 32)

    @pytest.mark.asyncio
    async def test_unknown_prefix(self, custody):
        with pytest.raises(KeyCustodyError):
            await custody.decrypt("kms:abc")

    @pytest.mark.asyncio
    async def test_wrong_key_encryption_key(self, custody):
        handle = custody.encrypt(TEST_PRIVATE_KEY)
        other = FernetKeyCustody(Fernet.generate_key())
        with pytest.raises(KeyCustodyError):
            await other.decrypt(handle)

    def test_invalid_key_encryption_key(self):
        with pytest.raises(KeyCustodyError):
            FernetKeyCustody("not-a-fernet-key")


class TestLoadCustody:
    def test_dev_without_key_is_ephemeral(self):
        assert isinstance(load_custody("", "dev"), FernetKeyCustody)

    def test_prod_requires_key(self):
        with pytest.raises(KeyCustodyError):
            load_custody("", "prod")

    @pytest.mark.asyncio
    async def test_configured_key(self):
        kek = Fernet.generate_key().decode()
        handle = FernetKeyCustody(kek).encrypt(TEST_PRIVATE_KEY)
        key = await load_custody(kek, "prod").decrypt(handle)
        assert not key.wiped
