"""Signing key custody.

Keys are stored as opaque handles (Fernet tokens) and only decrypted for the
duration of a single transfer. A decrypted key lives in a SigningKey, which
holds the bytes in a mutable buffer so they can be zeroed after use.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import KeyCustodyError

logger = logging.getLogger(__name__)

HANDLE_PREFIX = "fernet:"


class SigningKey:
    """A decrypted secp256k1 private key that can be wiped.

    Use as a context manager; the buffer is zeroed on exit.
    """

    __slots__ = ("_buf",)

    def __init__(self, raw: bytes | bytearray):
        if len(raw) != 32:
            raise KeyCustodyError("Signing key must be 32 bytes")
        self._buf = bytearray(raw)

    @classmethod
    def from_hex(cls, value: str) -> "SigningKey":
        text = value[2:] if value.startswith(("0x", "0X")) else value
        try:
            return cls(bytes.fromhex(text))
        except ValueError:
            raise KeyCustodyError("Signing key is not valid hex")

    def secret_bytes(self) -> bytes:
        if self.wiped:
            raise KeyCustodyError("Signing key has been wiped")
        return bytes(self._buf)

    @property
    def wiped(self) -> bool:
        return not any(self._buf)

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0

    def __enter__(self) -> "SigningKey":
        return self

    def __exit__(self, *exc) -> None:
        self.wipe()

    def __repr__(self) -> str:
        return "SigningKey(***)"

    __str__ = __repr__


class KeyCustody(ABC):
    """Resolves an opaque key handle into a signing key."""

    @abstractmethod
    async def decrypt(self, handle: str) -> SigningKey:
        """Decrypt a handle. Raises KeyCustodyError on any failure."""


class FernetKeyCustody(KeyCustody):
    """Keys encrypted at rest with a Fernet key-encryption key."""

    def __init__(self, key_encryption_key: str | bytes):
        key = key_encryption_key.encode() if isinstance(key_encryption_key, str) else key_encryption_key
        try:
            self._fernet = Fernet(key)
        except ValueError as e:
            raise KeyCustodyError(f"Invalid key encryption key: {e}")

    @classmethod
    def ephemeral(cls) -> "FernetKeyCustody":
        """Custody with a throwaway key; handles do not survive a restart."""
        logger.warning("Using an ephemeral key encryption key; stored handles are not portable")
        return cls(Fernet.generate_key())

    def encrypt(self, private_key: str | bytes) -> str:
        """Wrap a raw private key (hex string or 32 bytes) into a handle."""
        if isinstance(private_key, str):
            signing_key = SigningKey.from_hex(private_key)
        else:
            signing_key = SigningKey(private_key)
        with signing_key:
            token = self._fernet.encrypt(signing_key.secret_bytes())
        return HANDLE_PREFIX + token.decode("ascii")

    async def decrypt(self, handle: str) -> SigningKey:
        token = (handle or "").strip()
        if not token.startswith(HANDLE_PREFIX):
            raise KeyCustodyError("Unknown key handle format")
        try:
            raw = self._fernet.decrypt(token[len(HANDLE_PREFIX):].encode("ascii"))
        except InvalidToken:
            raise KeyCustodyError("Key handle could not be decrypted")
        return SigningKey(raw)


def load_custody(key_encryption_key: Optional[str], environment: str = "dev") -> FernetKeyCustody:
    if key_encryption_key:
        return FernetKeyCustody(key_encryption_key)
    if environment != "dev":
        raise KeyCustodyError("Key encryption key is required outside dev")
    return FernetKeyCustody.ephemeral()
