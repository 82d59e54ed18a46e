"""
chaintoken key material

Ed25519 (RFC 8032) key pairs used for root signing and for the per-block
next keys of a token chain. Keys encode as 32 raw bytes or as lowercase
hex of the same bytes.
"""

from typing import Optional, Union

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import CryptoError

from .hashing import key_fingerprint
from .util import constant_time_compare, from_hex, to_hex


ALGORITHM_ED25519 = 0

KEY_LENGTH = 32
SIGNATURE_LENGTH = 64


def _key_bytes(data: Union[bytes, bytearray, memoryview], kind: str) -> bytes:
    data = bytes(data)
    if len(data) != KEY_LENGTH:
        raise ValueError(
            f"{kind} key must be exactly {KEY_LENGTH} bytes, got {len(data)}"
        )
    return data


class PublicKey:
    """Ed25519 verification key."""

    __slots__ = ("_data",)

    def __init__(self, data: bytes):
        self._data = _key_bytes(data, "public")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PublicKey":
        """Deserializes a public key from raw bytes."""
        return cls(data)

    @classmethod
    def from_hex(cls, data: str) -> "PublicKey":
        """Deserializes a public key from a hexadecimal string."""
        return cls(from_hex(data, KEY_LENGTH))

    def to_bytes(self) -> bytes:
        return self._data

    def to_hex(self) -> str:
        return to_hex(self._data)

    @property
    def fingerprint(self) -> str:
        return key_fingerprint(self._data)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """
        Verify an Ed25519 signature over message.

        Returns:
            True if signature is valid, False otherwise
        """
        if len(signature) != SIGNATURE_LENGTH:
            return False
        try:
            VerifyKey(self._data).verify(message, signature)
            return True
        except (CryptoError, ValueError):
            return False

    def __eq__(self, other) -> bool:
        if not isinstance(other, PublicKey):
            return NotImplemented
        return self._data == other._data

    def __hash__(self) -> int:
        return hash(self._data)

    def __repr__(self) -> str:
        return f"PublicKey({self.to_hex()})"


class PrivateKey:
    """Ed25519 signing key, stored as its 32-byte seed."""

    __slots__ = ("_seed",)

    def __init__(self, data: bytes):
        self._seed = _key_bytes(data, "private")

    @classmethod
    def from_bytes(cls, data: bytes) -> "PrivateKey":
        """Deserializes a private key from raw bytes."""
        return cls(data)

    @classmethod
    def from_hex(cls, data: str) -> "PrivateKey":
        """Deserializes a private key from a hexadecimal string."""
        return cls(from_hex(data, KEY_LENGTH))

    def to_bytes(self) -> bytes:
        return self._seed

    def to_hex(self) -> str:
        return to_hex(self._seed)

    def public_key(self) -> PublicKey:
        return PublicKey(bytes(SigningKey(self._seed).verify_key))

    def sign(self, message: bytes) -> bytes:
        return SigningKey(self._seed).sign(message).signature

    def __eq__(self, other) -> bool:
        if not isinstance(other, PrivateKey):
            return NotImplemented
        return constant_time_compare(self._seed, other._seed)

    def __hash__(self) -> int:
        return hash(self.public_key())

    def __repr__(self) -> str:
        # never print secret material
        return "PrivateKey(<redacted>)"


class KeyPair:
    """
    Ed25519 key pair.

    KeyPair() generates a fresh random pair; KeyPair.from_existing()
    rebuilds one from stored private key bytes. The public half is always
    derived from the private half.
    """

    __slots__ = ("_private", "_public")

    def __init__(self, private_key: Optional[PrivateKey] = None):
        if private_key is None:
            private_key = PrivateKey(bytes(SigningKey.generate()))
        self._private = private_key
        self._public = private_key.public_key()

    @classmethod
    def from_existing(cls, private_key: PrivateKey) -> "KeyPair":
        return cls(private_key)

    @property
    def public_key(self) -> PublicKey:
        return self._public

    @property
    def private_key(self) -> PrivateKey:
        return self._private

    def sign(self, message: bytes) -> bytes:
        return self._private.sign(message)

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self._public.to_hex()})"


# Convenience functions

def sign_data(data: bytes, signing_key: bytes) -> bytes:
    """Sign data with a raw 32-byte Ed25519 seed."""
    return PrivateKey(signing_key).sign(data)


def verify_signature(data: bytes, signature: bytes, verify_key: bytes) -> bool:
    """Verify an Ed25519 signature against a raw 32-byte public key."""
    return PublicKey(verify_key).verify(data, signature)
