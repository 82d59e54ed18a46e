"""
chaintoken hashing

SHA-256 digests in the "sha256:<lowercase hex>" format, used for root key
fingerprints and block revocation identifiers.
"""

import hashlib
from typing import Union


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 hash.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).hexdigest().lower()
    return f"sha256:{digest}"


def key_fingerprint(public_key: bytes) -> str:
    """Fingerprint identifying a root public key in logs and reprs."""
    return sha256_hash(public_key)


def revocation_id(signature: bytes) -> str:
    """
    Revocation identifier for one block.

    A block's signature covers its payload and the previous signature, so it
    uniquely names the block within its chain position. Revocation lists
    match on the lowercase hex of that signature.
    """
    return signature.hex()
