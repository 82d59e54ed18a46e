"""
chaintoken wire format

Binary envelope, all integers big-endian:

    envelope := "CTKN" | version:u8 | key_id_flag:u8 [root_key_id:u32]
                | block_count:u32 | block* | proof
    block    := payload_len:u32 | payload | algorithm:u8 | next_key:32
                | signature:64 | ext_count:u16 | (tag:u16 | len:u32 | data)*
    proof    := 0x00 | next_secret:32
              | 0x01 | final_signature:64

The payload is the canonical JSON encoding of the block's statements.
Block i is signed over its own encoding (minus the signature) followed by
block i-1's signature, so every signature depends on all earlier blocks.
Decoding is strict: truncated input, trailing bytes, unknown versions or
algorithms and non-canonical payloads are all rejected.
"""

import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .canonicalization import canonicalize, decode_canonical
from .errors import BiscuitSerializationError, BiscuitValidationError
from .signing import (
    ALGORITHM_ED25519,
    KEY_LENGTH,
    SIGNATURE_LENGTH,
    PrivateKey,
    PublicKey,
)
from .statements import Check, Fact, Rule

MAGIC = b"CTKN"
FORMAT_VERSION = 1
PAYLOAD_VERSION = 1

PROOF_NEXT_SECRET = 0
PROOF_FINAL_SIGNATURE = 1

MAX_EXTENSION_TAG = 0xFFFF

Extension = Tuple[int, bytes]


@dataclass(frozen=True)
class BlockContent:
    """The Datalog statements of one block, as they are signed."""
    facts: Tuple[Fact, ...] = ()
    rules: Tuple[Rule, ...] = ()
    checks: Tuple[Check, ...] = ()
    context: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "version": PAYLOAD_VERSION,
            "facts": [f.to_dict() for f in self.facts],
            "rules": [r.to_dict() for r in self.rules],
            "checks": [c.to_dict() for c in self.checks],
        }
        if self.context is not None:
            payload["context"] = self.context
        return payload

    @classmethod
    def from_payload(cls, payload: Any) -> "BlockContent":
        if not isinstance(payload, dict):
            raise ValueError("block payload must be an object")
        keys = set(payload)
        required = {"version", "facts", "rules", "checks"}
        if not required <= keys or not keys <= required | {"context"}:
            raise ValueError(f"unexpected block payload fields: {sorted(keys)}")
        if payload["version"] != PAYLOAD_VERSION:
            raise ValueError(f"unsupported block version: {payload['version']!r}")
        for name in ("facts", "rules", "checks"):
            if not isinstance(payload[name], list):
                raise ValueError(f"block {name} must be a list")
        context = payload.get("context")
        if "context" in payload and not isinstance(context, str):
            raise ValueError("block context must be a string")
        return cls(
            facts=tuple(Fact.from_dict(f) for f in payload["facts"]),
            rules=tuple(Rule.from_dict(r) for r in payload["rules"]),
            checks=tuple(Check.from_dict(c) for c in payload["checks"]),
            context=context,
        )

    def source(self) -> str:
        lines = [f"{s};" for s in (*self.facts, *self.rules, *self.checks)]
        return "\n".join(lines)


@dataclass(frozen=True)
class Block:
    """One signed block. Immutable, and shared between chains that extend it."""
    content: BlockContent
    payload: bytes
    next_key: PublicKey
    signature: bytes
    extensions: Tuple[Extension, ...] = ()
    algorithm: int = ALGORITHM_ED25519

    def unsigned_bytes(self) -> bytes:
        return encode_unsigned_block(self.payload, self.algorithm, self.next_key, self.extensions)

    def to_bytes(self) -> bytes:
        return (
            _u32(len(self.payload)) + self.payload
            + bytes([self.algorithm]) + self.next_key.to_bytes()
            + self.signature
            + _encode_extensions(self.extensions)
        )


@dataclass(frozen=True)
class Proof:
    """Exactly one of next_secret (open chain) or final_signature (sealed)."""
    next_secret: Optional[PrivateKey] = None
    final_signature: Optional[bytes] = None

    def __post_init__(self):
        if (self.next_secret is None) == (self.final_signature is None):
            raise ValueError("proof holds either a next secret or a final signature")

    @property
    def sealed(self) -> bool:
        return self.final_signature is not None


@dataclass(frozen=True)
class Envelope:
    blocks: Tuple[Block, ...]
    proof: Proof
    root_key_id: Optional[int] = None


def _u16(value: int) -> bytes:
    return struct.pack(">H", value)


def _u32(value: int) -> bytes:
    return struct.pack(">I", value)


def _encode_extensions(extensions: Tuple[Extension, ...]) -> bytes:
    out = [_u16(len(extensions))]
    for tag, data in extensions:
        out.append(_u16(tag) + _u32(len(data)) + data)
    return b"".join(out)


def encode_payload(content: BlockContent) -> bytes:
    try:
        return canonicalize(content.to_payload())
    except ValueError as e:
        raise BiscuitSerializationError(f"cannot encode block payload: {e}") from e


def encode_unsigned_block(
    payload: bytes,
    algorithm: int,
    next_key: PublicKey,
    extensions: Tuple[Extension, ...],
) -> bytes:
    try:
        return (
            _u32(len(payload)) + payload
            + bytes([algorithm]) + next_key.to_bytes()
            + _encode_extensions(extensions)
        )
    except struct.error as e:
        raise BiscuitSerializationError(f"block field out of range: {e}") from e


def envelope_header(root_key_id: Optional[int]) -> bytes:
    """Magic, version and root key id: the bytes ahead of the block count."""
    if root_key_id is None:
        return MAGIC + bytes([FORMAT_VERSION, 0])
    return MAGIC + bytes([FORMAT_VERSION, 1]) + _u32(root_key_id)


def signed_message(unsigned: bytes, previous: bytes) -> bytes:
    """
    Bytes covered by a block signature.

    `previous` is the envelope header for block 0 and the previous
    block's signature after that, so every signature also covers the
    header through the chain.
    """
    return unsigned + previous


def seal_message(last_block: Block) -> bytes:
    """Bytes covered by the final signature of a sealed chain."""
    return last_block.unsigned_bytes() + last_block.signature


def encode_envelope(envelope: Envelope) -> bytes:
    """
    Serialize a chain.

    Raises:
        BiscuitSerializationError: a length or identifier does not fit its field
    """
    try:
        out = [envelope_header(envelope.root_key_id)]
        out.append(_u32(len(envelope.blocks)))
        for block in envelope.blocks:
            out.append(block.to_bytes())
        if envelope.proof.sealed:
            out.append(bytes([PROOF_FINAL_SIGNATURE]) + envelope.proof.final_signature)
        else:
            out.append(bytes([PROOF_NEXT_SECRET]) + envelope.proof.next_secret.to_bytes())
    except struct.error as e:
        raise BiscuitSerializationError(f"token field out of range: {e}") from e
    return b"".join(out)


class _Reader:
    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def read(self, n: int, what: str) -> bytes:
        end = self._pos + n
        if end > len(self._data):
            raise BiscuitValidationError(f"truncated token: missing {what}")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def u8(self, what: str) -> int:
        return self.read(1, what)[0]

    def u16(self, what: str) -> int:
        return struct.unpack(">H", self.read(2, what))[0]

    def u32(self, what: str) -> int:
        return struct.unpack(">I", self.read(4, what))[0]

    def remaining(self) -> int:
        return len(self._data) - self._pos


def decode_payload(payload: bytes) -> BlockContent:
    """
    Decode a block payload.

    The decoded statements must re-encode to exactly the same bytes, so a
    block has a single valid encoding.
    """
    try:
        content = BlockContent.from_payload(decode_canonical(payload))
    except (ValueError, KeyError, TypeError) as e:
        raise BiscuitValidationError(f"malformed block payload: {e}") from e
    except RecursionError as e:
        raise BiscuitValidationError("malformed block payload: nested too deeply") from e
    if encode_payload(content) != payload:
        raise BiscuitValidationError("block payload is not in canonical form")
    return content


def _decode_block(reader: _Reader, index: int) -> Block:
    payload_len = reader.u32(f"block {index} payload length")
    payload = reader.read(payload_len, f"block {index} payload")
    algorithm = reader.u8(f"block {index} algorithm")
    if algorithm != ALGORITHM_ED25519:
        raise BiscuitValidationError(f"block {index}: unsupported signature algorithm {algorithm}")
    next_key = PublicKey(reader.read(KEY_LENGTH, f"block {index} next key"))
    signature = reader.read(SIGNATURE_LENGTH, f"block {index} signature")
    extensions: List[Extension] = []
    seen = set()
    for _ in range(reader.u16(f"block {index} extension count")):
        tag = reader.u16(f"block {index} extension tag")
        if tag in seen:
            raise BiscuitValidationError(f"block {index}: duplicate extension tag {tag}")
        seen.add(tag)
        length = reader.u32(f"block {index} extension length")
        extensions.append((tag, reader.read(length, f"block {index} extension data")))
    return Block(
        content=decode_payload(payload),
        payload=payload,
        next_key=next_key,
        signature=signature,
        extensions=tuple(extensions),
        algorithm=algorithm,
    )


def decode_envelope(data: bytes) -> Envelope:
    """
    Parse a serialized chain without checking signatures.

    Raises:
        BiscuitValidationError: any structural problem
    """
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise BiscuitValidationError(f"token data must be bytes, got {type(data).__name__}")
    reader = _Reader(bytes(data))
    if reader.read(len(MAGIC), "magic") != MAGIC:
        raise BiscuitValidationError("not a chaintoken: bad magic")
    version = reader.u8("version")
    if version != FORMAT_VERSION:
        raise BiscuitValidationError(f"unsupported token version {version}")

    flag = reader.u8("root key id flag")
    if flag == 0:
        root_key_id = None
    elif flag == 1:
        root_key_id = reader.u32("root key id")
    else:
        raise BiscuitValidationError(f"invalid root key id flag {flag}")

    count = reader.u32("block count")
    if count < 1:
        raise BiscuitValidationError("token has no blocks")
    blocks = tuple(_decode_block(reader, i) for i in range(count))

    kind = reader.u8("proof")
    if kind == PROOF_NEXT_SECRET:
        proof = Proof(next_secret=PrivateKey(reader.read(KEY_LENGTH, "proof secret")))
    elif kind == PROOF_FINAL_SIGNATURE:
        proof = Proof(final_signature=reader.read(SIGNATURE_LENGTH, "proof signature"))
    else:
        raise BiscuitValidationError(f"invalid proof kind {kind}")

    if reader.remaining():
        raise BiscuitValidationError(f"{reader.remaining()} trailing byte(s) after token")
    return Envelope(blocks=blocks, proof=proof, root_key_id=root_key_id)
