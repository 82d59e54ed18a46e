"""
chaintoken token chain

A Biscuit is an immutable chain of signed blocks. Block 0 (the authority
block) is signed by the root key; every block embeds a fresh "next" public
key whose secret half signs the following block, so a holder can attenuate
the token offline without the root private key. The secret for the last
block travels in the token's proof until the token is sealed.

Verification re-derives each block's expected signer from the previous
block: block 0 against the root public key, block i against block i-1's
next key. Block 0's signature covers the envelope header (version and
root key id) and each later signature covers the previous block's
signature, so tampering with the header or any block invalidates every
later one.
"""

from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Union

from .builder import BiscuitBuilder, BlockBuilder
from .errors import (
    BiscuitBuildError,
    BiscuitSerializationError,
    BiscuitValidationError,
)
from .format import (
    Block,
    BlockContent,
    Envelope,
    Extension,
    Proof,
    decode_envelope,
    encode_envelope,
    encode_payload,
    encode_unsigned_block,
    envelope_header,
    seal_message,
    signed_message,
)
from .hashing import revocation_id
from .logging_config import audit_log
from .signing import ALGORITHM_ED25519, KeyPair, PrivateKey, PublicKey
from .util import b64url_decode, b64url_encode

if TYPE_CHECKING:
    from .authorizer import Authorizer
    from .world import RunLimits


MAX_ROOT_KEY_ID = 0xFFFFFFFF

RootKey = Union[PublicKey, Callable[[Optional[int]], PublicKey]]


def _sign_block(
    content: BlockContent,
    extensions: Tuple[Extension, ...],
    signer: PrivateKey,
    previous: bytes,
) -> Tuple[Block, KeyPair]:
    next_keypair = KeyPair()
    payload = encode_payload(content)
    unsigned = encode_unsigned_block(
        payload, ALGORITHM_ED25519, next_keypair.public_key, extensions
    )
    signature = signer.sign(signed_message(unsigned, previous))
    block = Block(
        content=content,
        payload=payload,
        next_key=next_keypair.public_key,
        signature=signature,
        extensions=extensions,
    )
    return block, next_keypair


def _resolve_root(root: RootKey, root_key_id: Optional[int]) -> PublicKey:
    if isinstance(root, PublicKey):
        return root
    if not callable(root):
        raise BiscuitValidationError(
            f"root must be a PublicKey or a callable, got {type(root).__name__}"
        )
    try:
        key = root(root_key_id)
    except (LookupError, ValueError) as e:
        raise BiscuitValidationError(f"no root key for key id {root_key_id}: {e}") from e
    if not isinstance(key, PublicKey):
        raise BiscuitValidationError(f"no root key for key id {root_key_id}")
    return key


def _verify_chain(root_key: PublicKey, envelope: Envelope) -> None:
    signer = root_key
    previous = envelope_header(envelope.root_key_id)
    for index, block in enumerate(envelope.blocks):
        message = signed_message(block.unsigned_bytes(), previous)
        if not signer.verify(message, block.signature):
            raise BiscuitValidationError(f"invalid signature on block {index}")
        signer = block.next_key
        previous = block.signature

    last = envelope.blocks[-1]
    if envelope.proof.sealed:
        if not last.next_key.verify(seal_message(last), envelope.proof.final_signature):
            raise BiscuitValidationError("invalid final signature on sealed token")
    elif envelope.proof.next_secret.public_key() != last.next_key:
        raise BiscuitValidationError("proof secret does not match the last block")


class Biscuit:
    """
    Signed, attenuable authorization token.

    Instances are immutable: append() and seal() return new tokens that
    share the existing Block objects.
    """

    def __init__(
        self,
        root_key: PublicKey,
        blocks: Tuple[Block, ...],
        proof: Proof,
        root_key_id: Optional[int] = None
    ):
        self._root_key = root_key
        self._blocks = tuple(blocks)
        self._proof = proof
        self._root_key_id = root_key_id

    # --- Construction ---

    @staticmethod
    def builder() -> BiscuitBuilder:
        return BiscuitBuilder()

    @classmethod
    def build(
        cls,
        root: KeyPair,
        block0: BlockBuilder,
        root_key_id: Optional[int] = None
    ) -> "Biscuit":
        """
        Create a token whose authority block holds block0's statements.

        Raises:
            BiscuitBuildError: invalid arguments, builder already used, or
                the block could not be encoded
        """
        if not isinstance(root, KeyPair):
            raise BiscuitBuildError("root must be a KeyPair")
        if not isinstance(block0, BlockBuilder):
            raise BiscuitBuildError("block0 must be a BlockBuilder")
        if root_key_id is not None and (
            isinstance(root_key_id, bool)
            or not isinstance(root_key_id, int)
            or not 0 <= root_key_id <= MAX_ROOT_KEY_ID
        ):
            raise BiscuitBuildError(f"root key id must fit in 32 bits, got {root_key_id!r}")

        content, extensions = block0._snapshot()
        try:
            block, next_keypair = _sign_block(
                content, extensions, root.private_key, envelope_header(root_key_id)
            )
        except BiscuitSerializationError as e:
            raise BiscuitBuildError(f"cannot build authority block: {e}") from e
        block0._mark_consumed()

        token = cls(
            root.public_key,
            (block,),
            Proof(next_secret=next_keypair.private_key),
            root_key_id,
        )
        audit_log.token_built(token.root_key_fingerprint, root_key_id)
        return token

    def create_block(self) -> BlockBuilder:
        return BlockBuilder()

    def append(self, block: BlockBuilder) -> "Biscuit":
        """
        Attenuate: return a new token with one more block.

        The new block is signed with the secret carried in this token's
        proof; no root key is involved.

        Raises:
            BiscuitBuildError: token sealed, builder already used, or the
                block could not be encoded
        """
        if self.sealed:
            raise BiscuitBuildError("cannot append to a sealed token")
        if not isinstance(block, BlockBuilder):
            raise BiscuitBuildError("block must be a BlockBuilder")

        content, extensions = block._snapshot()
        try:
            new_block, next_keypair = _sign_block(
                content,
                extensions,
                self._proof.next_secret,
                self._blocks[-1].signature,
            )
        except BiscuitSerializationError as e:
            raise BiscuitBuildError(f"cannot build block {len(self._blocks)}: {e}") from e
        block._mark_consumed()

        token = Biscuit(
            self._root_key,
            self._blocks + (new_block,),
            Proof(next_secret=next_keypair.private_key),
            self._root_key_id,
        )
        audit_log.token_attenuated(token.root_key_fingerprint, token.block_count())
        return token

    def seal(self) -> "Biscuit":
        """
        Return a sealed copy that can no longer be attenuated.

        The proof secret is replaced by a signature over the last block.
        """
        if self.sealed:
            raise BiscuitBuildError("token is already sealed")
        final_signature = self._proof.next_secret.sign(seal_message(self._blocks[-1]))
        token = Biscuit(
            self._root_key,
            self._blocks,
            Proof(final_signature=final_signature),
            self._root_key_id,
        )
        audit_log.token_sealed(token.root_key_fingerprint, token.block_count())
        return token

    # --- Serialization ---

    @classmethod
    def from_bytes(cls, data: bytes, root: RootKey) -> "Biscuit":
        """
        Deserialize and verify a token.

        Args:
            data: Serialized token
            root: The root public key, or a callable mapping the token's
                root key id (None when absent) to the root public key

        Raises:
            BiscuitValidationError: malformed data or invalid signature
        """
        try:
            envelope = decode_envelope(data)
            root_key = _resolve_root(root, envelope.root_key_id)
            _verify_chain(root_key, envelope)
        except BiscuitValidationError as e:
            audit_log.token_rejected(str(e))
            raise

        token = cls(root_key, envelope.blocks, envelope.proof, envelope.root_key_id)
        audit_log.token_verified(token.root_key_fingerprint, token.block_count(), token.sealed)
        return token

    @classmethod
    def from_base64(cls, data: Union[str, bytes], root: RootKey) -> "Biscuit":
        """Deserialize and verify a token from URL-safe base64."""
        try:
            raw = b64url_decode(data)
        except (ValueError, TypeError) as e:
            audit_log.token_rejected(f"invalid base64: {e}")
            raise BiscuitValidationError(f"invalid base64 token: {e}") from e
        return cls.from_bytes(raw, root)

    def to_bytes(self) -> bytes:
        """
        Raises:
            BiscuitSerializationError: a field does not fit the wire format
        """
        return encode_envelope(Envelope(self._blocks, self._proof, self._root_key_id))

    def to_base64(self) -> str:
        return b64url_encode(self.to_bytes())

    # --- Inspection ---

    def block_count(self) -> int:
        return len(self._blocks)

    def block_source(self, index: int) -> Optional[str]:
        """Datalog source of one block, or None if index is out of range."""
        if not isinstance(index, int) or not 0 <= index < len(self._blocks):
            return None
        return self._blocks[index].content.source()

    def block_context(self, index: int) -> Optional[str]:
        if not isinstance(index, int) or not 0 <= index < len(self._blocks):
            return None
        return self._blocks[index].content.context

    def block_extensions(self, index: int) -> Dict[int, bytes]:
        if not isinstance(index, int) or not 0 <= index < len(self._blocks):
            return {}
        return dict(self._blocks[index].extensions)

    def revocation_ids(self) -> List[str]:
        """One identifier per block, in block order."""
        return [revocation_id(block.signature) for block in self._blocks]

    @property
    def blocks(self) -> Tuple[Block, ...]:
        return self._blocks

    @property
    def root_key(self) -> PublicKey:
        return self._root_key

    @property
    def root_key_id(self) -> Optional[int]:
        return self._root_key_id

    @property
    def root_key_fingerprint(self) -> str:
        return self._root_key.fingerprint

    @property
    def sealed(self) -> bool:
        return self._proof.sealed

    def authorizer(self, limits: Optional["RunLimits"] = None) -> "Authorizer":
        """Authorizer bound to this token."""
        from .authorizer import Authorizer

        return Authorizer(token=self, limits=limits)

    def __repr__(self) -> str:
        return (
            f"Biscuit(blocks={len(self._blocks)}, sealed={self.sealed}, "
            f"root={self.root_key_fingerprint})"
        )


TokenChain = Biscuit
