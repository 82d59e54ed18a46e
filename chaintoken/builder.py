"""
chaintoken block builders

BlockBuilder accumulates the statements of one block before it is signed.
It is mutable while being filled and is consumed exactly once, by
BiscuitBuilder.build (authority block) or Biscuit.append (attenuation);
any later use raises BiscuitBuildError.
"""

from typing import TYPE_CHECKING, Dict, List, Optional, Tuple, Union

from .errors import BiscuitBuildError, DataLogError
from .format import MAX_EXTENSION_TAG, BlockContent, Extension
from .parser import parse_check, parse_fact, parse_rule, parse_source
from .signing import KeyPair
from .statements import Check, Fact, Rule

if TYPE_CHECKING:
    from .token import Biscuit


class BlockBuilder:
    """
    Statements for a new block.

    Example:
        block = token.create_block()
        block.add_check('check if operation("read")')
        token = token.append(block)
    """

    def __init__(self):
        self._facts: List[Fact] = []
        self._rules: List[Rule] = []
        self._checks: List[Check] = []
        self._context: Optional[str] = None
        self._extensions: Dict[int, bytes] = {}
        self._consumed = False

    def _ensure_open(self) -> None:
        if self._consumed:
            raise BiscuitBuildError("block builder was already used to build a block")

    def add_fact(self, fact: Union[str, Fact]) -> None:
        """Adds a Datalog fact."""
        self._ensure_open()
        self._facts.append(fact if isinstance(fact, Fact) else parse_fact(fact))

    def add_rule(self, rule: Union[str, Rule]) -> None:
        """Adds a Datalog rule."""
        self._ensure_open()
        self._rules.append(rule if isinstance(rule, Rule) else parse_rule(rule))

    def add_check(self, check: Union[str, Check]) -> None:
        """Adds a check."""
        self._ensure_open()
        self._checks.append(check if isinstance(check, Check) else parse_check(check))

    def add_code(self, source: str) -> None:
        """
        Adds facts, rules and checks from a chunk of Datalog source.

        Policies only exist on the authorizer; a chunk containing one is
        rejected as a whole.
        """
        self._ensure_open()
        parsed = parse_source(source)
        if parsed.policies:
            raise DataLogError(
                f"policies are not allowed in blocks: {parsed.policies[0]}"
            )
        self._facts.extend(parsed.facts)
        self._rules.extend(parsed.rules)
        self._checks.extend(parsed.checks)

    def set_context(self, context: str) -> None:
        """Free-form text stored with the block, e.g. a delegation reason."""
        self._ensure_open()
        if not isinstance(context, str):
            raise BiscuitBuildError("block context must be a string")
        self._context = context

    def add_extension(self, tag: int, data: bytes) -> None:
        """Attaches opaque bytes under a numeric tag; carried verbatim on the wire."""
        self._ensure_open()
        if isinstance(tag, bool) or not isinstance(tag, int) or not 0 <= tag <= MAX_EXTENSION_TAG:
            raise BiscuitBuildError(f"extension tag must be in 0..{MAX_EXTENSION_TAG}, got {tag!r}")
        if not isinstance(data, (bytes, bytearray)):
            raise BiscuitBuildError("extension data must be bytes")
        if tag in self._extensions:
            raise BiscuitBuildError(f"extension tag {tag} already set")
        self._extensions[tag] = bytes(data)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def content(self) -> BlockContent:
        return BlockContent(
            facts=tuple(self._facts),
            rules=tuple(self._rules),
            checks=tuple(self._checks),
            context=self._context,
        )

    def extensions(self) -> Tuple[Extension, ...]:
        return tuple(self._extensions.items())

    def _snapshot(self) -> Tuple[BlockContent, Tuple[Extension, ...]]:
        self._ensure_open()
        return self.content(), self.extensions()

    def _mark_consumed(self) -> None:
        self._consumed = True

    def __str__(self) -> str:
        return self.content().source()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(facts={len(self._facts)}, rules={len(self._rules)}, "
            f"checks={len(self._checks)}, consumed={self._consumed})"
        )


class BiscuitBuilder(BlockBuilder):
    """
    Builder for the authority block of a new token.

    Example:
        builder = BiscuitBuilder()
        builder.add_fact('user("alice")')
        token = builder.build(root_keypair)
    """

    def add_authority_fact(self, fact: Union[str, Fact]) -> None:
        self.add_fact(fact)

    def add_authority_rule(self, rule: Union[str, Rule]) -> None:
        self.add_rule(rule)

    def add_authority_check(self, check: Union[str, Check]) -> None:
        self.add_check(check)

    def build(self, root: KeyPair, root_key_id: Optional[int] = None) -> "Biscuit":
        """
        Signs the authority block with the root private key.

        Raises:
            BiscuitBuildError: builder already used, or signing failed
        """
        from .token import Biscuit

        return Biscuit.build(root, self, root_key_id=root_key_id)
