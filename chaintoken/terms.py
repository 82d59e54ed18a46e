"""
Datalog terms and predicates

A term is a tagged variant: String, Integer, Bytes, Bool, Date, Set or
Variable. Values are immutable and hashable so they can live in fact sets.
Each term prints back to the Datalog text it was parsed from and encodes
to a single-key dict for the wire payload.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Iterator, Tuple

from .util import utc_rfc3339


INT_MIN = -(2 ** 63)
INT_MAX = 2 ** 63 - 1
DATE_MAX = 2 ** 64 - 1


class TermType(str, Enum):
    """Wire tags, in canonical sort order."""
    VARIABLE = "var"
    INTEGER = "int"
    STRING = "str"
    DATE = "date"
    BYTES = "bytes"
    BOOL = "bool"
    SET = "set"


_TYPE_ORDER = {t: i for i, t in enumerate(TermType)}

_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\n', '\t': '\\t', '\r': '\\r'}


class Term:
    """Base class; concrete subclasses hold the actual data."""

    type: TermType

    def sort_key(self) -> Tuple:
        return (_TYPE_ORDER[self.type], self.value)

    def to_dict(self) -> Dict[str, Any]:
        return {self.type.value: self.value}


@dataclass(frozen=True)
class Variable(Term):
    name: str
    type = TermType.VARIABLE

    def sort_key(self) -> Tuple:
        return (_TYPE_ORDER[self.type], self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {self.type.value: self.name}

    def __str__(self) -> str:
        return f"${self.name}"


@dataclass(frozen=True)
class Integer(Term):
    value: int
    type = TermType.INTEGER

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise ValueError(f"integer term requires an int, got {self.value!r}")
        if not INT_MIN <= self.value <= INT_MAX:
            raise ValueError(f"integer out of 64-bit range: {self.value}")

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class String(Term):
    value: str
    type = TermType.STRING

    def __post_init__(self):
        if not isinstance(self.value, str):
            raise ValueError(f"string term requires a str, got {self.value!r}")

    def __str__(self) -> str:
        escaped = "".join(_ESCAPES.get(c, c) for c in self.value)
        return f'"{escaped}"'


@dataclass(frozen=True)
class Date(Term):
    """Seconds since the Unix epoch, UTC."""
    value: int
    type = TermType.DATE

    def __post_init__(self):
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise ValueError(f"date term requires an int, got {self.value!r}")
        if not 0 <= self.value <= DATE_MAX:
            raise ValueError(f"date out of range: {self.value}")

    def __str__(self) -> str:
        return utc_rfc3339(self.value)


@dataclass(frozen=True)
class Bytes(Term):
    value: bytes
    type = TermType.BYTES

    def __post_init__(self):
        if not isinstance(self.value, bytes):
            raise ValueError(f"bytes term requires bytes, got {self.value!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {self.type.value: self.value.hex()}

    def __str__(self) -> str:
        return f"hex:{self.value.hex()}"


@dataclass(frozen=True)
class Bool(Term):
    value: bool
    type = TermType.BOOL

    def __post_init__(self):
        if not isinstance(self.value, bool):
            raise ValueError(f"bool term requires a bool, got {self.value!r}")

    def __str__(self) -> str:
        return "true" if self.value else "false"


@dataclass(frozen=True)
class Set(Term):
    """Set of ground, non-set terms."""
    value: FrozenSet[Term]
    type = TermType.SET

    def __post_init__(self):
        if not isinstance(self.value, frozenset):
            object.__setattr__(self, "value", frozenset(self.value))
        for element in self.value:
            if isinstance(element, (Variable, Set)):
                raise ValueError(
                    f"sets cannot contain {element.type.name.lower()} terms"
                )

    def sorted(self) -> Tuple[Term, ...]:
        return tuple(sorted(self.value, key=lambda t: t.sort_key()))

    def sort_key(self) -> Tuple:
        return (_TYPE_ORDER[self.type], tuple(t.sort_key() for t in self.sorted()))

    def to_dict(self) -> Dict[str, Any]:
        return {self.type.value: [t.to_dict() for t in self.sorted()]}

    def __iter__(self) -> Iterator[Term]:
        return iter(self.sorted())

    def __len__(self) -> int:
        return len(self.value)

    def __str__(self) -> str:
        return "[" + ", ".join(str(t) for t in self.sorted()) + "]"


def term_from_dict(data: Dict[str, Any], allow_variables: bool = True) -> Term:
    """
    Decode a wire term.

    Raises:
        ValueError: unknown tag, wrong value type, or a variable where a
            ground term is required
    """
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError(f"term must be a single-key object: {data!r}")
    (tag, value), = data.items()
    try:
        kind = TermType(tag)
    except ValueError:
        raise ValueError(f"unknown term tag: {tag!r}")

    if kind == TermType.VARIABLE:
        if not allow_variables:
            raise ValueError("variables are not allowed here")
        if not isinstance(value, str) or not value:
            raise ValueError(f"invalid variable name: {value!r}")
        return Variable(value)
    if kind == TermType.INTEGER:
        return Integer(value)
    if kind == TermType.STRING:
        return String(value)
    if kind == TermType.DATE:
        return Date(value)
    if kind == TermType.BYTES:
        if not isinstance(value, str):
            raise ValueError(f"bytes term must be hex text: {value!r}")
        return Bytes(bytes.fromhex(value))
    if kind == TermType.BOOL:
        return Bool(value)
    if not isinstance(value, list):
        raise ValueError(f"set term must be a list: {value!r}")
    elements = [term_from_dict(v, allow_variables=False) for v in value]
    result = Set(frozenset(elements))
    if len(result) != len(elements):
        raise ValueError("set term contains duplicate elements")
    return result


@dataclass(frozen=True)
class Predicate:
    name: str
    terms: Tuple[Term, ...]

    def __post_init__(self):
        if not isinstance(self.terms, tuple):
            object.__setattr__(self, "terms", tuple(self.terms))

    @property
    def arity(self) -> int:
        return len(self.terms)

    def variables(self) -> Iterable[str]:
        return (t.name for t in self.terms if isinstance(t, Variable))

    def is_ground(self) -> bool:
        return not any(isinstance(t, Variable) for t in self.terms)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "terms": [t.to_dict() for t in self.terms]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], allow_variables: bool = True) -> "Predicate":
        if not isinstance(data, dict) or set(data) != {"name", "terms"}:
            raise ValueError(f"malformed predicate: {data!r}")
        name = data["name"]
        if not isinstance(name, str) or not name:
            raise ValueError(f"invalid predicate name: {name!r}")
        if not isinstance(data["terms"], list):
            raise ValueError("predicate terms must be a list")
        return cls(name, tuple(term_from_dict(t, allow_variables) for t in data["terms"]))

    def __str__(self) -> str:
        return f"{self.name}(" + ", ".join(str(t) for t in self.terms) + ")"
