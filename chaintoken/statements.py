"""
Datalog statements: facts, rules, checks and policies.

All statements are immutable. Constructors enforce the structural
invariants (facts are ground, rules are safe) and raise ValueError when
they do not hold; the parser and the wire decoder translate that into
their own error kinds.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Tuple

from .expressions import Expression
from .terms import Predicate


def _as_tuple(obj, *names):
    for name in names:
        value = getattr(obj, name)
        if not isinstance(value, tuple):
            object.__setattr__(obj, name, tuple(value))


def _expect_keys(data: Any, required: set, optional: set = frozenset()) -> None:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object, got {type(data).__name__}")
    keys = set(data)
    if not required <= keys or not keys <= required | optional:
        raise ValueError(f"unexpected fields: {sorted(keys)}")


@dataclass(frozen=True)
class Fact:
    predicate: Predicate

    def __post_init__(self):
        if not self.predicate.is_ground():
            raise ValueError(f"fact {self.predicate} contains variables")

    @property
    def name(self) -> str:
        return self.predicate.name

    @property
    def terms(self):
        return self.predicate.terms

    def to_dict(self) -> Dict[str, Any]:
        return self.predicate.to_dict()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Fact":
        return cls(Predicate.from_dict(data, allow_variables=False))

    def __str__(self) -> str:
        return str(self.predicate)


@dataclass(frozen=True)
class Query:
    """
    A conjunction of predicates filtered by expressions.

    Every variable used in an expression must be bound by one of the body
    predicates.
    """
    body: Tuple[Predicate, ...]
    expressions: Tuple[Expression, ...] = ()

    def __post_init__(self):
        _as_tuple(self, "body", "expressions")
        if not self.body and not self.expressions:
            raise ValueError("empty rule body")
        bound = self.bound_variables()
        for expression in self.expressions:
            unbound = sorted(set(expression.variables()) - bound)
            if unbound:
                raise ValueError(
                    "unbound variables in expression "
                    f"{expression}: " + ", ".join(f"${v}" for v in unbound)
                )

    def bound_variables(self) -> set:
        return {v for p in self.body for v in p.variables()}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "body": [p.to_dict() for p in self.body],
            "expressions": [e.to_list() for e in self.expressions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Query":
        _expect_keys(data, {"body", "expressions"})
        if not isinstance(data["body"], list) or not isinstance(data["expressions"], list):
            raise ValueError("query body and expressions must be lists")
        return cls(
            tuple(Predicate.from_dict(p) for p in data["body"]),
            tuple(Expression.from_list(e) for e in data["expressions"]),
        )

    def __str__(self) -> str:
        parts = [str(p) for p in self.body] + [str(e) for e in self.expressions]
        return ", ".join(parts)


@dataclass(frozen=True)
class Rule:
    head: Predicate
    body: Tuple[Predicate, ...]
    expressions: Tuple[Expression, ...] = ()

    def __post_init__(self):
        _as_tuple(self, "body", "expressions")
        query = Query(self.body, self.expressions)
        unbound = sorted(set(self.head.variables()) - query.bound_variables())
        if unbound:
            raise ValueError(
                f"rule head {self.head} uses variables absent from the body: "
                + ", ".join(f"${v}" for v in unbound)
            )

    @property
    def query(self) -> Query:
        return Query(self.body, self.expressions)

    def to_dict(self) -> Dict[str, Any]:
        d = self.query.to_dict()
        d["head"] = self.head.to_dict()
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Rule":
        _expect_keys(data, {"head", "body", "expressions"})
        query = Query.from_dict({"body": data["body"], "expressions": data["expressions"]})
        return cls(Predicate.from_dict(data["head"]), query.body, query.expressions)

    def __str__(self) -> str:
        return f"{self.head} <- {self.query}"


class CheckKind(str, Enum):
    ONE = "if"
    ALL = "all"


@dataclass(frozen=True)
class Check:
    """
    check if q1 or q2 ...: passes when any query has a match.
    check all q1 or q2 ...: passes when, for any query, every body match
    also satisfies that query's expressions.
    """
    queries: Tuple[Query, ...]
    kind: CheckKind = CheckKind.ONE

    def __post_init__(self):
        _as_tuple(self, "queries")
        if not self.queries:
            raise ValueError("check without queries")

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "queries": [q.to_dict() for q in self.queries]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Check":
        _expect_keys(data, {"kind", "queries"})
        if not isinstance(data["queries"], list):
            raise ValueError("check queries must be a list")
        return cls(tuple(Query.from_dict(q) for q in data["queries"]), CheckKind(data["kind"]))

    def __str__(self) -> str:
        prefix = "check if" if self.kind == CheckKind.ONE else "check all"
        return f"{prefix} " + " or ".join(str(q) for q in self.queries)


class PolicyKind(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


@dataclass(frozen=True)
class Policy:
    kind: PolicyKind
    queries: Tuple[Query, ...]

    def __post_init__(self):
        _as_tuple(self, "queries")
        if not self.queries:
            raise ValueError("policy without queries")

    def __str__(self) -> str:
        return f"{self.kind.value} if " + " or ".join(str(q) for q in self.queries)


@dataclass
class SourceResult:
    """Statements parsed from one chunk of Datalog source, in order."""
    facts: List[Fact]
    rules: List[Rule]
    checks: List[Check]
    policies: List[Policy]
