"""
chaintoken Datalog engine

Origin-tagged fact store and bounded fixpoint evaluation.

Every fact carries its origin: the set of block indices (plus
AUTHORIZER_ORIGIN) it was declared in or derived from. A rule or check
only sees facts whose whole origin lies inside its trusted scope, so a
block appended later can never feed facts to the authority block or to
the authorizer's own rules and policies.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from . import config
from .errors import DataLogError
from .expressions import ExpressionError
from .statements import Check, CheckKind, Fact, Query, Rule
from .terms import Bool, Predicate, Term, Variable

logger = logging.getLogger(__name__)

AUTHORIZER_ORIGIN = -1

Origin = FrozenSet[int]
Bindings = Dict[str, Term]


@dataclass(frozen=True)
class RunLimits:
    """
    Bounds on one fixpoint evaluation.

    Exceeding any of them aborts evaluation with DataLogError.
    """
    max_facts: int = config.MAX_FACTS
    max_iterations: int = config.MAX_ITERATIONS
    max_time: timedelta = field(
        default_factory=lambda: timedelta(milliseconds=config.MAX_TIME_MS)
    )

    def __post_init__(self):
        if self.max_facts < 1 or self.max_iterations < 1:
            raise ValueError("run limits must be positive")
        if self.max_time <= timedelta(0):
            raise ValueError("max_time must be positive")

    @classmethod
    def from_env(cls) -> "RunLimits":
        values = config.limits_from_env()
        return cls(
            max_facts=values["max_facts"],
            max_iterations=values["max_iterations"],
            max_time=timedelta(milliseconds=values["max_time_ms"]),
        )


def block_scope(index: int) -> Origin:
    """Origins visible to statements of block `index`: blocks 0..index and the authorizer."""
    return frozenset(range(index + 1)) | {AUTHORIZER_ORIGIN}


AUTHORIZER_SCOPE: Origin = frozenset({0, AUTHORIZER_ORIGIN})


class FactSet:
    """Facts grouped by origin. The same fact may exist under several origins."""

    def __init__(self):
        self._facts: Dict[Origin, Set[Fact]] = {}
        self._count = 0

    def add(self, origin: Origin, fact: Fact) -> bool:
        bucket = self._facts.setdefault(origin, set())
        if fact in bucket:
            return False
        bucket.add(fact)
        self._count += 1
        return True

    def has(self, origin: Origin, fact: Fact) -> bool:
        return fact in self._facts.get(origin, ())

    def visible(self, scope: Origin) -> Iterator[Tuple[Origin, Fact]]:
        for origin, facts in self._facts.items():
            if origin <= scope:
                for fact in facts:
                    yield origin, fact

    def __len__(self) -> int:
        return self._count

    def __contains__(self, fact: Fact) -> bool:
        return any(fact in facts for facts in self._facts.values())


_Index = Dict[Tuple[str, int], List[Tuple[Origin, Fact]]]


def _index(facts: FactSet, scope: Origin) -> _Index:
    index: _Index = {}
    for origin, fact in facts.visible(scope):
        index.setdefault((fact.name, len(fact.terms)), []).append((origin, fact))
    return index


def _unify(pattern: Predicate, fact: Fact, bindings: Bindings) -> Optional[Bindings]:
    result = bindings
    for expected, actual in zip(pattern.terms, fact.terms):
        if isinstance(expected, Variable):
            bound = result.get(expected.name)
            if bound is None:
                if result is bindings:
                    result = dict(bindings)
                result[expected.name] = actual
            elif bound != actual:
                return None
        elif expected != actual:
            return None
    return result


class _Clock:
    """
    Wall-clock budget shared by rule, check and policy evaluation.

    The deadline starts on first use and covers every later call on the
    same World.
    """

    CHECK_EVERY = 64

    def __init__(self, max_time: timedelta):
        self.max_time = max_time
        self.deadline: Optional[float] = None
        self._steps = 0

    def start(self) -> None:
        if self.deadline is None:
            self.deadline = time.monotonic() + self.max_time.total_seconds()

    def tick(self) -> None:
        self._steps += 1
        if self._steps % self.CHECK_EVERY == 0:
            self.check()

    def check(self) -> None:
        self.start()
        if time.monotonic() > self.deadline:
            raise DataLogError(
                f"evaluation limit exceeded: ran longer than {self.max_time}"
            )

    def remaining(self) -> float:
        self.start()
        return max(self.deadline - time.monotonic(), 0.0)


def _body_matches(
    body: Tuple[Predicate, ...],
    index: _Index,
    bindings: Bindings,
    origin: Origin,
    clock: _Clock,
) -> Iterator[Tuple[Bindings, Origin]]:
    if not body:
        yield bindings, origin
        return
    first, rest = body[0], body[1:]
    for fact_origin, fact in index.get((first.name, first.arity), ()):
        clock.tick()
        unified = _unify(first, fact, bindings)
        if unified is not None:
            yield from _body_matches(rest, index, unified, origin | fact_origin, clock)


def _expressions_hold(query: Query, bindings: Bindings, clock: _Clock) -> bool:
    for expression in query.expressions:
        try:
            result = expression.evaluate(bindings, timeout=clock.remaining())
        except ExpressionError as e:
            logger.debug("expression %s failed: %s", expression, e)
            return False
        if result != Bool(True):
            return False
    return True


def query_matches(
    query: Query, index: _Index, clock: _Clock
) -> Iterator[Tuple[Bindings, Origin]]:
    """Body matches of `query` that also satisfy all of its expressions."""
    for bindings, origin in _body_matches(query.body, index, {}, frozenset(), clock):
        if _expressions_hold(query, bindings, clock):
            yield bindings, origin


def _substitute(head: Predicate, bindings: Bindings) -> Fact:
    terms = tuple(
        bindings[t.name] if isinstance(t, Variable) else t
        for t in head.terms
    )
    return Fact(Predicate(head.name, terms))


@dataclass
class _ScopedRule:
    rule: Rule
    origin: int
    scope: Origin


class World:
    """
    Facts and rules for a single authorization run.

    Built fresh for each decision and discarded afterwards. The time limit
    runs from the first evaluation on this World and bounds the fixpoint
    together with every later check, policy and query.
    """

    def __init__(self, limits: Optional[RunLimits] = None):
        self.limits = limits or RunLimits()
        self.facts = FactSet()
        self._rules: List[_ScopedRule] = []
        self._clock = _Clock(self.limits.max_time)

    def add_fact(self, origin: int, fact: Fact) -> None:
        self.facts.add(frozenset({origin}), fact)

    def add_rule(self, origin: int, rule: Rule, scope: Origin) -> None:
        self._rules.append(_ScopedRule(rule, origin, scope))

    def run(self) -> None:
        """
        Apply every rule until no new fact appears.

        Facts derived in one iteration only become visible to rules in the
        next one.

        Raises:
            DataLogError: fact, iteration or time limit exceeded
        """
        self._clock.start()
        self._check_size()
        iterations = 0
        while True:
            pending: Set[Tuple[Origin, Fact]] = set()
            indexes: Dict[Origin, _Index] = {}
            for scoped in self._rules:
                index = indexes.get(scoped.scope)
                if index is None:
                    index = indexes[scoped.scope] = _index(self.facts, scoped.scope)
                for bindings, origin in query_matches(scoped.rule.query, index, self._clock):
                    fact = _substitute(scoped.rule.head, bindings)
                    origin = origin | {scoped.origin}
                    if (origin, fact) not in pending and not self.facts.has(origin, fact):
                        pending.add((origin, fact))
                        self._check_size(len(pending))
                self._clock.check()

            for origin, fact in pending:
                self.facts.add(origin, fact)
            iterations += 1
            if not pending:
                logger.debug(
                    "fixpoint reached after %d iteration(s) with %d fact(s)",
                    iterations, len(self.facts)
                )
                return
            if iterations >= self.limits.max_iterations:
                raise DataLogError(
                    "evaluation limit exceeded: no fixpoint after "
                    f"{self.limits.max_iterations} iterations"
                )

    def _check_size(self, pending: int = 0) -> None:
        if len(self.facts) + pending > self.limits.max_facts:
            raise DataLogError(
                f"evaluation limit exceeded: more than {self.limits.max_facts} facts"
            )

    def check_passes(self, check: Check, scope: Origin) -> bool:
        self._clock.check()
        index = _index(self.facts, scope)
        for query in check.queries:
            if check.kind == CheckKind.ONE:
                if any(True for _ in query_matches(query, index, self._clock)):
                    return True
            elif all(
                _expressions_hold(query, bindings, self._clock)
                for bindings, _ in _body_matches(query.body, index, {}, frozenset(), self._clock)
            ):
                return True
        return False

    def query_passes(self, query: Query, scope: Origin) -> bool:
        self._clock.check()
        index = _index(self.facts, scope)
        return any(True for _ in query_matches(query, index, self._clock))

    def query_rule(self, rule: Rule, scope: Origin) -> List[Fact]:
        """Facts produced by `rule` over the current fact set, without storing them."""
        self._clock.check()
        index = _index(self.facts, scope)
        seen: Dict[Fact, None] = {}
        for bindings, _ in query_matches(rule.query, index, self._clock):
            seen.setdefault(_substitute(rule.head, bindings), None)
            if len(seen) > self.limits.max_facts:
                raise DataLogError(
                    f"evaluation limit exceeded: more than {self.limits.max_facts} facts"
                )
        return list(seen)
