"""
chaintoken Authorizer

Merges a token's blocks with local facts, rules, checks and policies, runs
the fixpoint evaluation and decides:

1. Every check must pass: the authorizer's own checks first, then each
   block's checks in order. Any failure denies the request, and all
   failing checks are reported.
2. Policies are tried in insertion order; the first one with a matching
   query decides. allow returns its index, deny raises.
3. If no policy matches, the request is denied.

Evaluation state lives in a World built for each call and dropped
afterwards, so an Authorizer can be asked repeatedly with the same result.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union

from .errors import AuthorizationError
from .logging_config import audit_log
from .parser import parse_check, parse_fact, parse_policy, parse_rule, parse_source
from .statements import Check, Fact, Policy, PolicyKind, Rule
from .terms import Date, Predicate
from .token import Biscuit
from .util import datetime_to_epoch
from .world import (
    AUTHORIZER_ORIGIN,
    AUTHORIZER_SCOPE,
    RunLimits,
    World,
    block_scope,
)

logger = logging.getLogger(__name__)


class AuthorizerState(str, Enum):
    """
    INIT: nothing loaded
    LOADED: token and/or local statements present
    EVALUATING: fixpoint and checks running
    ALLOWED: an allow policy matched (terminal)
    DENIED: a check failed, a deny policy matched, or none matched (terminal)
    """
    INIT = "INIT"
    LOADED = "LOADED"
    EVALUATING = "EVALUATING"
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


@dataclass(frozen=True)
class FailedCheck:
    """A check that did not pass. block is None for the authorizer's own checks."""
    block: Optional[int]
    index: int
    check: Check

    def __str__(self) -> str:
        if self.block is None:
            return f"Authorizer check {self.index}: {self.check}"
        return f"Block {self.block}, check {self.index}: {self.check}"


@dataclass(frozen=True)
class MatchedPolicy:
    index: int
    policy: Policy

    def __str__(self) -> str:
        return f"policy {self.index}: {self.policy}"


@dataclass
class AuthorizationResult:
    """Outcome of one evaluation."""
    state: AuthorizerState
    policy: Optional[MatchedPolicy] = None
    failed_checks: List[FailedCheck] = field(default_factory=list)

    def allowed(self) -> bool:
        return self.state == AuthorizerState.ALLOWED

    @property
    def policy_index(self) -> Optional[int]:
        return self.policy.index if self.policy else None

    def message(self) -> str:
        if self.allowed():
            return f"allowed by {self.policy}"
        if self.failed_checks:
            details = "; ".join(str(c) for c in self.failed_checks)
            return (
                f"authorization failed: {len(self.failed_checks)} check(s) failed: {details}"
            )
        if self.policy is not None:
            return f"authorization failed: matched deny {self.policy}"
        return "authorization failed: no policy matched"


class Authorizer:
    """
    Policy engine for one token, or for local statements only.

    Example:
        authorizer = token.authorizer()
        authorizer.add_fact('resource("file1")')
        authorizer.add_policy('allow if user("alice"), resource("file1")')
        index = authorizer.authorize()
    """

    def __init__(self, token: Optional[Biscuit] = None, limits: Optional[RunLimits] = None):
        if token is not None and not isinstance(token, Biscuit):
            raise TypeError(f"token must be a Biscuit, got {type(token).__name__}")
        self._token = token
        self._limits = limits or RunLimits()
        self._facts: List[Fact] = []
        self._rules: List[Rule] = []
        self._checks: List[Check] = []
        self._policies: List[Policy] = []

    @property
    def token(self) -> Optional[Biscuit]:
        return self._token

    @property
    def limits(self) -> RunLimits:
        return self._limits

    @property
    def state(self) -> AuthorizerState:
        loaded = self._token is not None or any(
            (self._facts, self._rules, self._checks, self._policies)
        )
        return AuthorizerState.LOADED if loaded else AuthorizerState.INIT

    # --- Loading ---

    def add_fact(self, fact: Union[str, Fact]) -> None:
        self._facts.append(fact if isinstance(fact, Fact) else parse_fact(fact))

    def add_rule(self, rule: Union[str, Rule]) -> None:
        self._rules.append(rule if isinstance(rule, Rule) else parse_rule(rule))

    def add_check(self, check: Union[str, Check]) -> None:
        self._checks.append(check if isinstance(check, Check) else parse_check(check))

    def add_policy(self, policy: Union[str, Policy]) -> None:
        self._policies.append(policy if isinstance(policy, Policy) else parse_policy(policy))

    def add_code(self, source: str) -> None:
        """Adds facts, rules, checks and policies from a chunk of Datalog source."""
        parsed = parse_source(source)
        self._facts.extend(parsed.facts)
        self._rules.extend(parsed.rules)
        self._checks.extend(parsed.checks)
        self._policies.extend(parsed.policies)

    def set_time(self, when: Union[datetime, int, None] = None) -> None:
        """Adds time(<date>), for now or for the given datetime or epoch seconds."""
        if when is None:
            when = datetime.now(timezone.utc)
        seconds = when if isinstance(when, int) else datetime_to_epoch(when)
        self._facts.append(Fact(Predicate("time", (Date(seconds),))))

    # --- Evaluation ---

    def _build_world(self) -> World:
        world = World(self._limits)
        if self._token is not None:
            for index, block in enumerate(self._token.blocks):
                scope = block_scope(index)
                for fact in block.content.facts:
                    world.add_fact(index, fact)
                for rule in block.content.rules:
                    world.add_rule(index, rule, scope)
        for fact in self._facts:
            world.add_fact(AUTHORIZER_ORIGIN, fact)
        for rule in self._rules:
            world.add_rule(AUTHORIZER_ORIGIN, rule, AUTHORIZER_SCOPE)
        world.run()
        return world

    def _failed_checks(self, world: World) -> List[FailedCheck]:
        failed = [
            FailedCheck(None, i, check)
            for i, check in enumerate(self._checks)
            if not world.check_passes(check, AUTHORIZER_SCOPE)
        ]
        if self._token is not None:
            for b, block in enumerate(self._token.blocks):
                scope = block_scope(b)
                failed.extend(
                    FailedCheck(b, i, check)
                    for i, check in enumerate(block.content.checks)
                    if not world.check_passes(check, scope)
                )
        return failed

    def evaluate(self) -> AuthorizationResult:
        """
        Run the full decision without raising on denial.

        Raises:
            DataLogError: an evaluation limit was exceeded
        """
        logger.debug("authorizer state %s -> %s", self.state.value, AuthorizerState.EVALUATING.value)
        world = self._build_world()

        failed = self._failed_checks(world)
        if failed:
            result = AuthorizationResult(AuthorizerState.DENIED, failed_checks=failed)
        else:
            result = AuthorizationResult(AuthorizerState.DENIED)
            for index, policy in enumerate(self._policies):
                if any(world.query_passes(q, AUTHORIZER_SCOPE) for q in policy.queries):
                    matched = MatchedPolicy(index, policy)
                    state = (
                        AuthorizerState.ALLOWED
                        if policy.kind == PolicyKind.ALLOW
                        else AuthorizerState.DENIED
                    )
                    result = AuthorizationResult(state, policy=matched)
                    break

        audit_log.authorization_decision(
            result.state.value,
            policy_index=result.policy_index,
            failed_checks=len(result.failed_checks),
            root_key_fingerprint=self._token.root_key_fingerprint if self._token else None,
        )
        return result

    def authorize(self) -> int:
        """
        Decide the request.

        Returns:
            Index of the matching allow policy

        Raises:
            AuthorizationError: a check failed, a deny policy matched, or no
                policy matched
            DataLogError: an evaluation limit was exceeded
        """
        result = self.evaluate()
        if result.allowed():
            return result.policy.index
        raise AuthorizationError(
            result.message(),
            failed_checks=result.failed_checks,
            policy=result.policy,
        )

    def query(self, rule: Union[str, Rule]) -> List[Fact]:
        """
        Facts produced by rule after evaluation, with authorizer visibility.

        Raises:
            DataLogError: malformed rule or evaluation limit exceeded
        """
        if not isinstance(rule, Rule):
            rule = parse_rule(rule)
        return self._build_world().query_rule(rule, AUTHORIZER_SCOPE)

    def __repr__(self) -> str:
        return (
            f"Authorizer(state={self.state.value}, token={self._token!r}, "
            f"facts={len(self._facts)}, rules={len(self._rules)}, "
            f"checks={len(self._checks)}, policies={len(self._policies)})"
        )
