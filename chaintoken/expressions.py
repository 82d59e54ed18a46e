"""
Datalog expressions

Expressions are stored in postfix form: a flat sequence of Value, Unary
and Binary ops evaluated with a stack. Explicit parentheses are kept as a
Parens op so an expression prints back exactly as it was written.

Evaluation is strictly typed. Any type mismatch, unbound variable,
integer overflow, division by zero or invalid regex raises
ExpressionError, which rule matching treats as "no match".

Regex matching runs under a timeout so a token-supplied pattern cannot
stall evaluation; running out of time raises DataLogError.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import regex

from .errors import DataLogError
from .terms import (
    Bool,
    Bytes,
    Date,
    Integer,
    Set,
    String,
    Term,
    Variable,
    term_from_dict,
)


class ExpressionError(Exception):
    """An expression could not be evaluated for a given binding."""


class UnaryOp(str, Enum):
    NEGATE = "negate"
    PARENS = "parens"
    LENGTH = "length"


class BinaryOp(str, Enum):
    LESS_THAN = "less_than"
    GREATER_THAN = "greater_than"
    LESS_OR_EQUAL = "less_or_equal"
    GREATER_OR_EQUAL = "greater_or_equal"
    EQUAL = "equal"
    NOT_EQUAL = "not_equal"
    CONTAINS = "contains"
    PREFIX = "prefix"
    SUFFIX = "suffix"
    REGEX = "regex"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    AND = "and"
    OR = "or"
    INTERSECTION = "intersection"
    UNION = "union"
    BITWISE_AND = "bitwise_and"
    BITWISE_OR = "bitwise_or"
    BITWISE_XOR = "bitwise_xor"


# infix operators print as "left op right"
INFIX_SYMBOLS = {
    BinaryOp.LESS_THAN: "<",
    BinaryOp.GREATER_THAN: ">",
    BinaryOp.LESS_OR_EQUAL: "<=",
    BinaryOp.GREATER_OR_EQUAL: ">=",
    BinaryOp.EQUAL: "==",
    BinaryOp.NOT_EQUAL: "!=",
    BinaryOp.ADD: "+",
    BinaryOp.SUB: "-",
    BinaryOp.MUL: "*",
    BinaryOp.DIV: "/",
    BinaryOp.AND: "&&",
    BinaryOp.OR: "||",
    BinaryOp.BITWISE_AND: "&",
    BinaryOp.BITWISE_OR: "|",
    BinaryOp.BITWISE_XOR: "^",
}

# method operators print as "left.method(right)"
METHOD_NAMES = {
    BinaryOp.CONTAINS: "contains",
    BinaryOp.PREFIX: "starts_with",
    BinaryOp.SUFFIX: "ends_with",
    BinaryOp.REGEX: "matches",
    BinaryOp.INTERSECTION: "intersection",
    BinaryOp.UNION: "union",
}


@dataclass(frozen=True)
class Value:
    term: Term

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.term.to_dict()}


@dataclass(frozen=True)
class Unary:
    op: UnaryOp

    def to_dict(self) -> Dict[str, Any]:
        return {"unary": self.op.value}


@dataclass(frozen=True)
class Binary:
    op: BinaryOp

    def to_dict(self) -> Dict[str, Any]:
        return {"binary": self.op.value}


Op = Union[Value, Unary, Binary]


def _op_from_dict(data: Dict[str, Any]) -> Op:
    if not isinstance(data, dict) or len(data) != 1:
        raise ValueError(f"expression op must be a single-key object: {data!r}")
    (tag, value), = data.items()
    if tag == "value":
        return Value(term_from_dict(value))
    if tag == "unary":
        return Unary(UnaryOp(value))
    if tag == "binary":
        return Binary(BinaryOp(value))
    raise ValueError(f"unknown expression op: {tag!r}")


@dataclass(frozen=True)
class Expression:
    ops: Tuple[Op, ...]

    def __post_init__(self):
        if not isinstance(self.ops, tuple):
            object.__setattr__(self, "ops", tuple(self.ops))
        depth = 0
        for op in self.ops:
            if isinstance(op, Value):
                depth += 1
            elif isinstance(op, Unary):
                if depth < 1:
                    raise ValueError("unary op applied to an empty stack")
            else:
                if depth < 2:
                    raise ValueError("binary op needs two operands")
                depth -= 1
        if depth != 1:
            raise ValueError("expression must reduce to exactly one value")

    def variables(self) -> Iterable[str]:
        return (
            op.term.name for op in self.ops
            if isinstance(op, Value) and isinstance(op.term, Variable)
        )

    def evaluate(self, bindings: Dict[str, Term], timeout: Optional[float] = None) -> Term:
        """
        Evaluate against `bindings`.

        `timeout` bounds each regex match in seconds; None leaves it unbounded.
        """
        stack: List[Term] = []
        for op in self.ops:
            if isinstance(op, Value):
                term = op.term
                if isinstance(term, Variable):
                    if term.name not in bindings:
                        raise ExpressionError(f"unbound variable ${term.name}")
                    term = bindings[term.name]
                stack.append(term)
            elif isinstance(op, Unary):
                stack.append(_evaluate_unary(op.op, stack.pop()))
            else:
                right = stack.pop()
                left = stack.pop()
                stack.append(_evaluate_binary(op.op, left, right, timeout))
        return stack[0]

    def to_list(self) -> List[Dict[str, Any]]:
        return [op.to_dict() for op in self.ops]

    @classmethod
    def from_list(cls, data: List[Dict[str, Any]]) -> "Expression":
        if not isinstance(data, list):
            raise ValueError("expression must be a list of ops")
        return cls(tuple(_op_from_dict(op) for op in data))

    def __str__(self) -> str:
        stack: List[str] = []
        for op in self.ops:
            if isinstance(op, Value):
                stack.append(str(op.term))
            elif isinstance(op, Unary):
                inner = stack.pop()
                if op.op == UnaryOp.NEGATE:
                    stack.append(f"!{inner}")
                elif op.op == UnaryOp.PARENS:
                    stack.append(f"({inner})")
                else:
                    stack.append(f"{inner}.length()")
            else:
                right = stack.pop()
                left = stack.pop()
                if op.op in METHOD_NAMES:
                    stack.append(f"{left}.{METHOD_NAMES[op.op]}({right})")
                else:
                    stack.append(f"{left} {INFIX_SYMBOLS[op.op]} {right}")
        return stack[0]


def _checked(value: int) -> Integer:
    try:
        return Integer(value)
    except ValueError:
        raise ExpressionError("integer overflow")


def _truncating_div(a: int, b: int) -> int:
    if b == 0:
        raise ExpressionError("division by zero")
    q = abs(a) // abs(b)
    return q if (a < 0) == (b < 0) else -q


def _evaluate_unary(op: UnaryOp, value: Term) -> Term:
    if op == UnaryOp.PARENS:
        return value
    if op == UnaryOp.NEGATE:
        if isinstance(value, Bool):
            return Bool(not value.value)
        raise ExpressionError(f"cannot negate {value.type.name.lower()}")
    if isinstance(value, String):
        return Integer(len(value.value.encode("utf-8")))
    if isinstance(value, (Bytes, Set)):
        return Integer(len(value.value))
    raise ExpressionError(f"{value.type.name.lower()} has no length")


_ORDERING = {
    BinaryOp.LESS_THAN: lambda a, b: a < b,
    BinaryOp.GREATER_THAN: lambda a, b: a > b,
    BinaryOp.LESS_OR_EQUAL: lambda a, b: a <= b,
    BinaryOp.GREATER_OR_EQUAL: lambda a, b: a >= b,
}

_ARITHMETIC = {
    BinaryOp.ADD: lambda a, b: a + b,
    BinaryOp.SUB: lambda a, b: a - b,
    BinaryOp.MUL: lambda a, b: a * b,
    BinaryOp.DIV: _truncating_div,
    BinaryOp.BITWISE_AND: lambda a, b: a & b,
    BinaryOp.BITWISE_OR: lambda a, b: a | b,
    BinaryOp.BITWISE_XOR: lambda a, b: a ^ b,
}


def _evaluate_binary(
    op: BinaryOp, left: Term, right: Term, timeout: Optional[float] = None
) -> Term:
    if op in _ORDERING:
        if type(left) is type(right) and isinstance(left, (Integer, Date)):
            return Bool(_ORDERING[op](left.value, right.value))
        raise _mismatch(op, left, right)

    if op in (BinaryOp.EQUAL, BinaryOp.NOT_EQUAL):
        if type(left) is not type(right):
            raise _mismatch(op, left, right)
        same = left == right
        return Bool(same if op == BinaryOp.EQUAL else not same)

    if op in _ARITHMETIC:
        if isinstance(left, Integer) and isinstance(right, Integer):
            return _checked(_ARITHMETIC[op](left.value, right.value))
        if op == BinaryOp.ADD and isinstance(left, String) and isinstance(right, String):
            return String(left.value + right.value)
        raise _mismatch(op, left, right)

    if op in (BinaryOp.AND, BinaryOp.OR):
        if isinstance(left, Bool) and isinstance(right, Bool):
            if op == BinaryOp.AND:
                return Bool(left.value and right.value)
            return Bool(left.value or right.value)
        raise _mismatch(op, left, right)

    if op == BinaryOp.CONTAINS:
        if isinstance(left, Set):
            if isinstance(right, Set):
                return Bool(right.value <= left.value)
            return Bool(right in left.value)
        if isinstance(left, String) and isinstance(right, String):
            return Bool(right.value in left.value)
        raise _mismatch(op, left, right)

    if op in (BinaryOp.INTERSECTION, BinaryOp.UNION):
        if isinstance(left, Set) and isinstance(right, Set):
            if op == BinaryOp.INTERSECTION:
                return Set(left.value & right.value)
            return Set(left.value | right.value)
        raise _mismatch(op, left, right)

    if not (isinstance(left, String) and isinstance(right, String)):
        raise _mismatch(op, left, right)
    if op == BinaryOp.PREFIX:
        return Bool(left.value.startswith(right.value))
    if op == BinaryOp.SUFFIX:
        return Bool(left.value.endswith(right.value))
    try:
        return Bool(regex.search(right.value, left.value, timeout=timeout) is not None)
    except regex.error as e:
        raise ExpressionError(f"invalid regex {right.value!r}: {e}")
    except TimeoutError:
        raise DataLogError(f"evaluation limit exceeded: regex {right.value!r} timed out")


def _mismatch(op: BinaryOp, left: Term, right: Term) -> ExpressionError:
    return ExpressionError(
        f"{op.value} not defined for {left.type.name.lower()} and {right.type.name.lower()}"
    )
