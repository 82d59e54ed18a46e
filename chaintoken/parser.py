"""
Datalog parser

PEG grammar (arpeggio) for the textual logic language, and a parse tree
visitor that builds typed statements. Parsing is kept apart from
evaluation: this module only produces Fact, Rule, Check and Policy
values and reports the first malformed statement as a DataLogError.

Grammar summary:

    fact      := name "(" term ("," term)* ")"
    rule      := predicate "<-" body
    check     := "check" ("if" | "all") body ("or" body)*
    policy    := ("allow" | "deny") "if" body ("or" body)*
    body      := (predicate | expression) ("," (predicate | expression))*
    source    := (statement ";")* statement? EOF

Expression precedence, lowest first:
    ||   &&   == != < > <= >=   |   ^   &   + -   * /   !   .method()
"""

import threading
from typing import Callable, Dict, List

from arpeggio import (
    EOF,
    NoMatch,
    Optional,
    ParserPython,
    PTNodeVisitor,
    Terminal,
    ZeroOrMore,
    visit_parse_tree,
)
from arpeggio import RegExMatch as _

from .errors import DataLogError
from .expressions import Binary, BinaryOp, Expression, Unary, UnaryOp, Value
from .statements import (
    Check,
    CheckKind,
    Fact,
    Policy,
    PolicyKind,
    Query,
    Rule,
    SourceResult,
)
from .terms import Bool, Bytes, Date, Integer, Predicate, Set, String, Variable
from .util import parse_rfc3339


# ==========================================
# 1. TOKENS
# ==========================================

def comment():
    return _(r'//.*')

def lparen():
    return _(r'\(')

def rparen():
    return _(r'\)')

def lbracket():
    return _(r'\[')

def rbracket():
    return _(r'\]')

def comma():
    return _(r',')

def semicolon():
    return _(r';')

def dot():
    return _(r'\.')

def arrow():
    return _(r'<-')

def kw_check():
    return _(r'check\b')

def kw_if():
    return _(r'if\b')

def kw_or():
    return _(r'or\b')

def check_mode():
    return _(r'(if|all)\b')

def policy_kind():
    return _(r'(allow|deny)\b')

def name():
    return _(r'[a-zA-Z][a-zA-Z0-9_:]*')

def variable():
    return _(r'\$[a-zA-Z0-9_:]+')

def string():
    return _(r'"(?:[^"\\]|\\.)*"')

def date():
    return _(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:[Zz]|[+-]\d{2}:\d{2})')

def integer():
    return _(r'-?\d+')

def hex_bytes():
    return _(r'hex:(?:[0-9a-fA-F]{2})*')

def boolean():
    return _(r'(true|false)\b')

def op_or():
    return _(r'\|\|')

def op_and():
    return _(r'&&')

def op_cmp():
    return _(r'==|!=|<=|>=|<|>')

def op_bitor():
    return _(r'\|(?!\|)')

def op_bitxor():
    return _(r'\^')

def op_bitand():
    return _(r'&(?!&)')

def op_add():
    return _(r'\+|-')

def op_mul():
    return _(r'\*|/')

def op_negate():
    return _(r'!(?!=)')

def method_name():
    return _(r'(contains|starts_with|ends_with|matches|length|intersection|union)\b')


# ==========================================
# 2. TERMS AND PREDICATES
# ==========================================

def set_element():
    return [date, integer, string, hex_bytes, boolean]

def set_literal():
    return lbracket, Optional(set_element, ZeroOrMore(comma, set_element)), rbracket

def term():
    return [variable, date, integer, string, hex_bytes, boolean, set_literal]

def predicate():
    return name, lparen, term, ZeroOrMore(comma, term), rparen


# ==========================================
# 3. EXPRESSIONS
# ==========================================

def parenthesized():
    return lparen, expression, rparen

def expr_primary():
    return [parenthesized, term]

def method_call():
    return dot, method_name, lparen, Optional(expression), rparen

def expr_method():
    return expr_primary, ZeroOrMore(method_call)

def expr_unary():
    return [(op_negate, expr_unary), expr_method]

def expr_mul():
    return expr_unary, ZeroOrMore(op_mul, expr_unary)

def expr_add():
    return expr_mul, ZeroOrMore(op_add, expr_mul)

def expr_bitand():
    return expr_add, ZeroOrMore(op_bitand, expr_add)

def expr_bitxor():
    return expr_bitand, ZeroOrMore(op_bitxor, expr_bitand)

def expr_bitor():
    return expr_bitxor, ZeroOrMore(op_bitor, expr_bitxor)

def expr_cmp():
    # comparisons do not chain
    return expr_bitor, Optional(op_cmp, expr_bitor)

def expr_and():
    return expr_cmp, ZeroOrMore(op_and, expr_cmp)

def expression():
    return expr_and, ZeroOrMore(op_or, expr_and)


# ==========================================
# 4. STATEMENTS
# ==========================================

def body_element():
    return [predicate, expression]

def query():
    return body_element, ZeroOrMore(comma, body_element)

def rule():
    return predicate, arrow, query

def fact():
    return name, lparen, term, ZeroOrMore(comma, term), rparen

def check():
    return kw_check, check_mode, query, ZeroOrMore(kw_or, query)

def policy():
    return policy_kind, kw_if, query, ZeroOrMore(kw_or, query)

def statement():
    return [check, policy, rule, fact]

def source():
    return ZeroOrMore(statement, semicolon), Optional(statement), EOF

def fact_root():
    return fact, Optional(semicolon), EOF

def rule_root():
    return rule, Optional(semicolon), EOF

def check_root():
    return check, Optional(semicolon), EOF

def policy_root():
    return policy, Optional(semicolon), EOF


# ==========================================
# 5. PARSE TREE VISITOR
# ==========================================

_BINARY_SYMBOLS = {
    "||": BinaryOp.OR,
    "&&": BinaryOp.AND,
    "==": BinaryOp.EQUAL,
    "!=": BinaryOp.NOT_EQUAL,
    "<": BinaryOp.LESS_THAN,
    ">": BinaryOp.GREATER_THAN,
    "<=": BinaryOp.LESS_OR_EQUAL,
    ">=": BinaryOp.GREATER_OR_EQUAL,
    "|": BinaryOp.BITWISE_OR,
    "^": BinaryOp.BITWISE_XOR,
    "&": BinaryOp.BITWISE_AND,
    "+": BinaryOp.ADD,
    "-": BinaryOp.SUB,
    "*": BinaryOp.MUL,
    "/": BinaryOp.DIV,
}

_METHODS = {
    "contains": BinaryOp.CONTAINS,
    "starts_with": BinaryOp.PREFIX,
    "ends_with": BinaryOp.SUFFIX,
    "matches": BinaryOp.REGEX,
    "intersection": BinaryOp.INTERSECTION,
    "union": BinaryOp.UNION,
}

_UNESCAPES = {'"': '"', '\\': '\\', 'n': '\n', 't': '\t', 'r': '\r'}


class _Group(list):
    """Children of a grammar node that has no semantic action."""


class _Ops(list):
    """Postfix ops of a partially built expression."""


class _Method:
    def __init__(self, method: str, argument):
        self.method = method
        self.argument = argument


def _flatten(children) -> list:
    flat = []
    for child in children:
        if child is None:
            continue
        if isinstance(child, _Group):
            flat.extend(_flatten(child))
        else:
            flat.append(child)
    return flat


def _as_ops(item) -> _Ops:
    if isinstance(item, _Ops):
        return item
    return _Ops([Value(item)])


class DatalogVisitor(PTNodeVisitor):
    """
    Builds statements from an arpeggio parse tree.

    Every token carrying meaning has its own visit method; all other
    terminals (punctuation, keywords) are dropped, and non-terminals
    without a method pass their flattened children upward.
    """

    def __init__(self, source_text: str):
        super().__init__()
        self._source = source_text

    def _fragment(self, node) -> str:
        end = getattr(node, "position_end", node.position + 40)
        return self._source[node.position:end].strip()

    def _error(self, node, what: str, exc: Exception) -> DataLogError:
        return DataLogError(f"invalid {what} '{self._fragment(node)}': {exc}")

    def visit__default__(self, node, children):
        if isinstance(node, Terminal):
            return None
        return _Group(children)

    # --- Terms ---

    def visit_name(self, node, children):
        return node.value

    def visit_variable(self, node, children):
        return Variable(node.value[1:])

    def visit_string(self, node, children):
        raw = node.value[1:-1]
        out = []
        i = 0
        while i < len(raw):
            c = raw[i]
            if c == '\\':
                escaped = raw[i + 1]
                if escaped not in _UNESCAPES:
                    raise DataLogError(
                        f"invalid escape sequence '\\{escaped}' in {node.value}"
                    )
                out.append(_UNESCAPES[escaped])
                i += 2
            else:
                out.append(c)
                i += 1
        return String("".join(out))

    def visit_integer(self, node, children):
        try:
            return Integer(int(node.value))
        except ValueError as e:
            raise self._error(node, "integer", e)

    def visit_date(self, node, children):
        try:
            return Date(parse_rfc3339(node.value))
        except ValueError as e:
            raise self._error(node, "date", e)

    def visit_hex_bytes(self, node, children):
        return Bytes(bytes.fromhex(node.value[4:]))

    def visit_boolean(self, node, children):
        return Bool(node.value == "true")

    def visit_set_literal(self, node, children):
        elements = _flatten(children)
        return Set(frozenset(elements))

    def visit_predicate(self, node, children):
        flat = _flatten(children)
        return Predicate(flat[0], tuple(flat[1:]))

    # --- Expressions ---

    def visit_op_or(self, node, children):
        return Binary(_BINARY_SYMBOLS[node.value])

    visit_op_and = visit_op_or
    visit_op_cmp = visit_op_or
    visit_op_bitor = visit_op_or
    visit_op_bitxor = visit_op_or
    visit_op_bitand = visit_op_or
    visit_op_add = visit_op_or
    visit_op_mul = visit_op_or

    def visit_op_negate(self, node, children):
        return Unary(UnaryOp.NEGATE)

    def visit_method_name(self, node, children):
        return node.value

    def _fold_binary(self, node, children):
        flat = _flatten(children)
        ops = _Ops(_as_ops(flat[0]))
        for i in range(1, len(flat), 2):
            ops.extend(_as_ops(flat[i + 1]))
            ops.append(flat[i])
        return ops

    visit_expression = _fold_binary
    visit_expr_and = _fold_binary
    visit_expr_cmp = _fold_binary
    visit_expr_bitor = _fold_binary
    visit_expr_bitxor = _fold_binary
    visit_expr_bitand = _fold_binary
    visit_expr_add = _fold_binary
    visit_expr_mul = _fold_binary

    def visit_expr_unary(self, node, children):
        flat = _flatten(children)
        if len(flat) == 2:
            return _Ops(_as_ops(flat[1]) + [flat[0]])
        return _as_ops(flat[0])

    def visit_method_call(self, node, children):
        flat = _flatten(children)
        argument = _as_ops(flat[1]) if len(flat) > 1 else None
        return _Method(flat[0], argument)

    def visit_expr_method(self, node, children):
        flat = _flatten(children)
        ops = _Ops(_as_ops(flat[0]))
        for call in flat[1:]:
            if call.method == "length":
                if call.argument is not None:
                    raise DataLogError(
                        f"length() takes no argument in '{self._fragment(node)}'"
                    )
                ops.append(Unary(UnaryOp.LENGTH))
                continue
            if call.argument is None:
                raise DataLogError(
                    f"{call.method}() requires an argument in '{self._fragment(node)}'"
                )
            ops.extend(call.argument)
            ops.append(Binary(_METHODS[call.method]))
        return ops

    def visit_parenthesized(self, node, children):
        flat = _flatten(children)
        return _Ops(_as_ops(flat[0]) + [Unary(UnaryOp.PARENS)])

    def visit_expr_primary(self, node, children):
        return _as_ops(_flatten(children)[0])

    # --- Statements ---

    def visit_query(self, node, children):
        predicates = []
        expressions = []
        for item in _flatten(children):
            if isinstance(item, Predicate):
                predicates.append(item)
            else:
                expressions.append(Expression(tuple(item)))
        try:
            return Query(tuple(predicates), tuple(expressions))
        except ValueError as e:
            raise self._error(node, "query", e)

    def visit_rule(self, node, children):
        head, body = _flatten(children)
        try:
            return Rule(head, body.body, body.expressions)
        except ValueError as e:
            raise self._error(node, "rule", e)

    def visit_fact(self, node, children):
        flat = _flatten(children)
        try:
            return Fact(Predicate(flat[0], tuple(flat[1:])))
        except ValueError as e:
            raise self._error(node, "fact", e)

    def visit_check_mode(self, node, children):
        return CheckKind.ONE if node.value == "if" else CheckKind.ALL

    def visit_policy_kind(self, node, children):
        return PolicyKind(node.value)

    def visit_check(self, node, children):
        flat = _flatten(children)
        return Check(tuple(flat[1:]), flat[0])

    def visit_policy(self, node, children):
        flat = _flatten(children)
        return Policy(flat[0], tuple(flat[1:]))

    def visit_source(self, node, children):
        result = SourceResult(facts=[], rules=[], checks=[], policies=[])
        for item in _flatten(children):
            if isinstance(item, Fact):
                result.facts.append(item)
            elif isinstance(item, Rule):
                result.rules.append(item)
            elif isinstance(item, Check):
                result.checks.append(item)
            else:
                result.policies.append(item)
        return result

    def _single(self, node, children):
        return _flatten(children)[0]

    visit_fact_root = _single
    visit_rule_root = _single
    visit_check_root = _single
    visit_policy_root = _single


# ==========================================
# 6. PARSER CACHE AND ENTRY POINTS
# ==========================================

# arpeggio parsers keep per-parse state; share one per grammar root and
# serialize access
_PARSERS: Dict[str, ParserPython] = {}
_PARSER_LOCK = threading.Lock()


def _line_col(text: str, position: int):
    line = text.count("\n", 0, position) + 1
    col = position - (text.rfind("\n", 0, position) + 1) + 1
    return line, col


def _parse(root: Callable, text: str, what: str):
    if not isinstance(text, str):
        raise DataLogError(f"{what} must be a string, got {type(text).__name__}")
    with _PARSER_LOCK:
        parser = _PARSERS.get(root.__name__)
        if parser is None:
            parser = ParserPython(root, comment_def=comment)
            _PARSERS[root.__name__] = parser
        try:
            tree = parser.parse(text)
        except NoMatch as e:
            position = getattr(e, "position", 0)
            line, col = _line_col(text, position)
            rest = text[position:].strip()
            fragment = rest.splitlines()[0][:30] if rest else "<end of input>"
            expected = sorted({r.rule_name or r.name for r in getattr(e, "rules", [])})
            raise DataLogError(
                f"error parsing {what} at line {line}, column {col} near '{fragment}'"
                + (f": expected {', '.join(expected)}" if expected else "")
            ) from None
    return visit_parse_tree(tree, DatalogVisitor(text))


def parse_fact(text: str) -> Fact:
    return _parse(fact_root, text, "fact")


def parse_rule(text: str) -> Rule:
    return _parse(rule_root, text, "rule")


def parse_check(text: str) -> Check:
    return _parse(check_root, text, "check")


def parse_policy(text: str) -> Policy:
    return _parse(policy_root, text, "policy")


def parse_source(text: str) -> SourceResult:
    """
    Parse a whole chunk of Datalog source.

    Statements are separated by ";" and may be preceded by // comments.

    Raises:
        DataLogError: on the first malformed statement
    """
    return _parse(source, text, "source")


__all__: List[str] = [
    "parse_fact",
    "parse_rule",
    "parse_check",
    "parse_policy",
    "parse_source",
    "DatalogVisitor",
]
