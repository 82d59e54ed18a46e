"""
Datalog parser tests

Covers literal parsing, statement structure, printing back to source,
and rejection of malformed or unsafe statements.
"""

import unittest

from chaintoken import (
    Bool,
    Bytes,
    CheckKind,
    DataLogError,
    Date,
    Integer,
    PolicyKind,
    Set,
    String,
    Variable,
    parse_check,
    parse_fact,
    parse_policy,
    parse_rule,
    parse_source,
)
from chaintoken.expressions import Binary, BinaryOp, Unary, UnaryOp, Value


class TestLiterals(unittest.TestCase):

    def test_simple_fact(self):
        fact = parse_fact('user("alice")')
        self.assertEqual(fact.name, "user")
        self.assertEqual(fact.terms, (String("alice"),))

    def test_all_term_types(self):
        fact = parse_fact(
            'data(1, -2, "s", hex:00ff, true, false, 2024-01-01T00:00:00Z, [1, 2])'
        )
        self.assertEqual(fact.terms, (
            Integer(1),
            Integer(-2),
            String("s"),
            Bytes(b"\x00\xff"),
            Bool(True),
            Bool(False),
            Date(1704067200),
            Set(frozenset({Integer(1), Integer(2)})),
        ))

    def test_date_with_offset(self):
        fact = parse_fact("t(2024-01-01T02:00:00+02:00)")
        self.assertEqual(fact.terms, (Date(1704067200),))

    def test_date_fraction_truncated(self):
        for text in [
            "2024-01-01T00:00:00.123456789Z",
            "2024-01-01T00:00:00.9Z",
            "2024-01-01T02:00:00.5+02:00",
        ]:
            with self.subTest(text=text):
                self.assertEqual(parse_fact(f"t({text})").terms, (Date(1704067200),))

    def test_integer_bounds(self):
        self.assertEqual(
            parse_fact("n(9223372036854775807)").terms, (Integer(2 ** 63 - 1),)
        )
        self.assertEqual(
            parse_fact("n(-9223372036854775808)").terms, (Integer(-(2 ** 63)),)
        )
        with self.assertRaises(DataLogError):
            parse_fact("n(9223372036854775808)")

    def test_string_escapes(self):
        fact = parse_fact(r'say("a \"quoted\" word\n")')
        self.assertEqual(fact.terms, (String('a "quoted" word\n'),))
        self.assertEqual(parse_fact(str(fact)), fact)

    def test_empty_set(self):
        self.assertEqual(parse_fact("s([])").terms, (Set(frozenset()),))

    def test_trailing_semicolon_accepted(self):
        self.assertEqual(parse_fact('user("alice");'), parse_fact('user("alice")'))


class TestStatements(unittest.TestCase):

    def test_rule_structure(self):
        rule = parse_rule('can($u, $r) <- user($u), right($r, "read"), $r.starts_with("file")')
        self.assertEqual(rule.head.name, "can")
        self.assertEqual(rule.head.terms, (Variable("u"), Variable("r")))
        self.assertEqual([p.name for p in rule.body], ["user", "right"])
        self.assertEqual(len(rule.expressions), 1)

    def test_check_kinds(self):
        self.assertEqual(parse_check('check if a(1)').kind, CheckKind.ONE)
        self.assertEqual(parse_check('check all a($x), $x > 0').kind, CheckKind.ALL)

    def test_check_alternatives(self):
        check = parse_check('check if a(1) or b(2), c(3)')
        self.assertEqual(len(check.queries), 2)
        self.assertEqual(len(check.queries[1].body), 2)

    def test_policy_kinds(self):
        self.assertEqual(parse_policy('allow if true').kind, PolicyKind.ALLOW)
        self.assertEqual(parse_policy('deny if user("bob")').kind, PolicyKind.DENY)

    def test_predicate_names_starting_with_keywords(self):
        fact = parse_fact('checked(true)')
        self.assertEqual(fact.name, "checked")
        source = parse_source('allowed(1); deny_list("x");')
        self.assertEqual([f.name for f in source.facts], ["allowed", "deny_list"])

    def test_source_with_comments(self):
        source = parse_source("""
            // authority facts
            user("alice");
            right("file1", "read");
            can($r) <- right($r, "read");
            check if user($u);
            allow if can("file1");
            deny if true
        """)
        self.assertEqual(len(source.facts), 2)
        self.assertEqual(len(source.rules), 1)
        self.assertEqual(len(source.checks), 1)
        self.assertEqual([p.kind for p in source.policies], [PolicyKind.ALLOW, PolicyKind.DENY])

    def test_empty_source(self):
        source = parse_source("  // nothing here\n")
        self.assertEqual(source.facts, [])
        self.assertEqual(source.policies, [])


class TestExpressions(unittest.TestCase):

    def _ops(self, text):
        return parse_check(f"check if {text}").queries[0].expressions[0].ops

    def test_precedence(self):
        self.assertEqual(self._ops("1 + 2 * 3 == 7"), (
            Value(Integer(1)),
            Value(Integer(2)),
            Value(Integer(3)),
            Binary(BinaryOp.MUL),
            Binary(BinaryOp.ADD),
            Value(Integer(7)),
            Binary(BinaryOp.EQUAL),
        ))

    def test_parentheses_kept(self):
        self.assertEqual(self._ops("(1 + 2) * 3 == 9")[:5], (
            Value(Integer(1)),
            Value(Integer(2)),
            Binary(BinaryOp.ADD),
            Unary(UnaryOp.PARENS),
            Value(Integer(3)),
        ))

    def test_left_associative_subtraction(self):
        self.assertEqual(self._ops("10 - 3 - 2 == 5")[:5], (
            Value(Integer(10)),
            Value(Integer(3)),
            Binary(BinaryOp.SUB),
            Value(Integer(2)),
            Binary(BinaryOp.SUB),
        ))

    def test_method_calls(self):
        self.assertEqual(self._ops('"abc".length() == 3')[:2], (
            Value(String("abc")),
            Unary(UnaryOp.LENGTH),
        ))
        self.assertEqual(self._ops("[1, 2].contains(1)"), (
            Value(Set(frozenset({Integer(1), Integer(2)}))),
            Value(Integer(1)),
            Binary(BinaryOp.CONTAINS),
        ))

    def test_negation_and_logic(self):
        self.assertEqual(self._ops("!true || false"), (
            Value(Bool(True)),
            Unary(UnaryOp.NEGATE),
            Value(Bool(False)),
            Binary(BinaryOp.OR),
        ))

    def test_method_argument_errors(self):
        with self.assertRaises(DataLogError):
            parse_check('check if "abc".length(1)')
        with self.assertRaises(DataLogError):
            parse_check('check if "abc".contains()')


class TestPrinting(unittest.TestCase):

    def test_exact_printing(self):
        for text in [
            'user("alice")',
            'data(1, -2, hex:00ff, true, [1, 2])',
        ]:
            self.assertEqual(str(parse_fact(text)), text)
        for text in [
            'can($u, $r) <- user($u), right($r, "read"), $r.starts_with("file")',
            'adult($p) <- age($p, $a), $a >= 18',
        ]:
            self.assertEqual(str(parse_rule(text)), text)
        for text in [
            'check if time($t), $t < 2030-01-01T00:00:00Z',
            'check all operation($op), ["read", "write"].contains($op)',
        ]:
            self.assertEqual(str(parse_check(text)), text)
        self.assertEqual(
            str(parse_policy('allow if user("alice") or user("bob")')),
            'allow if user("alice") or user("bob")',
        )

    def test_reparse_equals_original(self):
        statements = [
            parse_rule('r($x) <- a($x), !($x > 1 && $x < 10) || $x == 0'),
            parse_rule('r($x) <- a($x), ($x + 1) * 2 - 3 / 4 == 5'),
            parse_rule('r($s) <- a($s), $s.matches("^f.*$"), $s.ends_with("x")'),
            parse_check('check if a($x), [1, 2].union([3]).intersection([1, 3]).length() == 2'),
            parse_check('check if a($x), ($x & 3) | (1 ^ 2) == 3'),
        ]
        parsers = [parse_rule, parse_rule, parse_rule, parse_check, parse_check]
        for statement, parse in zip(statements, parsers):
            self.assertEqual(parse(str(statement)), statement)


class TestErrors(unittest.TestCase):

    def test_syntax_error_reports_position(self):
        with self.assertRaises(DataLogError) as cm:
            parse_fact('user("alice"')
        self.assertIn("line 1", str(cm.exception))

    def test_error_in_source_names_line(self):
        with self.assertRaises(DataLogError) as cm:
            parse_source('user("alice");\nright("file1" "read");')
        self.assertIn("line 2", str(cm.exception))

    def test_variable_in_fact(self):
        with self.assertRaises(DataLogError):
            parse_fact("user($x)")

    def test_unsafe_rule_head(self):
        with self.assertRaises(DataLogError):
            parse_rule("a($x) <- b($y)")

    def test_unbound_expression_variable(self):
        with self.assertRaises(DataLogError):
            parse_check("check if a($x), $y > 1")

    def test_variable_inside_set(self):
        with self.assertRaises(DataLogError):
            parse_fact("a([$x])")

    def test_nested_set(self):
        with self.assertRaises(DataLogError):
            parse_fact("a([[1]])")

    def test_policy_is_not_a_check(self):
        with self.assertRaises(DataLogError):
            parse_check("allow if true")

    def test_non_string_input(self):
        with self.assertRaises(DataLogError):
            parse_fact(42)


if __name__ == "__main__":
    unittest.main()
