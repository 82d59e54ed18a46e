"""
Expression evaluation and fixpoint engine tests
"""

import itertools
import os
import time
import unittest
from datetime import timedelta
from unittest import mock

from chaintoken import (
    Bool,
    DataLogError,
    Integer,
    RunLimits,
    Set,
    String,
    Variable,
    parse_check,
    parse_fact,
    parse_rule,
)
from chaintoken.expressions import Expression, ExpressionError, Value
from chaintoken.world import (
    AUTHORIZER_ORIGIN,
    AUTHORIZER_SCOPE,
    World,
    block_scope,
)


def evaluate(text, **bindings):
    expression = parse_check(f"check if {text}").queries[0].expressions[0]
    return expression.evaluate(bindings)


class TestExpressionEvaluation(unittest.TestCase):

    def test_arithmetic(self):
        self.assertEqual(evaluate("1 + 2 * 3"), Integer(7))
        self.assertEqual(evaluate("(1 + 2) * 3"), Integer(9))
        self.assertEqual(evaluate("10 - 3 - 2"), Integer(5))

    def test_division_truncates_toward_zero(self):
        self.assertEqual(evaluate("7 / 2"), Integer(3))
        self.assertEqual(evaluate("-7 / 2"), Integer(-3))
        self.assertEqual(evaluate("7 / -2"), Integer(-3))

    def test_division_by_zero(self):
        with self.assertRaises(ExpressionError):
            evaluate("1 / 0")

    def test_overflow(self):
        with self.assertRaises(ExpressionError):
            evaluate("9223372036854775807 + 1")
        with self.assertRaises(ExpressionError):
            evaluate("-9223372036854775808 - 1")

    def test_bitwise(self):
        self.assertEqual(evaluate("6 & 3"), Integer(2))
        self.assertEqual(evaluate("6 | 3"), Integer(7))
        self.assertEqual(evaluate("6 ^ 3"), Integer(5))

    def test_string_operations(self):
        self.assertEqual(evaluate('"abc" + "def" == "abcdef"'), Bool(True))
        self.assertEqual(evaluate('"file1".starts_with("file")'), Bool(True))
        self.assertEqual(evaluate('"file1".ends_with("2")'), Bool(False))
        self.assertEqual(evaluate('"file1".contains("le")'), Bool(True))
        self.assertEqual(evaluate('"file1".matches("^file[0-9]$")'), Bool(True))

    def test_length_counts_utf8_bytes(self):
        self.assertEqual(evaluate('"héllo".length()'), Integer(6))
        self.assertEqual(evaluate("hex:0102.length()"), Integer(2))
        self.assertEqual(evaluate("[1, 2, 3].length()"), Integer(3))

    def test_set_operations(self):
        self.assertEqual(evaluate("[1, 2].contains(1)"), Bool(True))
        self.assertEqual(evaluate("[1, 2].contains([1])"), Bool(True))
        self.assertEqual(evaluate("[1, 2].contains([1, 3])"), Bool(False))
        self.assertEqual(
            evaluate("[1, 2].intersection([2, 3])"), Set(frozenset({Integer(2)}))
        )
        self.assertEqual(
            evaluate("[1].union([2])"), Set(frozenset({Integer(1), Integer(2)}))
        )

    def test_dates_compare(self):
        self.assertEqual(
            evaluate("2024-01-01T00:00:00Z < 2025-01-01T00:00:00Z"), Bool(True)
        )

    def test_logic(self):
        self.assertEqual(evaluate("!false && true"), Bool(True))
        self.assertEqual(evaluate("false || 1 == 1"), Bool(True))

    def test_type_mismatch(self):
        for text in [
            '1 == "1"',
            "1 < 2024-01-01T00:00:00Z",
            "!1",
            '"a" - "b"',
            "true && 1",
            "1.length()",
        ]:
            with self.subTest(text=text), self.assertRaises(ExpressionError):
                evaluate(text)

    def test_invalid_regex(self):
        with self.assertRaises(ExpressionError):
            evaluate('"a".matches("(")')

    def test_regex_timeout_is_limit_error(self):
        with mock.patch("chaintoken.expressions.regex.search", side_effect=TimeoutError):
            with self.assertRaises(DataLogError) as cm:
                evaluate('"aaa".matches("a+")')
        self.assertIn("timed out", str(cm.exception))

    def test_regex_timeout_forwarded(self):
        expression = parse_check('check if "abc".matches("b")').queries[0].expressions[0]
        with mock.patch("chaintoken.expressions.regex.search", return_value=None) as search:
            self.assertEqual(expression.evaluate({}, timeout=0.25), Bool(False))
        search.assert_called_once_with("b", "abc", timeout=0.25)

    def test_bindings(self):
        expression = parse_check("check if v($x), $x * 2 == 8").queries[0].expressions[0]
        self.assertEqual(expression.evaluate({"x": Integer(4)}), Bool(True))
        self.assertEqual(expression.evaluate({"x": Integer(3)}), Bool(False))

    def test_unbound_variable(self):
        with self.assertRaises(ExpressionError):
            Expression((Value(Variable("x")),)).evaluate({})

    def test_wire_form_round_trip(self):
        expression = parse_check('check if "a".length() + 1 == 2').queries[0].expressions[0]
        self.assertEqual(Expression.from_list(expression.to_list()), expression)

    def test_malformed_stack_rejected(self):
        with self.assertRaises(ValueError):
            Expression.from_list([{"binary": "add"}])
        with self.assertRaises(ValueError):
            Expression.from_list([{"value": {"int": 1}}, {"value": {"int": 2}}])


def ancestor_world(limits=None):
    world = World(limits)
    for a, b in [("a", "b"), ("b", "c"), ("c", "d")]:
        world.add_fact(0, parse_fact(f'parent("{a}", "{b}")'))
    scope = block_scope(0)
    world.add_rule(0, parse_rule("ancestor($x, $y) <- parent($x, $y)"), scope)
    world.add_rule(
        0, parse_rule("ancestor($x, $z) <- parent($x, $y), ancestor($y, $z)"), scope
    )
    return world


def chain_world(length, limits):
    world = World(limits)
    for i in range(length):
        world.add_fact(0, parse_fact(f"edge({i}, {i + 1})"))
    scope = block_scope(0)
    world.add_rule(0, parse_rule("path($x, $y) <- edge($x, $y)"), scope)
    world.add_rule(0, parse_rule("path($x, $z) <- path($x, $y), edge($y, $z)"), scope)
    return world


WIDE_JOIN = "r($a) <- f($a), f($b), f($c), f($d), f($e), $a == -1"


def wide_world(limits):
    world = World(limits)
    for i in range(25):
        world.add_fact(0, parse_fact(f"f({i})"))
    return world


class TestWorld(unittest.TestCase):

    def test_transitive_closure(self):
        world = ancestor_world()
        world.run()
        found = world.query_rule(
            parse_rule("r($x, $y) <- ancestor($x, $y)"), block_scope(0)
        )
        self.assertEqual(len(found), 6)
        self.assertIn(parse_fact('r("a", "d")'), found)

    def test_run_is_idempotent(self):
        world = ancestor_world()
        world.run()
        count = len(world.facts)
        world.run()
        self.assertEqual(len(world.facts), count)

    def test_expression_error_means_no_match(self):
        world = World()
        world.add_fact(0, parse_fact("v(9223372036854775807)"))
        world.add_fact(0, parse_fact('v("text")'))
        world.add_fact(0, parse_fact("v(2)"))
        world.add_rule(0, parse_rule("double($x) <- v($x), $x * 2 > 0"), block_scope(0))
        world.run()
        found = world.query_rule(parse_rule("r($x) <- double($x)"), block_scope(0))
        self.assertEqual(found, [parse_fact("r(2)")])

    def test_later_block_facts_invisible_to_earlier_rules(self):
        world = World()
        world.add_fact(1, parse_fact('right("file2")'))
        world.add_rule(0, parse_rule("can($r) <- right($r)"), block_scope(0))
        world.run()
        self.assertEqual(
            world.query_rule(parse_rule("r($r) <- can($r)"), block_scope(1)), []
        )

    def test_block_derived_facts_invisible_to_authorizer(self):
        world = World()
        world.add_fact(AUTHORIZER_ORIGIN, parse_fact('resource("file1")'))
        world.add_rule(1, parse_rule("granted($r) <- resource($r)"), block_scope(1))
        world.run()
        query = parse_rule("r($r) <- granted($r)")
        self.assertEqual(world.query_rule(query, AUTHORIZER_SCOPE), [])
        self.assertEqual(world.query_rule(query, block_scope(1)), [parse_fact('r("file1")')])

    def test_authority_derived_facts_visible_to_authorizer(self):
        world = World()
        world.add_fact(AUTHORIZER_ORIGIN, parse_fact('resource("file1")'))
        world.add_rule(0, parse_rule("granted($r) <- resource($r)"), block_scope(0))
        world.run()
        self.assertEqual(
            world.query_rule(parse_rule("r($r) <- granted($r)"), AUTHORIZER_SCOPE),
            [parse_fact('r("file1")')],
        )

    def test_iteration_limit(self):
        world = chain_world(10, RunLimits(max_iterations=3))
        with self.assertRaises(DataLogError) as cm:
            world.run()
        self.assertIn("iterations", str(cm.exception))

    def test_fact_limit(self):
        world = chain_world(10, RunLimits(max_facts=15))
        with self.assertRaises(DataLogError) as cm:
            world.run()
        self.assertIn("facts", str(cm.exception))

    def test_time_limit(self):
        world = chain_world(3, RunLimits(max_time=timedelta(seconds=1)))
        clock = itertools.count(0, 10)
        with mock.patch("chaintoken.world.time.monotonic", side_effect=lambda: next(clock)):
            with self.assertRaises(DataLogError) as cm:
                world.run()
        self.assertIn("longer than", str(cm.exception))

    def test_time_limit_interrupts_join(self):
        world = wide_world(RunLimits(max_time=timedelta(milliseconds=100)))
        world.add_rule(0, parse_rule(WIDE_JOIN), block_scope(0))
        start = time.monotonic()
        with self.assertRaises(DataLogError) as cm:
            world.run()
        self.assertIn("longer than", str(cm.exception))
        self.assertLess(time.monotonic() - start, 5)

    def test_initial_facts_counted(self):
        world = World(RunLimits(max_facts=5))
        for i in range(10):
            world.add_fact(AUTHORIZER_ORIGIN, parse_fact(f"n({i})"))
        with self.assertRaises(DataLogError) as cm:
            world.run()
        self.assertIn("facts", str(cm.exception))

    def test_fact_limit_within_one_iteration(self):
        world = wide_world(RunLimits(max_facts=100))
        world.add_rule(0, parse_rule("pair($a, $b) <- f($a), f($b)"), block_scope(0))
        with self.assertRaises(DataLogError):
            world.run()
        self.assertEqual(len(world.facts), 25)

    def test_limits_large_enough(self):
        world = chain_world(10, RunLimits())
        world.run()
        paths = world.query_rule(parse_rule("r($x, $y) <- path($x, $y)"), block_scope(0))
        self.assertEqual(len(paths), 55)


class TestChecks(unittest.TestCase):

    def _world(self, *facts):
        world = World()
        for fact in facts:
            world.add_fact(AUTHORIZER_ORIGIN, parse_fact(fact))
        world.run()
        return world

    def test_check_if(self):
        world = self._world('operation("read")')
        self.assertTrue(world.check_passes(parse_check('check if operation("read")'), AUTHORIZER_SCOPE))
        self.assertFalse(world.check_passes(parse_check('check if operation("write")'), AUTHORIZER_SCOPE))

    def test_check_alternatives(self):
        world = self._world('operation("read")')
        check = parse_check('check if operation("write") or operation("read")')
        self.assertTrue(world.check_passes(check, AUTHORIZER_SCOPE))

    def test_check_all(self):
        check = parse_check('check all operation($op), ["read", "write"].contains($op)')
        world = self._world('operation("read")', 'operation("write")')
        self.assertTrue(world.check_passes(check, AUTHORIZER_SCOPE))
        world = self._world('operation("read")', 'operation("delete")')
        self.assertFalse(world.check_passes(check, AUTHORIZER_SCOPE))

    def test_check_all_without_matches_passes(self):
        world = self._world('operation("read")')
        check = parse_check("check all absent($x), $x == 1")
        self.assertTrue(world.check_passes(check, AUTHORIZER_SCOPE))

    def test_check_all_expression_error_fails(self):
        world = self._world('amount("ten")')
        check = parse_check("check all amount($a), $a < 100")
        self.assertFalse(world.check_passes(check, AUTHORIZER_SCOPE))

    def test_check_respects_scope(self):
        world = World()
        world.add_fact(2, parse_fact('operation("read")'))
        world.run()
        check = parse_check('check if operation("read")')
        self.assertFalse(world.check_passes(check, block_scope(1)))
        self.assertTrue(world.check_passes(check, block_scope(2)))

    def test_query_passes(self):
        world = self._world('user("alice")')
        query = parse_check('check if user($u), $u == "alice"').queries[0]
        self.assertTrue(world.query_passes(query, AUTHORIZER_SCOPE))

    def test_time_limit_covers_checks(self):
        world = wide_world(RunLimits(max_time=timedelta(milliseconds=100)))
        world.run()
        check = parse_check(WIDE_JOIN.replace("r($a) <-", "check if"))
        start = time.monotonic()
        with self.assertRaises(DataLogError):
            world.check_passes(check, block_scope(0))
        self.assertLess(time.monotonic() - start, 5)

    def test_backtracking_regex_bounded(self):
        world = World(RunLimits(max_time=timedelta(milliseconds=100)))
        world.add_fact(0, parse_fact(f's("{"a" * 30}b")'))
        world.run()
        check = parse_check('check if s($x), $x.matches("^(a+)+$")')
        start = time.monotonic()
        try:
            passed = world.check_passes(check, block_scope(0))
        except DataLogError:
            passed = False
        self.assertFalse(passed)
        self.assertLess(time.monotonic() - start, 5)


class TestRunLimits(unittest.TestCase):

    def test_defaults(self):
        limits = RunLimits()
        self.assertEqual(limits.max_facts, 1000)
        self.assertEqual(limits.max_iterations, 100)
        self.assertEqual(limits.max_time, timedelta(milliseconds=1000))

    def test_invalid_limits(self):
        with self.assertRaises(ValueError):
            RunLimits(max_facts=0)
        with self.assertRaises(ValueError):
            RunLimits(max_iterations=-1)
        with self.assertRaises(ValueError):
            RunLimits(max_time=timedelta(0))

    def test_from_env(self):
        with mock.patch.dict(os.environ, {"CHAINTOKEN_MAX_FACTS": "7", "CHAINTOKEN_MAX_TIME_MS": "50"}):
            limits = RunLimits.from_env()
        self.assertEqual(limits.max_facts, 7)
        self.assertEqual(limits.max_time, timedelta(milliseconds=50))


if __name__ == "__main__":
    unittest.main()
