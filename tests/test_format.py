"""
Wire format and canonical JSON tests
"""

import struct
import unittest

from chaintoken import Biscuit, BiscuitBuilder, BiscuitValidationError, KeyPair
from chaintoken.canonicalization import canonicalize, canonicalize_str, decode_canonical
from chaintoken.format import (
    Block,
    BlockContent,
    Envelope,
    Proof,
    decode_envelope,
    decode_payload,
    encode_envelope,
    encode_payload,
)
from chaintoken.parser import parse_check, parse_fact, parse_rule


class TestCanonicalJSON(unittest.TestCase):

    def test_sorted_compact(self):
        self.assertEqual(
            canonicalize({"b": 1, "a": [1, "x", True, None]}),
            b'{"a":[1,"x",true,null],"b":1}',
        )

    def test_unicode_kept_as_utf8(self):
        self.assertEqual(canonicalize_str({"k": "é"}), '{"k":"é"}')
        self.assertEqual(canonicalize({"k": "é"}), '{"k":"é"}'.encode("utf-8"))

    def test_floats_rejected(self):
        with self.assertRaises(ValueError):
            canonicalize({"a": 1.5})

    def test_non_string_keys_rejected(self):
        with self.assertRaises(ValueError):
            canonicalize({1: "a"})

    def test_decode_accepts_canonical(self):
        self.assertEqual(decode_canonical(b'{"a":[1,2],"b":"c"}'), {"a": [1, 2], "b": "c"})

    def test_decode_rejects_non_canonical(self):
        for data in [
            b'{"a": 1}',
            b'{"b":1,"a":2}',
            b'{"a":1,"a":1}',
            b'{"a":1.5}',
            b'{"a":NaN}',
            b'\xff',
            b'{"a":',
        ]:
            with self.subTest(data=data), self.assertRaises(ValueError):
                decode_canonical(data)


def sample_content():
    return BlockContent(
        facts=(parse_fact('user("alice")'), parse_fact("tags([1, 2])")),
        rules=(parse_rule('can($r) <- right($r, "read")'),),
        checks=(parse_check('check if operation("read")'),),
        context="delegated to build server",
    )


class TestPayload(unittest.TestCase):

    def test_empty_payload_bytes(self):
        self.assertEqual(
            encode_payload(BlockContent()),
            b'{"checks":[],"facts":[],"rules":[],"version":1}',
        )

    def test_payload_round_trip(self):
        content = sample_content()
        self.assertEqual(decode_payload(encode_payload(content)), content)

    def test_source(self):
        self.assertEqual(sample_content().source(), "\n".join([
            'user("alice");',
            "tags([1, 2]);",
            'can($r) <- right($r, "read");',
            'check if operation("read");',
        ]))

    def _payload(self, **overrides):
        payload = {"version": 1, "facts": [], "rules": [], "checks": []}
        payload.update(overrides)
        return canonicalize(payload)

    def test_unsorted_set_rejected(self):
        fact = {"name": "s", "terms": [{"set": [{"int": 2}, {"int": 1}]}]}
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(facts=[fact]))

    def test_sorted_set_accepted(self):
        fact = {"name": "s", "terms": [{"set": [{"int": 1}, {"int": 2}]}]}
        content = decode_payload(self._payload(facts=[fact]))
        self.assertEqual(content.facts, (parse_fact("s([1, 2])"),))

    def test_null_context_rejected(self):
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(context=None))

    def test_unknown_field_rejected(self):
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(extra=[]))

    def test_unknown_version_rejected(self):
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(version=2))

    def test_variable_in_fact_rejected(self):
        fact = {"name": "user", "terms": [{"var": "x"}]}
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(facts=[fact]))

    def test_unsafe_rule_rejected(self):
        rule = {
            "head": {"name": "a", "terms": [{"var": "x"}]},
            "body": [{"name": "b", "terms": [{"var": "y"}]}],
            "expressions": [],
        }
        with self.assertRaises(BiscuitValidationError):
            decode_payload(self._payload(rules=[rule]))

    def test_deep_nesting_rejected(self):
        with self.assertRaises(BiscuitValidationError) as cm:
            decode_payload(b"[" * 200000 + b"]" * 200000)
        self.assertIn("nested too deeply", str(cm.exception))


class TestEnvelope(unittest.TestCase):

    def setUp(self):
        builder = BiscuitBuilder()
        builder.add_fact('user("alice")')
        self.data = builder.build(KeyPair()).to_bytes()

    def _payload_len(self):
        return struct.unpack(">I", self.data[10:14])[0]

    def test_header(self):
        self.assertEqual(self.data[:4], b"CTKN")
        self.assertEqual(self.data[4], 1)
        self.assertEqual(self.data[5], 0)
        self.assertEqual(self.data[6:10], b"\x00\x00\x00\x01")

    def test_decodes(self):
        envelope = decode_envelope(self.data)
        self.assertEqual(len(envelope.blocks), 1)
        self.assertIsNone(envelope.root_key_id)
        self.assertFalse(envelope.proof.sealed)
        self.assertEqual(envelope.blocks[0].content.facts, (parse_fact('user("alice")'),))

    def _assert_rejected(self, data, fragment):
        with self.assertRaises(BiscuitValidationError) as cm:
            decode_envelope(data)
        self.assertIn(fragment, str(cm.exception))

    def test_bad_magic(self):
        self._assert_rejected(b"XXXX" + self.data[4:], "magic")

    def test_bad_version(self):
        self._assert_rejected(self.data[:4] + b"\x02" + self.data[5:], "version")

    def test_bad_key_id_flag(self):
        self._assert_rejected(self.data[:5] + b"\x07" + self.data[6:], "flag")

    def test_no_blocks(self):
        self._assert_rejected(b"CTKN\x01\x00\x00\x00\x00\x00", "no blocks")

    def test_truncated(self):
        self._assert_rejected(self.data[:-1], "truncated")
        self._assert_rejected(self.data[:12], "truncated")

    def test_trailing_bytes(self):
        self._assert_rejected(self.data + b"\x00", "trailing")

    def test_bad_proof_kind(self):
        data = bytearray(self.data)
        data[-33] = 5
        self._assert_rejected(bytes(data), "proof kind")

    def test_unsupported_algorithm(self):
        data = bytearray(self.data)
        data[14 + self._payload_len()] = 1
        self._assert_rejected(bytes(data), "algorithm")

    def test_duplicate_extension_tags(self):
        block = Block(
            content=BlockContent(),
            payload=encode_payload(BlockContent()),
            next_key=KeyPair().public_key,
            signature=b"\x00" * 64,
            extensions=((1, b"a"), (1, b"b")),
        )
        envelope = Envelope((block,), Proof(next_secret=KeyPair().private_key))
        self._assert_rejected(encode_envelope(envelope), "duplicate extension")

    def test_deeply_nested_payload(self):
        block = Block(
            content=BlockContent(),
            payload=b"[" * 200000 + b"]" * 200000,
            next_key=KeyPair().public_key,
            signature=b"\x00" * 64,
        )
        data = encode_envelope(Envelope((block,), Proof(next_secret=KeyPair().private_key)))
        self._assert_rejected(data, "malformed block payload")
        with self.assertRaises(BiscuitValidationError):
            Biscuit.from_bytes(data, KeyPair().public_key)

    def test_not_bytes(self):
        self._assert_rejected("CTKN", "must be bytes")

    def test_proof_requires_exactly_one_field(self):
        with self.assertRaises(ValueError):
            Proof()
        with self.assertRaises(ValueError):
            Proof(next_secret=KeyPair().private_key, final_signature=b"\x00" * 64)


if __name__ == "__main__":
    unittest.main()
