# Copyright (C) 2018-2025 The tapbuilder developers
#
# This file is part of tapbuilder
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of tapbuilder, including this file, may be copied, modified,
# propagated, or distributed except according to the terms contained in the
# LICENSE file.


import unittest

from tapbuilder.errors import ParameterError, ScriptIntegrityError
from tapbuilder.script import Script, decode_script_number, script_number


class TestScriptNumbers(unittest.TestCase):
    def test_small_numbers(self):
        self.assertEqual(script_number(0), b"")
        self.assertEqual(script_number(1), b"\x01")
        self.assertEqual(script_number(127), b"\x7f")

    def test_sign_bit_needs_extra_byte(self):
        self.assertEqual(script_number(128), b"\x80\x00")
        self.assertEqual(script_number(-128), b"\x80\x80")
        self.assertEqual(script_number(255), b"\xff\x00")

    def test_negative(self):
        self.assertEqual(script_number(-1), b"\x81")
        self.assertEqual(script_number(-255), b"\xff\x80")

    def test_decode(self):
        for value in (0, 1, -1, 16, 75, 127, 128, -128, 255, 1000, -1000, 65535):
            self.assertEqual(decode_script_number(script_number(value)), value)


class TestScript(unittest.TestCase):
    def setUp(self):
        self.pubkey = "02" + "11" * 32

    def test_op_codes_and_data(self):
        script = Script([self.pubkey, "OP_CHECKSIG"])
        self.assertEqual(script.to_hex(), "21" + self.pubkey + "ac")

    def test_integers_use_small_opcodes(self):
        self.assertEqual(Script([0, 1, 16, -1]).to_hex(), "0051604f")
        self.assertEqual(Script([75]).to_hex(), "014b")

    def test_minimal_push_of_single_bytes(self):
        self.assertEqual(Script([b"\x05"]).to_hex(), "55")
        self.assertEqual(Script([b"\x81"]).to_hex(), "4f")
        self.assertEqual(Script([b"\x00"]).to_hex(), "0100")
        self.assertEqual(Script([b""]).to_hex(), "00")

    def test_pushdata_lengths(self):
        self.assertEqual(Script([b"\xaa" * 75]).to_bytes()[:1], b"\x4b")
        self.assertEqual(Script([b"\xaa" * 76]).to_bytes()[:2], b"\x4c\x4c")
        self.assertEqual(Script([b"\xaa" * 256]).to_bytes()[:3], b"\x4d\x00\x01")

    def test_invalid_tokens(self):
        with self.assertRaises(ParameterError):
            Script(["OP_NOT_AN_OPCODE"]).to_bytes()
        with self.assertRaises(ParameterError):
            Script([True]).to_bytes()
        with self.assertRaises(ParameterError):
            Script(["zz"]).to_bytes()

    def test_from_raw(self):
        raw = "76a914" + "22" * 20 + "88ac"
        script = Script.from_raw(raw)
        self.assertEqual(
            script.get_script(),
            ["OP_DUP", "OP_HASH160", "22" * 20, "OP_EQUALVERIFY", "OP_CHECKSIG"],
        )
        self.assertEqual(script.to_hex(), raw)
        self.assertTrue(script.is_p2pkh())
        self.assertEqual(script.get_script_type(), "p2pkh")

    def test_from_raw_pushdata(self):
        raw = bytes([0x4C, 80]) + b"\x01" * 80 + b"\xac"
        script = Script.from_raw(raw)
        self.assertEqual(script.get_script(), ["01" * 80, "OP_CHECKSIG"])
        self.assertEqual(script.to_bytes(), raw)

    def test_from_raw_truncated_push(self):
        with self.assertRaises(ScriptIntegrityError):
            Script.from_raw("05aabb")

    def test_checksigadd(self):
        script = Script(["OP_0", "11" * 32, "OP_CHECKSIGADD", 2, "OP_NUMEQUAL"])
        self.assertEqual(script.to_hex(), "0020" + "11" * 32 + "ba529c")

    def test_script_types(self):
        self.assertTrue(Script(["OP_1", "33" * 32]).is_p2tr())
        self.assertTrue(Script(["OP_2", "33" * 32]).is_p2mr())
        self.assertTrue(Script(["OP_0", "33" * 32]).is_p2wsh())
        self.assertTrue(Script(["OP_0", "33" * 20]).is_p2wpkh())
        self.assertTrue(Script(["OP_HASH160", "33" * 20, "OP_EQUAL"]).is_p2sh())
        self.assertEqual(Script(["OP_RETURN", b"note"]).get_script_type(), "nulldata")
        self.assertEqual(Script(["OP_2", "33" * 32]).get_script_type(), "p2mr")

    def test_p2wsh_script_pub_key(self):
        script = Script([self.pubkey, "OP_CHECKSIG"])
        self.assertTrue(script.to_p2wsh_script_pub_key().is_p2wsh())
        self.assertTrue(script.to_p2sh_script_pub_key().is_p2sh())

    def test_equality(self):
        self.assertEqual(Script(["OP_1"]), Script([1]))
        self.assertEqual(Script([bytes.fromhex(self.pubkey)]), Script([self.pubkey]))


if __name__ == "__main__":
    unittest.main()
