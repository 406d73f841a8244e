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

from tapbuilder.errors import ParameterError, SigningError
from tapbuilder.keys import PrivateKey
from tapbuilder.psbt import PSBT, PSBTInput
from tapbuilder.script import Script
from tapbuilder.setup import setup
from tapbuilder.taproot import build_tree, derive_address
from tapbuilder.transactions import Transaction, TxInput, TxOutput


class TestPSBT(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.key = PrivateKey(secret_exponent=31).get_public_key()
        self.leaf = Script([self.key.to_bytes()[1:], "OP_CHECKSIG"])
        self.tree = build_tree([self.leaf, Script(["OP_TRUE"])])
        self.output = derive_address(self.key.to_bytes(), self.tree)
        self.p2mr_output = derive_address(None, self.tree, variant="p2mr")
        self.change = TxOutput(1000, Script(["OP_0", "aa" * 20]))

    def make_psbt(self, output, variant="p2tr"):
        psbt = PSBT()
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(5000, output.script_pub_key)
        internal = None if variant == "p2mr" else self.key.to_bytes()
        psbt_input.tap_leaf_script = [self.tree.tap_leaf_script(0, internal, variant)]
        if variant == "p2tr":
            psbt_input.tap_internal_key = self.key.to_bytes()[1:]
            psbt_input.tap_merkle_root = self.tree.merkle_root()
        psbt.add_input(TxInput("55" * 32, 0), psbt_input)
        psbt.add_output(self.change)
        return psbt

    def test_base64_round_trip(self):
        psbt = self.make_psbt(self.output)
        encoded = psbt.to_base64()
        self.assertTrue(encoded.startswith("cHNidP8"))
        parsed = PSBT.from_base64(encoded)
        self.assertEqual(parsed.to_base64(), encoded)

        psbt_input = parsed.inputs[0]
        self.assertEqual(psbt_input.witness_utxo.amount, 5000)
        self.assertEqual(psbt_input.tap_internal_key, self.key.to_bytes()[1:])
        self.assertEqual(psbt_input.tap_merkle_root, self.tree.merkle_root())
        leaf = psbt_input.tap_leaf_script[0]
        self.assertEqual(leaf.script, self.leaf)
        self.assertEqual(leaf.control_block, self.tree.control_block(0, self.key.to_bytes()))
        self.assertFalse(leaf.is_p2mr())

    def test_p2mr_leaf_variant_is_restored(self):
        psbt = PSBT.from_base64(self.make_psbt(self.p2mr_output, "p2mr").to_base64())
        self.assertTrue(psbt.inputs[0].tap_leaf_script[0].is_p2mr())

    def test_signatures_survive_round_trip(self):
        psbt = self.make_psbt(self.output)
        psbt.inputs[0].tap_script_sig[(b"\x01" * 32, b"\x02" * 32)] = b"\x03" * 64
        parsed = PSBT.from_bytes(psbt.to_bytes())
        self.assertTrue(parsed.is_input_signed(0))
        self.assertEqual(parsed.inputs[0].tap_script_sig[(b"\x01" * 32, b"\x02" * 32)], b"\x03" * 64)

    def test_invalid_magic(self):
        with self.assertRaises(ParameterError):
            PSBT.from_bytes(b"xxxx\xff\x00")

    def test_finalize_and_extract(self):
        psbt = self.make_psbt(self.output)
        with self.assertRaises(SigningError):
            psbt.extract_transaction()

        psbt.finalize_input(0, [b"\x04" * 64, self.leaf.to_bytes(), b"\xc0" + b"\x05" * 32])
        self.assertTrue(psbt.is_finalized())
        # signing data is dropped once final
        self.assertEqual(psbt.inputs[0].tap_leaf_script, [])

        tx = psbt.extract_transaction()
        self.assertTrue(tx.has_segwit)
        self.assertEqual(len(tx.witnesses[0].stack), 3)
        self.assertEqual(Transaction.from_raw(tx.to_hex()).get_txid(), tx.get_txid())

        parsed = PSBT.from_base64(psbt.to_base64())
        self.assertEqual(parsed.extract_transaction().to_hex(), tx.to_hex())

    def test_finalize_requires_data(self):
        psbt = self.make_psbt(self.output)
        with self.assertRaises(ParameterError):
            psbt.finalize_input(0)

    def test_unsigned_tx_is_stripped(self):
        tx = Transaction(
            [TxInput("66" * 32, 1, script_sig=Script(["OP_1"]))], [self.change], has_segwit=True
        )
        psbt = PSBT(tx)
        self.assertEqual(psbt.tx.inputs[0].script_sig.to_bytes(), b"")
        self.assertEqual(len(psbt.inputs), 1)
        self.assertEqual(len(psbt.outputs), 1)

    def test_spent_scripts_and_amounts(self):
        psbt = self.make_psbt(self.output)
        scripts, amounts = psbt.spent_scripts_and_amounts()
        self.assertEqual(amounts, [5000])
        self.assertEqual(scripts[0], self.output.script_pub_key)
        psbt.add_input(TxInput("77" * 32, 0))
        with self.assertRaises(SigningError):
            psbt.spent_scripts_and_amounts()


if __name__ == "__main__":
    unittest.main()
