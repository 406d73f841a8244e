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

from tapbuilder.errors import InsufficientFundsError, ParameterError
from tapbuilder.script import Script
from tapbuilder.transactions import Transaction, TxInput, TxOutput
from tapbuilder.utxo import UTXO, UTXOManager, first_fit, select_utxos, total_value


SCRIPT = "5120" + "aa" * 32


def make_utxo(value, index=0, txid="11" * 32, **kwargs):
    return UTXO(txid, index, value, SCRIPT, **kwargs)


class TestUTXO(unittest.TestCase):
    def test_validation(self):
        with self.assertRaises(ParameterError):
            UTXO("11" * 31, 0, 1000, SCRIPT)
        with self.assertRaises(ParameterError):
            UTXO("11" * 32, -1, 1000, SCRIPT)
        with self.assertRaises(ParameterError):
            UTXO("11" * 32, 0, -5, SCRIPT)
        with self.assertRaises(ParameterError):
            UTXO("11" * 32, 0, 1000, "")

    def test_scripts_are_converted(self):
        utxo = make_utxo(1000, witness_script="51")
        self.assertEqual(utxo.witness_script, b"\x51")
        self.assertTrue(utxo.script_pub_key.is_p2tr())

    def test_from_listunspent(self):
        utxo = UTXO.from_dict(
            {
                "txid": "22" * 32,
                "vout": 3,
                "amount": 0.0001,
                "scriptPubKey": SCRIPT,
                "address": "bcrt1p",
            }
        )
        self.assertEqual(utxo.value, 10000)
        self.assertEqual(utxo.outpoint, ("22" * 32, 3))
        self.assertEqual(utxo.address, "bcrt1p")

    def test_from_indexer_row(self):
        utxo = UTXO.from_dict(
            {
                "transactionId": "33" * 32,
                "outputIndex": 1,
                "value": "5000",
                "scriptPubKey": {"hex": SCRIPT, "address": "bcrt1pxyz"},
            }
        )
        self.assertEqual(utxo.value, 5000)
        self.assertEqual(utxo.address, "bcrt1pxyz")
        self.assertEqual(utxo.script_pub_key_hex, SCRIPT)


class TestSelection(unittest.TestCase):
    def setUp(self):
        self.utxos = [make_utxo(v, i) for i, v in enumerate((500, 3000, 200, 7000))]

    def test_first_fit_overshoots(self):
        selected = first_fit(self.utxos, 3000)
        self.assertEqual([u.value for u in selected], [500, 3000])
        self.assertGreater(total_value(selected), 3000)

    def test_select_filters_small_utxos(self):
        selected = select_utxos(self.utxos, 1000, 3000)
        self.assertEqual([u.value for u in selected], [3000, 7000])

    def test_select_skips_spent(self):
        selected = select_utxos(self.utxos, 0, 100, spent=[("11" * 32, 0)])
        self.assertEqual(selected[0].value, 3000)

    def test_insufficient_funds(self):
        with self.assertRaises(InsufficientFundsError) as context:
            select_utxos(self.utxos, 0, 20000)
        self.assertEqual(context.exception.available, 10700)
        self.assertEqual(context.exception.requested, 20000)

    def test_no_candidate(self):
        with self.assertRaises(InsufficientFundsError):
            select_utxos(self.utxos, 10000, 1)

    def test_custom_strategy(self):
        def largest_first(utxos, amount):
            return sorted(utxos, key=lambda u: u.value, reverse=True)[:1]

        selected = select_utxos(self.utxos, 0, 5000, strategy=largest_first)
        self.assertEqual([u.value for u in selected], [7000])


class TestUTXOManager(unittest.TestCase):
    def test_spent_and_pending(self):
        manager = UTXOManager()
        spent = make_utxo(1000, 0)
        change = make_utxo(900, 1, txid="44" * 32)
        tx = Transaction([TxInput("11" * 32, 0)], [TxOutput(900, Script.from_raw(SCRIPT))])

        manager.add_pending([change])
        manager.mark_spent(tx)
        self.assertTrue(manager.is_spent(spent))
        self.assertEqual(manager.filter_unspent([spent]), [])
        self.assertEqual(manager.filter_unspent([spent], use_pending=True), [change])

        manager.clean()
        self.assertFalse(manager.is_spent(spent))


if __name__ == "__main__":
    unittest.main()
