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

from tapbuilder.constants import SIGHASH_SINGLE, TAPROOT_SIGHASH_ALL
from tapbuilder.errors import ParameterError
from tapbuilder.keys import P2pkhAddress, PrivateKey
from tapbuilder.script import Script
from tapbuilder.setup import setup
from tapbuilder.signers import KeyPairSigner, tweak_signer
from tapbuilder.transactions import Transaction, TxInput, TxOutput, TxWitnessInput
from tapbuilder.utils import to_satoshis


def key_path_signature(key, tx, script_pubkeys, amounts, sighash=TAPROOT_SIGHASH_ALL):
    digest = tx.get_transaction_taproot_digest(0, script_pubkeys, amounts, 0, sighash=sighash)
    signature = tweak_signer(KeyPairSigner(key)).sign_schnorr(digest)
    if sighash != TAPROOT_SIGHASH_ALL:
        signature += bytes([sighash])
    return signature.hex()


class TestTaprootKeyPathTransaction(unittest.TestCase):
    maxDiff = None

    def setUp(self):
        setup("testnet")
        self.priv02 = PrivateKey("cV3R88re3AZSBnWhBBNdiCKTfwpMKkYYjdiR13HQzsU7zoRNX7JL")
        self.pub02 = self.priv02.get_public_key()
        self.txin02 = TxInput(
            "7b6412a0eed56338731e83c606f13ebb7a3756b3e4e1dbbe43a7db8d09106e56",
            1,
            sequence=b"\xff\xff\xff\xff",
        )
        self.amount02 = to_satoshis(0.00005)
        self.script_pubkey02 = Script(["OP_1", self.pub02.to_taproot_hex()[0]])
        self.to_address = P2pkhAddress("mtVHHCqCECGwiMbMoZe8ayhJHuTdDbYWdJ")
        self.txout02 = TxOutput(to_satoshis(0.00004), self.to_address.to_script_pub_key())

        self.raw_unsigned02 = (
            "02000000000101566e10098ddba743bedbe1e4b356377abb3ef106c6831e733863d5eea012"
            "647b0100000000ffffffff01a00f0000000000001976a9148e48a6c5108efac226d33018b5"
            "347bb24adec37a88ac00000000"
        )
        self.raw_signed02 = (
            "02000000000101566e10098ddba743bedbe1e4b356377abb3ef106c6831e733863d5eea012"
            "647b0100000000ffffffff01a00f0000000000001976a9148e48a6c5108efac226d33018b5"
            "347bb24adec37a88ac01403065c743ec6261ce82abe9ea13f718702f9fb23f6d95ffe0eb59"
            "266d38416ad29b664370c8f6719a8e1354f38c58c7c6e965cec71b9b5b0f8c100d207a448b"
            "d100000000"
        )
        self.raw_signed_single = (
            "02000000000101566e10098ddba743bedbe1e4b356377abb3ef106c6831e733863d5eea012"
            "647b0100000000ffffffff01a00f0000000000001976a9148e48a6c5108efac226d33018b5"
            "347bb24adec37a88ac01414ace20f539e3bcf3de7c14655fd2b0076e08de524b750039eeea"
            "286a69b858888258820f0677240768418373c96d38f27b1a904b4dbb092e2483c2a49471f4"
            "980300000000"
        )

        # odd y public key, the secret is negated before tweaking
        self.priv03 = PrivateKey("cNxX8M7XU8VNa5ofd8yk1eiZxaxNrQQyb7xNpwAmsrzEhcVwtCjs")
        self.txin03 = TxInput(
            "2a28f8bd8ba0518a86a390da310073a30b7df863d04b42a9c487edf3a8b113af",
            1,
            sequence=b"\xff\xff\xff\xff",
        )
        self.script_pubkey03 = Script(
            ["OP_1", self.priv03.get_public_key().to_taproot_hex()[0]]
        )
        self.raw_signed03 = (
            "02000000000101af13b1a8f3ed87c4a9424bd063f87d0ba3730031da90a3868a51a08bbdf8"
            "282a0100000000ffffffff01a00f0000000000001976a9148e48a6c5108efac226d33018b5"
            "347bb24adec37a88ac0140e19f0031e545a607f5d9b3f2588cd39464be8cf845defdc15174"
            "f03d929ac8c96eef3fad46e1afc1262504fce884aa2ac520f4921c317d2b0779167f7ff33d"
            "6c00000000"
        )

    def test_unsigned(self):
        tx = Transaction([self.txin02], [self.txout02], has_segwit=True)
        self.assertEqual(tx.serialize(), self.raw_unsigned02)

    def test_signed_02_pubkey(self):
        tx = Transaction([self.txin02], [self.txout02], has_segwit=True)
        sig = key_path_signature(self.priv02, tx, [self.script_pubkey02], [self.amount02])
        tx.witnesses.append(TxWitnessInput([sig]))
        self.assertEqual(tx.serialize(), self.raw_signed02)
        self.assertEqual(tx.get_size(), 153)
        self.assertEqual(tx.get_vsize(), 102)

    def test_signed_03_pubkey(self):
        tx = Transaction([self.txin03], [self.txout02], has_segwit=True)
        sig = key_path_signature(self.priv03, tx, [self.script_pubkey03], [self.amount02])
        tx.witnesses.append(TxWitnessInput([sig]))
        self.assertEqual(tx.serialize(), self.raw_signed03)

    def test_signed_single(self):
        tx = Transaction([self.txin02], [self.txout02], has_segwit=True)
        sig = key_path_signature(
            self.priv02, tx, [self.script_pubkey02], [self.amount02], SIGHASH_SINGLE
        )
        tx.witnesses.append(TxWitnessInput([sig]))
        self.assertEqual(tx.serialize(), self.raw_signed_single)

    def test_from_raw_round_trip(self):
        tx = Transaction.from_raw(self.raw_signed02)
        self.assertTrue(tx.has_segwit)
        self.assertEqual(len(tx.inputs), 1)
        self.assertEqual(tx.outputs[0].amount, 4000)
        self.assertEqual(tx.to_hex(), self.raw_signed02)
        self.assertEqual(tx.get_txid(), Transaction.from_raw(self.raw_unsigned02).get_txid())
        self.assertNotEqual(tx.get_txid(), tx.get_wtxid())

    def test_from_raw_truncated(self):
        with self.assertRaises(ParameterError):
            Transaction.from_raw(self.raw_signed02[:-10])

    def test_digest_requires_every_amount(self):
        tx = Transaction([self.txin02], [self.txout02], has_segwit=True)
        with self.assertRaises(ParameterError):
            tx.get_transaction_taproot_digest(0, [self.script_pubkey02], [])

    def test_annex_changes_digest(self):
        tx = Transaction([self.txin02], [self.txout02], has_segwit=True)
        plain = tx.get_transaction_taproot_digest(0, [self.script_pubkey02], [self.amount02])
        with_annex = tx.get_transaction_taproot_digest(
            0, [self.script_pubkey02], [self.amount02], annex=b"\x50\x01"
        )
        self.assertNotEqual(plain, with_annex)
        with self.assertRaises(ParameterError):
            tx.get_transaction_taproot_digest(
                0, [self.script_pubkey02], [self.amount02], annex=b"\x01"
            )


if __name__ == "__main__":
    unittest.main()
