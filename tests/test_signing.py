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


import asyncio
import unittest

from tapbuilder.constants import SIGNING_BATCH_SIZE
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError, SigningError
from tapbuilder.finalizers import (
    STANDARD_FINALIZER,
    CustomFinalizer,
    MultisigFinalizer,
)
from tapbuilder.generators import MultiSignGenerator
from tapbuilder.hashes import hash160
from tapbuilder.keys import P2pkhAddress, PrivateKey
from tapbuilder.psbt import PSBT, PSBTInput
from tapbuilder.rotation import (
    SignerResolver,
    create_address_rotation,
    create_signer_map,
    matches_taproot_input,
    pubkey_in_script,
)
from tapbuilder.script import Script
from tapbuilder.setup import setup
from tapbuilder.signers import KeyPairSigner, WalletSigner, tweak_signer
from tapbuilder.signing import SigningCoordinator
from tapbuilder.taproot import ScriptTree, derive_address
from tapbuilder.transactions import TxInput, TxOutput
from tapbuilder.utxo import UTXO


# taproot key path spend signed with the 02 key
RAW_SIGNED02 = (
    "02000000000101566e10098ddba743bedbe1e4b356377abb3ef106c6831e733863d5eea012"
    "647b0100000000ffffffff01a00f0000000000001976a9148e48a6c5108efac226d33018b5"
    "347bb24adec37a88ac01403065c743ec6261ce82abe9ea13f718702f9fb23f6d95ffe0eb59"
    "266d38416ad29b664370c8f6719a8e1354f38c58c7c6e965cec71b9b5b0f8c100d207a448b"
    "d100000000"
)


def key_path_psbt(priv, to_script):
    psbt = PSBT()
    psbt_input = PSBTInput()
    psbt_input.witness_utxo = TxOutput(
        5000, Script(["OP_1", priv.get_public_key().to_taproot_hex()[0]])
    )
    psbt.add_input(
        TxInput(
            "7b6412a0eed56338731e83c606f13ebb7a3756b3e4e1dbbe43a7db8d09106e56",
            1,
            sequence=b"\xff\xff\xff\xff",
        ),
        psbt_input,
    )
    psbt.add_output(TxOutput(4000, to_script))
    return psbt


class TestSigners(unittest.TestCase):
    def setUp(self):
        setup("testnet")
        self.ecc = EccBackend()
        self.signer = KeyPairSigner(PrivateKey(secret_exponent=3), ecc=self.ecc)

    def test_key_pair_signer(self):
        self.assertEqual(len(self.signer.public_key), 33)
        self.assertEqual(self.signer.x_only_public_key, self.signer.public_key[1:])
        digest = bytes(range(32))
        sig = self.signer.sign_schnorr(digest)
        self.assertTrue(self.ecc.verify_schnorr(self.signer.x_only_public_key, digest, sig))
        der = self.signer.sign(digest)
        self.assertTrue(self.ecc.verify_ecdsa(self.signer.public_key, digest, der))

    def test_key_pair_signer_from_wif(self):
        signer = KeyPairSigner.from_wif("cV3R88re3AZSBnWhBBNdiCKTfwpMKkYYjdiR13HQzsU7zoRNX7JL")
        self.assertEqual(
            signer.public_key,
            PrivateKey("cV3R88re3AZSBnWhBBNdiCKTfwpMKkYYjdiR13HQzsU7zoRNX7JL")
            .get_public_key()
            .to_bytes(),
        )

    def test_key_pair_signer_invalid_key(self):
        with self.assertRaises(ParameterError):
            KeyPairSigner(bytes(32))

    def test_wallet_signer_without_schnorr(self):
        wallet = WalletSigner(self.signer.public_key, self.signer.sign)
        self.assertIsNone(wallet.private_key)
        self.assertFalse(wallet.can_sign_schnorr)
        with self.assertRaises(SigningError):
            wallet.sign_schnorr(bytes(32))

    def test_wallet_signer_bad_public_key(self):
        with self.assertRaises(ParameterError):
            WalletSigner(self.signer.x_only_public_key, self.signer.sign)

    def test_tweak_signer(self):
        tweaked = tweak_signer(self.signer, self.ecc)
        expected = PrivateKey(secret_exponent=3).get_public_key().to_taproot_hex()[0]
        self.assertEqual(tweaked.x_only_public_key.hex(), expected)

    def test_tweak_wallet_signer(self):
        wallet = WalletSigner(self.signer.public_key, self.signer.sign)
        with self.assertRaises(SigningError):
            tweak_signer(wallet, self.ecc)


class TestAddressRotation(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.default = KeyPairSigner(PrivateKey(secret_exponent=5))
        self.rotated = KeyPairSigner(PrivateKey(secret_exponent=6))
        self.embedded = KeyPairSigner(PrivateKey(secret_exponent=7))

    def make_utxo(self, address, signer=None):
        return UTXO("11" * 32, 0, 5000, "5120" + "aa" * 32, address=address, signer=signer)

    def test_resolution_order(self):
        resolver = SignerResolver(
            self.default, create_address_rotation({"addr-1": self.rotated})
        )
        self.assertIs(resolver.resolve(self.make_utxo("addr-1", self.embedded)), self.embedded)
        self.assertIs(resolver.resolve(self.make_utxo("addr-1")), self.rotated)
        self.assertIs(resolver.resolve(self.make_utxo("addr-2")), self.default)

    def test_rotation_disabled(self):
        resolver = SignerResolver(self.default)
        self.assertFalse(resolver.rotation_enabled)
        self.assertIs(resolver.resolve(self.make_utxo("addr-1")), self.default)

    def test_missing_signer(self):
        with self.assertRaises(ParameterError):
            SignerResolver(None)
        resolver = SignerResolver(None, create_address_rotation({"addr-1": self.rotated}))
        with self.assertRaises(ParameterError):
            resolver.validate([self.make_utxo("addr-1"), self.make_utxo("addr-2")])

    def test_signer_map_last_wins(self):
        signer_map = create_signer_map([("a", self.default), ("a", self.rotated)])
        self.assertIs(signer_map["a"], self.rotated)
        config = create_address_rotation([("b", self.default)])
        self.assertTrue(config.enabled)
        self.assertIs(config.signer_map["b"], self.default)

    def test_pubkey_in_script(self):
        public_key = self.default.public_key
        self.assertTrue(pubkey_in_script(public_key, Script([public_key.hex(), "OP_CHECKSIG"])))
        self.assertTrue(pubkey_in_script(public_key, Script([public_key[1:], "OP_CHECKSIG"])))
        self.assertTrue(
            pubkey_in_script(
                public_key,
                Script(["OP_DUP", "OP_HASH160", hash160(public_key), "OP_EQUALVERIFY", "OP_CHECKSIG"]),
            )
        )
        self.assertFalse(
            pubkey_in_script(public_key, Script([self.rotated.public_key, "OP_CHECKSIG"]))
        )

    def test_matches_taproot_input(self):
        psbt_input = PSBTInput()
        output_key = PrivateKey(secret_exponent=5).get_public_key().to_taproot_hex()[0]
        psbt_input.witness_utxo = TxOutput(5000, Script(["OP_1", output_key]))
        self.assertTrue(matches_taproot_input(psbt_input, self.default.public_key))
        self.assertFalse(matches_taproot_input(psbt_input, self.rotated.public_key))
        psbt_input.tap_internal_key = self.rotated.public_key[1:]
        self.assertTrue(matches_taproot_input(psbt_input, self.rotated.public_key))


class TestSigningCoordinator(unittest.IsolatedAsyncioTestCase):
    maxDiff = None

    def setUp(self):
        setup("testnet")
        self.ecc = EccBackend()
        self.priv02 = PrivateKey("cV3R88re3AZSBnWhBBNdiCKTfwpMKkYYjdiR13HQzsU7zoRNX7JL")
        self.signer02 = KeyPairSigner(self.priv02, ecc=self.ecc)
        self.to_script = P2pkhAddress("mtVHHCqCECGwiMbMoZe8ayhJHuTdDbYWdJ").to_script_pub_key()

        # leaf spendable by the leaf key, output keyed to the internal key
        self.internal = KeyPairSigner(PrivateKey(secret_exponent=11), ecc=self.ecc)
        self.leaf_signer = KeyPairSigner(PrivateKey(secret_exponent=12), ecc=self.ecc)
        self.tree = ScriptTree([Script([self.leaf_signer.x_only_public_key, "OP_CHECKSIG"])])
        self.output = derive_address(self.internal.public_key, self.tree, ecc=self.ecc)

    def key_path_psbt(self):
        return key_path_psbt(self.priv02, self.to_script)

    def script_path_psbt(self):
        psbt = PSBT()
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(10000, self.output.script_pub_key)
        psbt_input.tap_leaf_script = [
            self.tree.tap_leaf_script(0, self.internal.public_key, ecc=self.ecc)
        ]
        psbt.add_input(TxInput("22" * 32, 0), psbt_input)
        psbt.add_output(TxOutput(9000, self.to_script))
        return psbt

    async def test_key_path_signature(self):
        psbt = self.key_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(self.signer02), self.ecc)
        self.assertTrue(await coordinator.sign_and_finalize(psbt, [None]))
        self.assertTrue(coordinator.finalized)
        self.assertEqual(psbt.extract_transaction().serialize(), RAW_SIGNED02)

    async def test_sign_inputs_without_finalizing(self):
        psbt = self.key_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(self.signer02), self.ecc)
        await coordinator.sign_inputs(psbt, [None])
        self.assertFalse(psbt.is_input_finalized(0))
        self.assertEqual(len(psbt.inputs[0].tap_key_sig), 64)

    async def test_wrong_key_path_signer(self):
        psbt = self.key_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(self.internal), self.ecc)
        with self.assertRaises(SigningError):
            await coordinator.sign_and_finalize(psbt, [None])

    async def test_ignore_signature_errors(self):
        psbt = self.key_path_psbt()
        coordinator = SigningCoordinator(
            SignerResolver(self.internal), self.ecc, ignore_signature_errors=True
        )
        self.assertFalse(await coordinator.sign_and_finalize(psbt, [None]))
        self.assertFalse(psbt.is_input_finalized(0))

    async def test_utxo_count_mismatch(self):
        coordinator = SigningCoordinator(SignerResolver(self.signer02), self.ecc)
        with self.assertRaises(ParameterError):
            await coordinator.sign_and_finalize(self.key_path_psbt(), [])

    def test_invalid_batch_size(self):
        with self.assertRaises(ParameterError):
            SigningCoordinator(SignerResolver(self.signer02), batch_size=0)

    async def test_script_path_extra_signer(self):
        psbt = self.script_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(self.internal), self.ecc)
        done = await coordinator.sign_and_finalize(
            psbt, [None], {0: STANDARD_FINALIZER}, {0: [self.leaf_signer]}
        )
        self.assertTrue(done)
        witness = psbt.inputs[0].final_scriptwitness
        self.assertEqual(len(witness), 3)
        self.assertEqual(len(witness[0]), 64)
        self.assertEqual(witness[1], self.tree.leaves[0].script.to_bytes())
        self.assertEqual(len(witness[2]), 33)

    async def test_script_path_async_wallet_signer(self):
        leaf_signer = self.leaf_signer

        async def sign_schnorr(digest):
            return leaf_signer.sign_schnorr(digest)

        wallet = WalletSigner(leaf_signer.public_key, leaf_signer.sign, sign_schnorr)
        psbt = self.script_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(wallet), self.ecc)
        self.assertTrue(await coordinator.sign_and_finalize(psbt, [None]))

    async def test_script_path_without_matching_signer(self):
        psbt = self.script_path_psbt()
        coordinator = SigningCoordinator(SignerResolver(self.internal), self.ecc)
        with self.assertRaises(SigningError):
            await coordinator.sign_and_finalize(psbt, [None])

    async def test_p2wpkh_signature(self):
        signer = KeyPairSigner(PrivateKey(secret_exponent=13), ecc=self.ecc)
        psbt = PSBT()
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(7000, Script(["OP_0", hash160(signer.public_key)]))
        psbt.add_input(TxInput("33" * 32, 1), psbt_input)
        psbt.add_output(TxOutput(6000, self.to_script))
        coordinator = SigningCoordinator(SignerResolver(signer), self.ecc)
        self.assertTrue(await coordinator.sign_and_finalize(psbt, [None]))
        witness = psbt.inputs[0].final_scriptwitness
        self.assertEqual(witness[1], signer.public_key)
        self.assertEqual(witness[0][-1], 0x01)


class TestBlockingSigning(unittest.TestCase):
    def test_key_path_signature_sync(self):
        setup("testnet")
        priv = PrivateKey("cV3R88re3AZSBnWhBBNdiCKTfwpMKkYYjdiR13HQzsU7zoRNX7JL")
        psbt = key_path_psbt(
            priv, P2pkhAddress("mtVHHCqCECGwiMbMoZe8ayhJHuTdDbYWdJ").to_script_pub_key()
        )
        coordinator = SigningCoordinator(SignerResolver(KeyPairSigner(priv)))
        self.assertTrue(coordinator.sign_and_finalize_sync(psbt, [None]))
        self.assertEqual(psbt.extract_transaction().serialize(), RAW_SIGNED02)


class TestFinalizers(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        setup("regtest")
        self.ecc = EccBackend()
        self.signers = [
            KeyPairSigner(PrivateKey(secret_exponent=n), ecc=self.ecc) for n in (21, 22, 23)
        ]
        script = MultiSignGenerator.compile(
            [signer.public_key for signer in self.signers], 2
        )
        self.tree = ScriptTree([script, Script(["OP_1"])])
        self.output = derive_address(
            self.signers[0].public_key, self.tree, "regtest", ecc=self.ecc
        )

    def make_psbt(self):
        psbt = PSBT()
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(20000, self.output.script_pub_key)
        psbt_input.tap_leaf_script = [
            self.tree.tap_leaf_script(0, self.signers[0].public_key, ecc=self.ecc)
        ]
        psbt.add_input(TxInput("44" * 32, 0), psbt_input)
        psbt.add_output(TxOutput(15000, self.output.script_pub_key))
        return psbt

    async def test_multisig_threshold(self):
        psbt = self.make_psbt()
        finalizer = MultisigFinalizer(2)
        coordinator = SigningCoordinator(SignerResolver(self.signers[0]), self.ecc)

        await coordinator.sign_inputs(psbt, [None])
        self.assertFalse(finalizer.can_finalize(psbt, 0))
        with self.assertRaises(SigningError):
            finalizer.finalize(psbt, 0)

        await coordinator.sign_inputs(psbt, [None], {0: [self.signers[2]]})
        self.assertTrue(finalizer.can_finalize(psbt, 0))
        finalizer.finalize(psbt, 0)

        witness = psbt.inputs[0].final_scriptwitness
        keys = MultiSignGenerator.order_keys([s.public_key for s in self.signers])
        missing = keys.index(self.signers[1].x_only_public_key)
        self.assertEqual(len(witness), 5)
        self.assertEqual(witness[2 - missing], b"")
        self.assertEqual(sum(1 for item in witness[:3] if len(item) == 64), 2)

    def test_custom_annex_prefix(self):
        self.assertEqual(CustomFinalizer([], annex="0102").annex, b"\x50\x01\x02")
        self.assertEqual(CustomFinalizer([], annex=b"\x50\x01").annex, b"\x50\x01")
        self.assertIsNone(CustomFinalizer([], annex=b"").annex)
        self.assertTrue(CustomFinalizer([]).is_script_path)
        self.assertFalse(STANDARD_FINALIZER.is_script_path)

class RecordingSigner:
    """Wallet style signer whose signatures take a few event loop turns"""

    private_key = None
    can_sign_schnorr = True

    def __init__(self, signer):
        self.signer = signer
        self.public_key = signer.public_key
        self.active = 0
        self.max_active = 0
        self.events = []

    async def _signed(self, kind, sign, digest):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.events.append(("start", kind))
        for _ in range(3):
            await asyncio.sleep(0)
        self.active -= 1
        self.events.append(("end", kind))
        return sign(digest)

    def sign(self, digest):
        return self._signed("ecdsa", self.signer.sign, digest)

    def sign_schnorr(self, digest):
        return self._signed("schnorr", self.signer.sign_schnorr, digest)


class TestSigningOrder(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        setup("testnet")
        self.ecc = EccBackend()
        self.internal = KeyPairSigner(PrivateKey(secret_exponent=11), ecc=self.ecc)
        self.key = KeyPairSigner(PrivateKey(secret_exponent=12), ecc=self.ecc)
        self.recorder = RecordingSigner(self.key)
        self.to_script = P2pkhAddress("mtVHHCqCECGwiMbMoZe8ayhJHuTdDbYWdJ").to_script_pub_key()

    def add_p2wpkh_input(self, psbt, public_key, number):
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(7000, Script(["OP_0", hash160(public_key)]))
        psbt.add_input(TxInput(f"{number:02x}" * 32, 0), psbt_input)

    def mixed_psbt(self, p2wpkh_inputs):
        """A script path input 0 followed by P2WPKH inputs of the same key"""
        tree = ScriptTree([Script([self.key.x_only_public_key, "OP_CHECKSIG"])])
        output = derive_address(self.internal.public_key, tree, ecc=self.ecc)
        psbt = PSBT()
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(10000, output.script_pub_key)
        psbt_input.tap_leaf_script = [
            tree.tap_leaf_script(0, self.internal.public_key, ecc=self.ecc)
        ]
        psbt.add_input(TxInput("ee" * 32, 0), psbt_input)
        for number in range(1, p2wpkh_inputs + 1):
            self.add_p2wpkh_input(psbt, self.key.public_key, number)
        psbt.add_output(TxOutput(9000, self.to_script))
        return psbt

    async def test_script_path_input_completes_first(self):
        psbt = self.mixed_psbt(4)
        coordinator = SigningCoordinator(SignerResolver(self.recorder), self.ecc)
        done = await coordinator.sign_and_finalize(psbt, [None] * 5, {0: CustomFinalizer([])})
        self.assertTrue(done)

        events = self.recorder.events
        self.assertEqual(events[:2], [("start", "schnorr"), ("end", "schnorr")])
        self.assertEqual(len(events), 10)
        self.assertTrue(all(kind == "ecdsa" for _, kind in events[2:]))
        self.assertEqual(self.recorder.max_active, 4)

    async def test_batch_size_bounds_concurrent_signatures(self):
        psbt = self.mixed_psbt(7)
        coordinator = SigningCoordinator(SignerResolver(self.recorder), self.ecc, batch_size=3)
        done = await coordinator.sign_and_finalize(psbt, [None] * 8, {0: CustomFinalizer([])})
        self.assertTrue(done)
        self.assertEqual(self.recorder.max_active, 3)
        self.assertEqual(len(self.recorder.events), 16)

    async def test_default_batch_size(self):
        psbt = self.mixed_psbt(SIGNING_BATCH_SIZE + 5)
        coordinator = SigningCoordinator(SignerResolver(self.recorder), self.ecc)
        done = await coordinator.sign_and_finalize(
            psbt, [None] * (SIGNING_BATCH_SIZE + 6), {0: CustomFinalizer([])}
        )
        self.assertTrue(done)
        self.assertEqual(self.recorder.max_active, SIGNING_BATCH_SIZE)

    async def test_failing_batch_settles_before_raising(self):
        psbt = PSBT()
        self.add_p2wpkh_input(psbt, self.internal.public_key, 1)
        self.add_p2wpkh_input(psbt, self.key.public_key, 2)
        psbt.add_output(TxOutput(9000, self.to_script))
        coordinator = SigningCoordinator(SignerResolver(self.recorder), self.ecc)

        with self.assertRaises(SigningError) as context:
            await coordinator.sign_and_finalize(psbt, [None, None])
        self.assertEqual(context.exception.input_index, 0)
        self.assertEqual(self.recorder.active, 0)
        self.assertTrue(psbt.is_input_finalized(1))
        self.assertFalse(psbt.is_input_finalized(0))

    async def test_programming_errors_propagate(self):
        def broken(digest):
            raise TypeError("digest must be bytes")

        wallet = WalletSigner(self.key.public_key, broken)
        psbt = PSBT()
        self.add_p2wpkh_input(psbt, self.key.public_key, 1)
        psbt.add_output(TxOutput(6000, self.to_script))
        coordinator = SigningCoordinator(
            SignerResolver(wallet), self.ecc, ignore_signature_errors=True
        )
        with self.assertRaises(TypeError):
            await coordinator.sign_and_finalize(psbt, [None])


if __name__ == "__main__":
    unittest.main()
