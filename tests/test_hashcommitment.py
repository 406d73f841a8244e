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
from unittest import mock

from tapbuilder.errors import ParameterError, ScriptIntegrityError
from tapbuilder.hashcommitment import (
    MAX_CHUNKS_PER_OUTPUT,
    MAX_DATA_PER_TX,
    MAX_INPUTS,
    HashCommitmentGenerator,
)
from tapbuilder.hashes import hash160
from tapbuilder.keys import PrivateKey
from tapbuilder.script import Script
from tapbuilder.setup import setup


class TestHashCommitmentGenerator(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.public_key = PrivateKey(secret_exponent=77).get_public_key().to_bytes()
        self.generator = HashCommitmentGenerator(self.public_key)

    def test_limits(self):
        self.assertEqual(MAX_CHUNKS_PER_OUTPUT, 14)
        self.assertEqual(MAX_INPUTS, 220)
        self.assertEqual(MAX_DATA_PER_TX, 220 * 14 * 80)

    def test_prepare_chunks(self):
        data = bytes(range(256)) * 8
        outputs = self.generator.prepare_chunks(data)
        self.assertEqual(len(outputs), 2)
        self.assertEqual(len(outputs[0].data_chunks), 14)
        self.assertEqual(len(outputs[1].data_chunks), 12)
        self.assertEqual(outputs[1].chunk_start_index, 14)
        self.assertEqual(b"".join(c for o in outputs for c in o.data_chunks), data)
        for output in outputs:
            self.assertTrue(output.script_pub_key.is_p2wsh())
            self.assertTrue(output.address.to_string().startswith("bcrt1q"))

    def test_chunk_count_is_ceiling(self):
        for size in (1, 79, 80, 81, 1119, 1120, 1121):
            outputs = self.generator.prepare_chunks(b"\x01" * size)
            chunks = sum(len(o.data_chunks) for o in outputs)
            self.assertEqual(chunks, -(-size // 80))
            self.assertEqual(chunks, HashCommitmentGenerator.estimate_chunk_count(size))
            self.assertEqual(len(outputs), HashCommitmentGenerator.estimate_output_count(size))

    def test_witness_script_order(self):
        chunks = [b"\x01" * 80, b"\x02" * 80]
        script = self.generator.generate_witness_script([hash160(c) for c in chunks])
        tokens = script.get_script()
        # the last chunk is checked first
        self.assertEqual(tokens[1], hash160(chunks[1]))
        self.assertEqual(tokens[4], hash160(chunks[0]))
        self.assertEqual(tokens[-2:], [self.public_key, "OP_CHECKSIG"])

    def test_witness_script_must_survive_reparsing(self):
        hashes = [hash160(b"\x01" * 80)]
        with mock.patch("tapbuilder.script.Script.from_raw", return_value=Script(["OP_1"])):
            with self.assertRaises(ScriptIntegrityError):
                self.generator.generate_witness_script(hashes)

    def test_validate_and_extract(self):
        chunks = [b"\x01" * 80, b"\x02" * 10]
        script = self.generator.generate_witness_script([hash160(c) for c in chunks])
        self.assertTrue(HashCommitmentGenerator.validate_hash_committed_script(script))
        self.assertEqual(
            HashCommitmentGenerator.extract_data_hashes(script), [hash160(c) for c in chunks]
        )
        self.assertEqual(HashCommitmentGenerator.extract_public_key(script), self.public_key)
        self.assertTrue(HashCommitmentGenerator.verify_chunk_commitments(chunks, script))
        self.assertFalse(
            HashCommitmentGenerator.verify_chunk_commitments(list(reversed(chunks)), script)
        )

    def test_validate_rejects_other_scripts(self):
        self.assertFalse(
            HashCommitmentGenerator.validate_hash_committed_script(b"\x51\x20" + b"\x01" * 32)
        )
        self.assertIsNone(HashCommitmentGenerator.extract_data_hashes(b"\xac"))

    def test_witness_limits(self):
        HashCommitmentGenerator.validate_witness([b"\x01" * 80] * 14)
        with self.assertRaises(ScriptIntegrityError):
            HashCommitmentGenerator.validate_witness([b"\x01" * 81])
        with self.assertRaises(ScriptIntegrityError):
            HashCommitmentGenerator.validate_witness([b"\x01"] * 100)
        with self.assertRaises(ScriptIntegrityError):
            HashCommitmentGenerator.validate_witness([b"\x01" * 80] * 16)

    def test_invalid_parameters(self):
        with self.assertRaises(ParameterError):
            HashCommitmentGenerator(self.public_key[1:])
        with self.assertRaises(ParameterError):
            self.generator.prepare_chunks(b"\x01", max_chunk_size=81)
        with self.assertRaises(ParameterError):
            self.generator.prepare_chunks(b"")
        with self.assertRaises(ParameterError):
            self.generator.generate_witness_script([b"\x01" * 20] * 15)

    def test_reveal_weight_grows_with_outputs(self):
        small = self.generator.prepare_chunks(b"\x01" * 100)
        large = self.generator.prepare_chunks(b"\x01" * 5000)
        self.assertLess(
            HashCommitmentGenerator.calculate_reveal_weight(small),
            HashCommitmentGenerator.calculate_reveal_weight(large),
        )


if __name__ == "__main__":
    unittest.main()
