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

from tapbuilder.constants import LEAF_VERSION_TAPSCRIPT, P2MR_CONTROL_BYTE
from tapbuilder.errors import ParameterError
from tapbuilder.script import Script
from tapbuilder.setup import setup
from tapbuilder.taproot import (
    ScriptTree,
    build_tree,
    control_block_size,
    derive_address,
    tapbranch_tagged_hash,
    tapleaf_tagged_hash,
)


class TestSingleLeafTree(unittest.TestCase):
    # BIP341 wallet test vector with a single leaf
    def setUp(self):
        setup("mainnet")
        self.internal = bytes.fromhex(
            "187791b6f712a8ea41c8ecdd0ee77fab3e85263b37e1ec18a3651926b3a6cf27"
        )
        self.script = Script.from_raw(
            "20d85a959b0290bf19bb89ed43c916be835475d013da4b362117393e25a48229b8ac"
        )
        self.tree = build_tree([self.script])

    def test_leaf_hash(self):
        self.assertEqual(
            tapleaf_tagged_hash(self.script).hex(),
            "5b75adecf53548f3ec6ad7d78383bf84cc57b55a3127c72b9a2481752dd88b21",
        )
        self.assertEqual(self.tree.merkle_root(), tapleaf_tagged_hash(self.script))

    def test_output(self):
        output = derive_address(self.internal, self.tree)
        self.assertEqual(
            output.output_key.hex(),
            "147c9c57132f6e7ecddba9800bb0c4449251c92a1e60371ee77557b6620f3ea3",
        )
        self.assertEqual(
            output.to_string(),
            "bc1pz37fc4cn9ah8anwm4xqqhvxygjf9rjf2resrw8h8w4tmvcs0863sa2e586",
        )
        self.assertTrue(output.script_pub_key.is_p2tr())

    def test_control_block(self):
        control = self.tree.control_block(0, self.internal)
        self.assertEqual(
            control.hex(),
            "c1187791b6f712a8ea41c8ecdd0ee77fab3e85263b37e1ec18a3651926b3a6cf27",
        )


class TestScriptTree(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.internal = bytes.fromhex(
            "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"
        )
        self.scripts = [Script([bytes([i]) * 32, "OP_CHECKSIG"]) for i in range(1, 6)]

    def test_two_leaves(self):
        tree = build_tree(self.scripts[:2])
        a, b = (tapleaf_tagged_hash(s) for s in self.scripts[:2])
        self.assertEqual(tree.merkle_root(), tapbranch_tagged_hash(a, b))
        self.assertEqual(tree.merkle_path(0), b)
        self.assertEqual(tree.merkle_path(1), a)

    def test_branch_hash_is_ordered(self):
        a, b = b"\x01" * 32, b"\x02" * 32
        self.assertEqual(tapbranch_tagged_hash(a, b), tapbranch_tagged_hash(b, a))

    def test_three_leaves_are_halved(self):
        tree = build_tree(self.scripts[:3])
        a, b, c = (tapleaf_tagged_hash(s) for s in self.scripts[:3])
        ab = tapbranch_tagged_hash(a, b)
        self.assertEqual(tree.merkle_root(), tapbranch_tagged_hash(ab, c))
        self.assertEqual(tree.merkle_path(0), b + c)
        self.assertEqual(tree.merkle_path(2), ab)
        self.assertEqual(tree.depth(0), 2)
        self.assertEqual(tree.depth(2), 1)

    def test_leaf_index_out_of_range(self):
        tree = build_tree(self.scripts[:2])
        with self.assertRaises(ParameterError):
            tree.merkle_path(2)

    def test_empty_tree(self):
        with self.assertRaises(ParameterError):
            ScriptTree([])

    def test_p2tr_control_block(self):
        tree = build_tree(self.scripts)
        for index in range(len(self.scripts)):
            control = tree.control_block(index, self.internal)
            self.assertEqual(control[0] & 0xFE, LEAF_VERSION_TAPSCRIPT)
            self.assertEqual(control[1:33], self.internal)
            self.assertEqual(len(control), control_block_size(tree.depth(index)))

    def test_control_block_parity_matches_output(self):
        tree = build_tree(self.scripts[:2])
        output = derive_address(self.internal, tree)
        control = tree.control_block(0, self.internal)
        self.assertEqual(control[0] & 1, output.parity)

    def test_p2tr_requires_internal_key(self):
        tree = build_tree(self.scripts[:2])
        with self.assertRaises(ParameterError):
            tree.control_block(0)
        with self.assertRaises(ParameterError):
            derive_address(None, tree)

    def test_p2mr(self):
        tree = build_tree(self.scripts[:3])
        output = derive_address(None, tree, variant="p2mr")
        self.assertEqual(output.output_key, tree.merkle_root())
        self.assertTrue(output.script_pub_key.is_p2mr())
        self.assertTrue(output.to_string().startswith("bcrt1z"))

    def test_p2mr_control_block_has_no_internal_key(self):
        tree = build_tree(self.scripts[:3])
        p2tr = tree.control_block(0, self.internal)
        p2mr = tree.control_block(0, variant="p2mr")
        self.assertEqual(p2mr[0], P2MR_CONTROL_BYTE)
        self.assertEqual(len(p2tr) - len(p2mr), 32)
        self.assertEqual(p2mr[1:], tree.merkle_path(0))

    def test_p2mr_address_ignores_internal_key(self):
        tree = build_tree(self.scripts[:2])
        self.assertEqual(
            derive_address(self.internal, tree, variant="p2mr").to_string(),
            derive_address(None, tree, variant="p2mr").to_string(),
        )

    def test_unknown_variant(self):
        tree = build_tree(self.scripts[:2])
        with self.assertRaises(ParameterError):
            derive_address(self.internal, tree, variant="p2wsh")

    def test_tap_leaf_script(self):
        tree = build_tree(self.scripts[:2])
        leaf = tree.tap_leaf_script(1, self.internal)
        self.assertEqual(leaf.script, self.scripts[1])
        self.assertEqual(leaf.leaf_version, LEAF_VERSION_TAPSCRIPT)
        self.assertFalse(leaf.is_p2mr())
        self.assertTrue(tree.tap_leaf_script(1, variant="p2mr").is_p2mr())


if __name__ == "__main__":
    unittest.main()
