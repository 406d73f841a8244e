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

from tapbuilder.errors import ParameterError
from tapbuilder.features import ChallengeSolution
from tapbuilder.generators import LockLeafGenerator
from tapbuilder.hashes import hash256
from tapbuilder.keys import PrivateKey
from tapbuilder.script import Script
from tapbuilder.setup import setup
from tapbuilder.taproot import build_tree, derive_address
from tapbuilder.verification import (
    ContractVerificationParams,
    compile_deployment_script,
    generate_contract_virtual_address,
    get_contract_address,
    get_contract_seed,
    verify_script_address,
)


class TestVerifyScriptAddress(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.internal = bytes.fromhex(
            "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115"
        )
        self.scripts = [Script([bytes([i]) * 32, "OP_CHECKSIG"]) for i in range(1, 4)]

    def test_matching_scripts(self):
        address = derive_address(self.internal, build_tree(self.scripts)).to_string()
        self.assertTrue(verify_script_address(address, self.scripts, self.internal))

    def test_other_scripts(self):
        address = derive_address(self.internal, build_tree(self.scripts)).to_string()
        self.assertFalse(verify_script_address(address, self.scripts[:2], self.internal))
        self.assertFalse(
            verify_script_address(address, list(reversed(self.scripts)), self.internal)
        )

    def test_other_internal_key(self):
        address = derive_address(self.internal, build_tree(self.scripts)).to_string()
        other = bytes.fromhex("50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0")
        self.assertFalse(verify_script_address(address, self.scripts, other))

    def test_p2mr(self):
        address = derive_address(None, build_tree(self.scripts), variant="p2mr").to_string()
        self.assertTrue(verify_script_address(address, self.scripts, variant="p2mr"))
        self.assertFalse(verify_script_address(address, self.scripts, self.internal))

    def test_no_scripts(self):
        with self.assertRaises(ParameterError):
            verify_script_address("bcrt1p", [])


class TestContractVerification(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.deployer = PrivateKey(secret_exponent=4000).get_public_key().to_bytes()
        self.salt = b"\x0b" * 32
        self.bytecode = b"\x60\x80" * 100
        self.seed = get_contract_seed(self.deployer, self.bytecode, hash256(self.salt))
        self.params = ContractVerificationParams(
            deployer_public_key=self.deployer,
            contract_salt_public_key=PrivateKey(b=self.seed).get_public_key().to_bytes(),
            original_salt=self.salt,
            bytecode=self.bytecode,
            challenge=ChallengeSolution(
                epoch_number=3,
                public_key=b"\x11" * 32,
                solution=b"\x22" * 32,
                legacy_public_key=PrivateKey(secret_exponent=99).get_public_key().to_bytes(),
            ),
            network="regtest",
        )

    def test_contract_seed(self):
        expected = hash256(self.deployer[1:] + hash256(self.salt) + hash256(self.bytecode))
        self.assertEqual(self.seed, expected)

    def test_virtual_address(self):
        address = generate_contract_virtual_address(
            self.deployer, self.bytecode, hash256(self.salt), "regtest"
        )
        self.assertTrue(address.startswith("bcrt1p"))
        self.assertNotEqual(
            address,
            generate_contract_virtual_address(
                self.deployer, self.bytecode, hash256(b"\x0c" * 32), "regtest"
            ),
        )

    def test_contract_address_commits_to_both_leaves(self):
        leaves = [compile_deployment_script(self.params), LockLeafGenerator.compile(self.deployer)]
        address = get_contract_address(self.params)
        self.assertTrue(verify_script_address(address, leaves, self.deployer[1:]))
        self.assertFalse(verify_script_address(address, leaves[:1], self.deployer[1:]))


if __name__ == "__main__":
    unittest.main()
