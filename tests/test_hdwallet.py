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
from tapbuilder.hdwallet import HDWallet
from tapbuilder.keys import PublicKey
from tapbuilder.setup import setup

MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)


class TestHDWallet(unittest.TestCase):
    def setUp(self):
        setup("mainnet")

    def test_bip86_signer(self):
        hdw = HDWallet.from_mnemonic(MNEMONIC, network="mainnet")
        signer = hdw.taproot_signer(account=0, index=0)
        self.assertEqual(
            signer.x_only_public_key.hex(),
            "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115",
        )
        address = PublicKey(signer.public_key).get_taproot_address(network="mainnet")
        self.assertEqual(
            address.to_string(),
            "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr",
        )

    def test_path_in_constructor(self):
        hdw = HDWallet(mnemonic=MNEMONIC, path="m/86'/0'/0'/0/0", network="mainnet")
        self.assertEqual(
            hdw.get_private_key().get_public_key().to_hex()[2:],
            "cc8a4bc64d897bddc5fbc2f670f7a8ba0b386779106cf1223c6fc5d7cd6fc115",
        )

    def test_requires_seed(self):
        with self.assertRaises(ParameterError):
            HDWallet(network="mainnet")


if __name__ == "__main__":
    unittest.main()
