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
from tapbuilder.keys import (
    P2mrAddress,
    P2pkhAddress,
    P2trAddress,
    P2wpkhAddress,
    P2wshAddress,
    PrivateKey,
    PublicKey,
    address_from_string,
    address_to_script_pub_key,
)
from tapbuilder.script import Script
from tapbuilder.setup import setup


class TestPrivateKeys(unittest.TestCase):
    def setUp(self):
        setup("mainnet")
        self.key_wifc = "KwDiBf89QgGbjEhKnhXJuH7LrciVrZi3qYjgd9M7rFU73sVHnoWn"
        self.key_wif = "5HpHagT65TZzG1PH3CSu63k8DbpvD8s5ip4nEB3kEsreAnchuDf"
        self.key_bytes = b"\x00" * 31 + b"\x01"

    def test_wif_creation(self):
        p = PrivateKey(self.key_wifc)
        self.assertEqual(p.to_bytes(), self.key_bytes)
        self.assertEqual(p.to_wif(compressed=False), self.key_wif)

    def test_exponent_creation(self):
        p = PrivateKey(secret_exponent=1)
        self.assertEqual(p.to_bytes(), self.key_bytes)
        self.assertEqual(p.to_wif(), self.key_wifc)

    def test_wrong_network(self):
        with self.assertRaises(ParameterError):
            PrivateKey(self.key_wifc, network="testnet")

    def test_bad_checksum(self):
        with self.assertRaises(ParameterError):
            PrivateKey(self.key_wifc[:-1] + "o")

    def test_invalid_bytes(self):
        with self.assertRaises(ParameterError):
            PrivateKey.from_bytes(b"\x00" * 32)
        with self.assertRaises(ParameterError):
            PrivateKey.from_bytes(b"\x01" * 31)

    def test_random_keys_differ(self):
        self.assertNotEqual(PrivateKey().to_bytes(), PrivateKey().to_bytes())


class TestPublicKeys(unittest.TestCase):
    def setUp(self):
        setup("mainnet")
        self.public_key_hexc = (
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )
        self.public_key_hex = (
            "0479be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
            "483ada7726a3c4655da4fbfc0e1108a8fd17b448a68554199c47d08ffb10d4b8"
        )
        self.address = "1EHNa6Q4Jz2uvNExL497mE43ikXhwF6kZm"
        self.addressc = "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    def test_pubkey_creation(self):
        self.assertEqual(PublicKey(self.public_key_hex).to_hex(), self.public_key_hexc)
        self.assertEqual(PublicKey(self.public_key_hexc).to_hex(), self.public_key_hexc)

    def test_pubkey_uncompressed(self):
        pub = PublicKey(self.public_key_hexc)
        self.assertEqual(pub.to_hex(compressed=False), self.public_key_hex)

    def test_addresses(self):
        pub = PublicKey(self.public_key_hex)
        self.assertEqual(pub.get_address(compressed=False).to_string(), self.address)
        self.assertEqual(pub.get_address().to_string(), self.addressc)

    def test_x_only(self):
        pub = PublicKey(self.public_key_hex)
        self.assertEqual(pub.to_x_only_hex(), self.public_key_hex[2:66])
        self.assertTrue(pub.is_y_even())

    def test_invalid_public_key(self):
        with self.assertRaises(ParameterError):
            PublicKey("02" + "00" * 32)


class TestP2pkhAddresses(unittest.TestCase):
    def setUp(self):
        setup("mainnet")
        self.hash160 = "91b24bf9f5288532960ac687abb035127b1d28a5"
        self.address = "1EHNa6Q4Jz2uvNExL497mE43ikXhwF6kZm"

    def test_creation_hash(self):
        self.assertEqual(P2pkhAddress.from_hash160(self.hash160).to_string(), self.address)

    def test_creation_address(self):
        self.assertEqual(P2pkhAddress.from_address(self.address).to_hash160(), self.hash160)

    def test_wrong_network(self):
        with self.assertRaises(ParameterError):
            P2pkhAddress.from_address(self.address, network="testnet")


class TestSegwitAddresses(unittest.TestCase):
    def setUp(self):
        setup("regtest")
        self.program = "aa" * 32

    def test_p2tr_regtest(self):
        addr = P2trAddress(witness_program=self.program)
        self.assertTrue(addr.to_string().startswith("bcrt1p"))
        self.assertEqual(P2trAddress(address=addr.to_string()).to_witness_program(), self.program)
        self.assertEqual(addr.to_script_pub_key().to_hex(), "5120" + self.program)

    def test_p2mr_regtest(self):
        addr = P2mrAddress(witness_program=self.program)
        self.assertTrue(addr.to_string().startswith("bcrt1z"))
        self.assertEqual(addr.to_script_pub_key().to_hex(), "5220" + self.program)
        parsed = address_from_string(addr.to_string())
        self.assertIsInstance(parsed, P2mrAddress)
        self.assertEqual(parsed.to_witness_program(), self.program)

    def test_segwit_version_mismatch(self):
        addr = P2trAddress(witness_program=self.program).to_string()
        with self.assertRaises(ParameterError):
            P2mrAddress(address=addr)

    def test_address_from_string_types(self):
        pub = PrivateKey(secret_exponent=7).get_public_key()
        p2wpkh = pub.get_segwit_address()
        self.assertIsInstance(address_from_string(p2wpkh.to_string()), P2wpkhAddress)
        p2wsh = P2wshAddress(script=Script([pub.to_hex(), "OP_CHECKSIG"]))
        self.assertIsInstance(address_from_string(p2wsh.to_string()), P2wshAddress)
        self.assertIsInstance(address_from_string(pub.get_address().to_string()), P2pkhAddress)

    def test_address_to_script_pub_key(self):
        pub = PrivateKey(secret_exponent=7).get_public_key()
        taproot = pub.get_taproot_address()
        self.assertTrue(address_to_script_pub_key(taproot.to_string()).is_p2tr())

    def test_wrong_network(self):
        addr = P2trAddress(witness_program=self.program, network="testnet").to_string()
        with self.assertRaises(ParameterError):
            address_from_string(addr, network="regtest")

    def test_invalid_program_length(self):
        with self.assertRaises(ParameterError):
            P2trAddress(witness_program="aa" * 20)


class TestTaprootKeys(unittest.TestCase):
    # BIP341 wallet test vector without scripts
    def setUp(self):
        setup("mainnet")
        self.internal = "d6889cb081036e0faefa3a35157ad71086b123b2b144b649798b494c300a961d"
        self.tweaked = "53a1f6e454df1aa2776a2814a721372d6258050de330b3c6d10ee8f4e0dda343"
        self.address = "bc1p2wsldez5mud2yam29q22wgfh9439spgduvct83k3pm50fcxa5dps59h4z5"

    def test_key_path_address(self):
        pub = PublicKey("02" + self.internal)
        self.assertEqual(pub.to_taproot_hex()[0], self.tweaked)
        self.assertEqual(pub.get_taproot_address().to_string(), self.address)


if __name__ == "__main__":
    unittest.main()
