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

from typing import Optional

from hdwallet import HDWallet as ext_HDWallet  # type: ignore
from hdwallet.cryptocurrencies import Bitcoin  # type: ignore
from hdwallet.derivations import CustomDerivation  # type: ignore
from hdwallet.hds import BIP32HD  # type: ignore
from hdwallet.mnemonics import BIP39Mnemonic  # type: ignore

from tapbuilder.constants import NETWORK_COIN_TYPES
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.keys import PrivateKey
from tapbuilder.setup import resolve_network
from tapbuilder.signers import KeyPairSigner


class HDWallet:
    """Wraps the python hdwallet library to derive signers from BIP39
    mnemonics or BIP32 extended keys

    Attributes
    ----------
    hdw : object
        a hdwallet object
    network : str
        the network used for the BIP86 coin type
    """

    def __init__(
        self,
        xprivate_key: Optional[str] = None,
        path: Optional[str] = None,
        mnemonic: Optional[str] = None,
        passphrase: Optional[str] = None,
        network: Optional[str] = None,
    ):
        """Instantiate a hdwallet object using the corresponding library with BTC"""

        self.network = resolve_network(network)
        if self.network == "mainnet":
            hd_network = Bitcoin.NETWORKS.MAINNET
        else:
            hd_network = Bitcoin.NETWORKS.TESTNET

        self.hdw = ext_HDWallet(cryptocurrency=Bitcoin, hd=BIP32HD, network=hd_network, passphrase=passphrase)

        if mnemonic:
            self.hdw.from_mnemonic(mnemonic=BIP39Mnemonic(mnemonic=mnemonic))
        elif xprivate_key:
            self.hdw.from_xprivate_key(xprivate_key=xprivate_key)
        else:
            raise ParameterError("A mnemonic or an extended private key is required")

        if path:
            self.from_path(path)

    @classmethod
    def from_mnemonic(
        cls, mnemonic: str, passphrase: Optional[str] = None, network: Optional[str] = None
    ):
        """Class method to instantiate from a mnemonic code for the HD Wallet"""
        return cls(mnemonic=mnemonic, passphrase=passphrase, network=network)

    @classmethod
    def from_xprivate_key(
        cls, xprivate_key: str, path: Optional[str] = None, network: Optional[str] = None
    ):
        """Class method to instantiate from an extended private key and
        optionally the path for the HD Wallet"""
        return cls(xprivate_key=xprivate_key, path=path, network=network)

    def from_path(self, path: str):
        """Set/update the path"""

        self.hdw.clean_derivation()
        self.hdw.from_derivation(derivation=CustomDerivation(path=path))

    def get_private_key(self) -> PrivateKey:
        """Return a PrivateKey object for the current derivation path"""

        return PrivateKey(b=bytes.fromhex(self.hdw.private_key()))

    def get_signer(self, ecc: Optional[EccBackend] = None) -> KeyPairSigner:
        """Return a signer for the current derivation path"""

        return KeyPairSigner(self.get_private_key(), ecc=ecc)

    def taproot_signer(
        self, account: int = 0, index: int = 0, ecc: Optional[EccBackend] = None
    ) -> KeyPairSigner:
        """Derives a BIP86 signer at m/86'/coin'/account'/0/index"""

        coin = NETWORK_COIN_TYPES[self.network]
        self.from_path(f"m/86'/{coin}'/{account}'/0/{index}")
        return self.get_signer(ecc=ecc)
