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

from __future__ import annotations

import re
import secrets
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import bech32  # type: ignore
from base58check import b58encode, b58decode  # type: ignore

from tapbuilder.constants import (
    NETWORK_WIF_PREFIXES,
    NETWORK_P2PKH_PREFIXES,
    NETWORK_P2SH_PREFIXES,
    NETWORK_SEGWIT_PREFIXES,
    P2PKH_ADDRESS,
    P2SH_ADDRESS,
    P2WPKH_ADDRESS_V0,
    P2WSH_ADDRESS_V0,
    P2TR_ADDRESS_V1,
    P2MR_ADDRESS_V2,
)
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.hashes import hash160, hash256, sha256, tap_tweak_hash
from tapbuilder.script import Script
from tapbuilder.setup import resolve_network
from tapbuilder.utils import b_to_h, h_to_b, to_bytes


class PrivateKey:
    """Represents a secp256k1 private key.

    Attributes
    ----------
    key : bytes
        the raw key of 32 bytes
    ecc : EccBackend
        the curve backend used for key operations

    Methods
    -------
    from_wif(wif)
        creates an object from a WIF of WIFC format (string)
    from_bytes()
        creates an object from raw 32 bytes
    to_wif(compressed=True)
        returns as WIFC (compressed) or WIF format (string)
    to_bytes()
        returns the key's raw bytes
    get_tweaked_secret(merkle_root=None)
        returns the BIP341 tweaked secret used for key path spending
    get_public_key()
        returns the corresponding PublicKey object
    """

    def __init__(
        self,
        wif: Optional[str] = None,
        secret_exponent: Optional[int] = None,
        b: Optional[bytes] = None,
        network: Optional[str] = None,
        ecc: Optional[EccBackend] = None,
    ) -> None:
        """With no parameters a random key is created

        Parameters
        ----------
        wif : str, optional
            the key in WIF of WIFC format (default None)
        secret_exponent : int, optional
            used to create a specific key deterministically (default None)
        b : bytes, optional
            used to create a key from raw bytes
        network : str, optional
            the network the WIF is expected to belong to
        ecc : EccBackend, optional
            the curve backend to use
        """
        self.ecc = ecc or EccBackend()

        if wif:
            self._from_wif(wif, network)
        elif b:
            self._from_bytes(b)
        elif secret_exponent:
            if not 0 < secret_exponent < EccBackend.ORDER:
                raise ParameterError("Secret exponent out of range")
            self.key = secret_exponent.to_bytes(32, "big")
        else:
            self.key = secrets.token_bytes(32)
            while not self.ecc.is_secret(self.key):
                self.key = secrets.token_bytes(32)

    def to_bytes(self) -> bytes:
        """Returns key's bytes"""

        return self.key

    @classmethod
    def from_wif(cls, wif: str, network: Optional[str] = None) -> "PrivateKey":
        """Creates key from WIFC or WIF format key"""

        return cls(wif=wif, network=network)

    @classmethod
    def from_bytes(cls, b: bytes, ecc: Optional[EccBackend] = None) -> "PrivateKey":
        """Creates a key directly from 32 raw bytes"""

        return cls(b=b, ecc=ecc)

    def _from_bytes(self, b: bytes) -> None:
        if not self.ecc.is_secret(b):
            raise ParameterError("Invalid key: must be exactly 32 bytes and within range.")
        self.key = bytes(b)

    def _from_wif(self, wif: str, network: Optional[str]) -> None:
        """Creates key from WIFC or WIF format key

        Check to_wif for the detailed process. From WIF is the reverse.

        Raises
        ------
        ParameterError
            if the checksum is wrong or if the WIF/WIFC is not from the
            configured network.
        """

        data_bytes = b58decode(wif.encode("utf-8"))
        key_bytes = data_bytes[:-4]
        checksum = data_bytes[-4:]

        if hash256(key_bytes)[0:4] != checksum:
            raise ParameterError("Checksum is wrong. Possible mistype?")

        network_prefix = key_bytes[:1]
        if NETWORK_WIF_PREFIXES[resolve_network(network)] != network_prefix:
            raise ParameterError("Using the wrong network!")

        # 33 bytes (with the 0x01 suffix) means compressed
        key_bytes = key_bytes[1:]
        self._from_bytes(key_bytes[:32])

    def to_wif(self, compressed: bool = True, network: Optional[str] = None) -> str:
        """Returns key in WIFC or WIF string

        |  Pseudocode:
        |      network_prefix = (1 byte version number)
        |      data = network_prefix + (32 bytes number/key) [ + 0x01 if compressed ]
        |      data_hash = SHA-256( SHA-256( data ) )
        |      checksum = (first 4 bytes of data_hash)
        |      wif = Base58CheckEncode( data + checksum )
        """

        data = NETWORK_WIF_PREFIXES[resolve_network(network)] + self.key
        if compressed:
            data += b"\x01"
        checksum = hash256(data)[0:4]
        return b58encode(data + checksum).decode("utf-8")

    def get_tweaked_secret(self, merkle_root: Optional[bytes] = None) -> bytes:
        """Returns the BIP341 tweaked secret; the key is negated first if
        its public key has an odd y coordinate"""
        public = self.ecc.public_key(self.key)
        secret = self.key
        if public[0] == 0x03:
            secret = self.ecc.negate_secret(secret)
        return self.ecc.tweak_add_secret(secret, tap_tweak_hash(public[1:], merkle_root))

    def get_public_key(self) -> "PublicKey":
        """Returns the corresponding PublicKey"""

        return PublicKey(self.ecc.public_key(self.key).hex(), ecc=self.ecc)


class PublicKey:
    """Represents a secp256k1 public key.

    Attributes
    ----------
    key : bytes
        the compressed public key (33 bytes)

    Methods
    -------
    from_hex(hex_str)
        creates an object from a hex string in SEC format (classmethod)
    to_hex(compressed=True)
        returns the key as hex string (in SEC format - compressed by default)
    to_bytes()
        returns the key's compressed bytes
    to_x_only_hex()
        returns the x coordinate only as hex string (BIP340)
    to_taproot_hex(merkle_root=None)
        returns the tweaked x-only key and whether its y is odd
    to_hash160()
        returns the hash160 hex string of the public key
    get_address(compressed=True))
        returns the corresponding P2pkhAddress object
    get_segwit_address()
        returns the corresponding P2wpkhAddress object
    get_taproot_address(merkle_root=None)
        returns the corresponding P2trAddress object
    """

    def __init__(self, hex_str: str | bytes, ecc: Optional[EccBackend] = None) -> None:
        """
        Parameters
        ----------
        hex_str : str or bytes
            the public key in SEC format (33 or 65 bytes)

        Raises
        ------
        ParameterError
            if the data is not a valid public key
        """
        self.ecc = ecc or EccBackend()
        raw = to_bytes(hex_str)
        if not self.ecc.is_point(raw):
            raise ParameterError("Invalid public key")
        self.key = self.ecc.compress(raw)

    @classmethod
    def from_hex(cls, hex_str: str) -> "PublicKey":
        """Creates a public key from a hex string (SEC format)"""

        return cls(hex_str)

    def to_bytes(self) -> bytes:
        return self.key

    def to_hex(self, compressed: bool = True) -> str:
        """Returns public key as a hex string (SEC format - compressed by
        default)"""

        if compressed:
            return b_to_h(self.key)
        return b_to_h(self.ecc.uncompress(self.key))

    def to_x_only_hex(self) -> str:
        """Returns the x coordinate of the public key as hex string"""

        return b_to_h(self.key[1:])

    def is_y_even(self) -> bool:
        return self.key[0] == 0x02

    def to_taproot_hex(self, merkle_root: Optional[bytes] = None) -> Tuple[str, bool]:
        """Returns the tweaked x-only public key and whether y is odd"""

        tweaked, parity = self.ecc.tweak_x_only_public(
            self.key[1:], tap_tweak_hash(self.key[1:], merkle_root)
        )
        return b_to_h(tweaked), bool(parity)

    def to_hash160(self, compressed: bool = True) -> str:
        """Returns the RIPEMD( SHA256( ) ) of the public key in hex"""

        return b_to_h(hash160(h_to_b(self.to_hex(compressed))))

    def get_address(self, compressed: bool = True, network: Optional[str] = None) -> "P2pkhAddress":
        """Returns the corresponding P2PKH Address (default compressed)"""

        return P2pkhAddress(hash160=self.to_hash160(compressed), network=network)

    def get_segwit_address(self, network: Optional[str] = None) -> "P2wpkhAddress":
        """Returns the corresponding P2WPKH address

        Only compressed is allowed. It is otherwise identical to normal P2PKH
        address.
        """

        return P2wpkhAddress(witness_program=self.to_hash160(True), network=network)

    def get_taproot_address(
        self, merkle_root: Optional[bytes] = None, network: Optional[str] = None
    ) -> "P2trAddress":
        """Returns the corresponding P2TR address, committing to the merkle
        root of a script tree if given"""

        pubkey, is_odd = self.to_taproot_hex(merkle_root)
        return P2trAddress(witness_program=pubkey, is_odd=is_odd, network=network)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, PublicKey) and self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)


class Address(ABC):
    """Represents a base58 encoded Bitcoin address (P2PKH or P2SH)

    Attributes
    ----------
    hash160 : str
        the hash160 string representation of the address; hash160 represents
        two consequtive hashes of the public key or the redeam script, first
        a SHA-256 and then an RIPEMD-160
    network : str
        the network the address belongs to

    Methods
    -------
    from_address(address)
        instantiates an object from address string encoding
    from_hash160(hash160_str)
        instantiates an object from a hash160 hex string
    from_script(redeem_script)
        instantiates an object from a redeem_script
    to_string()
        returns the address's string encoding
    to_hash160()
        returns the address's hash160 hex string representation

    Raises
    ------
    ParameterError
        If no parameters passed or an invalid address or hash160 is provided.
    """

    @abstractmethod
    def __init__(
        self,
        address: Optional[str] = None,
        hash160: Optional[str] = None,
        script: Optional[Script] = None,
        network: Optional[str] = None,
    ) -> None:
        self.network = resolve_network(network)

        if hash160:
            if self._is_hash160_valid(hash160):
                self.hash160 = hash160
            else:
                raise ParameterError("Invalid value for parameter hash160.")
        elif address:
            if self._is_address_valid(address):
                self.hash160 = self._address_to_hash160(address)
            else:
                raise ParameterError("Invalid value for parameter address.")
        elif script:
            if isinstance(script, Script):
                self.hash160 = b_to_h(hash160_of_script(script))
            else:
                raise ParameterError("A Script class is required.")
        else:
            raise ParameterError("A valid address or hash160 is required.")

    @classmethod
    def from_address(cls, address: str, network: Optional[str] = None) -> "Address":
        """Creates an address object from an address string"""

        return cls(address=address, network=network)

    @classmethod
    def from_hash160(cls, hash160: str, network: Optional[str] = None) -> "Address":
        """Creates an address object from a hash160 string"""

        return cls(hash160=hash160, network=network)

    @classmethod
    def from_script(cls, script: Script, network: Optional[str] = None) -> "Address":
        """Creates an address object from a Script object"""

        return cls(script=script, network=network)

    def _address_to_hash160(self, address: str) -> str:
        data_checksum = b58decode(address.encode("utf-8"))
        return b_to_h(data_checksum[1:-4])

    def _is_hash160_valid(self, hash160: str) -> bool:
        """Checks is a hash160 hex string is valid"""

        # should be 20 bytes, 40 characters in hexadecimal string
        return bool(re.fullmatch(r"[0-9a-fA-F]{40}", hash160))

    @abstractmethod
    def _network_prefix(self) -> bytes:
        """Overriden from subclasses"""

    def _is_address_valid(self, address: str) -> bool:
        """Checks is an address string is valid"""

        if re.search(r"[^123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz]", address):
            return False

        if len(address) < 26 or len(address) > 35:
            return False

        try:
            data_checksum = b58decode(address.encode("utf-8"))
        except ValueError:
            return False
        data = data_checksum[:-4]
        checksum = data_checksum[-4:]

        if len(data) != 21 or data[:1] != self._network_prefix():
            return False

        return hash256(data)[0:4] == checksum

    def to_hash160(self) -> str:
        """Returns as hash160 hex string"""

        return self.hash160

    @abstractmethod
    def get_type(self) -> str:
        """Returns the type of address"""

    def to_string(self) -> str:
        """Returns as address string

        |  Pseudocode:
        |      network_prefix = (1 byte version number)
        |      data = network_prefix + hash160_bytes
        |      data_hash = SHA-256( SHA-256( hash160_bytes ) )
        |      checksum = (first 4 bytes of data_hash)
        |      address_bytes = Base58CheckEncode( data + checksum )
        """
        data = self._network_prefix() + h_to_b(self.hash160)
        checksum = hash256(data)[0:4]
        return b58encode(data + checksum).decode("utf-8")

    @abstractmethod
    def to_script_pub_key(self) -> Script:
        """Overriden from subclasses"""

    def __str__(self) -> str:
        return self.to_string()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Address) and self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())


class P2pkhAddress(Address):
    """Encapsulates a P2PKH address.

    Check Address class for details
    """

    def __init__(
        self,
        address: Optional[str] = None,
        hash160: Optional[str] = None,
        network: Optional[str] = None,
    ) -> None:
        super().__init__(address=address, hash160=hash160, network=network)

    def _network_prefix(self) -> bytes:
        return NETWORK_P2PKH_PREFIXES[self.network]

    def to_script_pub_key(self) -> Script:
        """Returns the scriptPubKey (P2PKH) that corresponds to this address"""
        return Script(["OP_DUP", "OP_HASH160", self.hash160, "OP_EQUALVERIFY", "OP_CHECKSIG"])

    def get_type(self) -> str:
        return P2PKH_ADDRESS


class P2shAddress(Address):
    """Encapsulates a P2SH address.

    Check Address class for details
    """

    def __init__(
        self,
        address: Optional[str] = None,
        hash160: Optional[str] = None,
        script: Optional[Script] = None,
        network: Optional[str] = None,
    ) -> None:
        super().__init__(address=address, hash160=hash160, script=script, network=network)

    def _network_prefix(self) -> bytes:
        return NETWORK_P2SH_PREFIXES[self.network]

    def to_script_pub_key(self) -> Script:
        """Returns the scriptPubKey (P2SH) that corresponds to this address"""
        return Script(["OP_HASH160", self.hash160, "OP_EQUAL"])

    def get_type(self) -> str:
        return P2SH_ADDRESS


class SegwitAddress(ABC):
    """Represents a Bitcoin segwit address

    Segwit v0 addresses are encoded with bech32 and later versions with
    bech32m (BIP350) through the bech32 library.

    Attributes
    ----------
    witness_program : str
        for segwit v0 this is the hash string representation of either the
        public key (P2WPKH) or the script (P2WSH); for segwit v1 (taproot) this
        is the tweaked public key and for segwit v2 (P2MR) the script tree
        merkle root
    network : str
        the network the address belongs to

    Methods
    -------
    from_address(address)
        instantiates an object from address string encoding
    from_witness_program(hash_str)
        instantiates an object from a witness program hex string
    to_string()
        returns the address's string encoding
    to_witness_program()
        returns the address's witness program hex string

    Raises
    ------
    ParameterError
        If no parameters passed or an invalid address is provided.
    """

    SEGWIT_VERSIONS = {
        P2WPKH_ADDRESS_V0: 0,
        P2WSH_ADDRESS_V0: 0,
        P2TR_ADDRESS_V1: 1,
        P2MR_ADDRESS_V2: 2,
    }

    @abstractmethod
    def __init__(
        self,
        address: Optional[str] = None,
        witness_program: Optional[str] = None,
        script: Optional[Script] = None,
        version: str = P2WPKH_ADDRESS_V0,
        network: Optional[str] = None,
    ) -> None:
        self.network = resolve_network(network)
        self.version = version
        if version not in self.SEGWIT_VERSIONS:
            raise ParameterError("A valid segwit version is required.")
        self.segwit_num_version = self.SEGWIT_VERSIONS[version]

        if witness_program:
            self.witness_program = witness_program
        elif address:
            self.witness_program = self._address_to_hash(address)
        elif script:
            if isinstance(script, Script):
                self.witness_program = b_to_h(sha256(script.to_bytes()))
            else:
                raise ParameterError("A Script class is required.")
        else:
            raise ParameterError("A valid address or witness program is required.")

        if len(h_to_b(self.witness_program)) != self._program_length():
            raise ParameterError("Invalid witness program length.")

    @classmethod
    def from_address(cls, address: str, network: Optional[str] = None) -> "SegwitAddress":
        """Creates an address object from an address string"""

        return cls(address=address, network=network)

    @classmethod
    def from_witness_program(
        cls, witness_program: str, network: Optional[str] = None
    ) -> "SegwitAddress":
        """Creates an address object from a hash string"""

        return cls(witness_program=witness_program, network=network)

    def _program_length(self) -> int:
        return 32

    def _address_to_hash(self, address: str) -> str:
        """Bech32 decodes the address removing network prefix, checksum and
        witness version."""

        witness_version, witness_int_array = bech32.decode(
            NETWORK_SEGWIT_PREFIXES[self.network], address.lower()
        )
        if witness_version is None:
            raise ParameterError("Invalid value for parameter address.")
        if witness_version != self.segwit_num_version:
            raise ParameterError("Invalid segwit version.")

        return b_to_h(bytes(witness_int_array))

    def to_witness_program(self) -> str:
        """Returns witness program as hex string"""

        return self.witness_program

    def to_string(self) -> str:
        """Returns as address string"""

        address = bech32.encode(
            NETWORK_SEGWIT_PREFIXES[self.network],
            self.segwit_num_version,
            list(h_to_b(self.witness_program)),
        )
        if address is None:
            raise ParameterError("Witness program cannot be encoded.")
        return address

    def to_script_pub_key(self) -> Script:
        """Returns OP_n <witness program>"""
        return Script([self.segwit_num_version, self.witness_program])

    def get_type(self) -> str:
        """Returns the type of address"""
        return self.version

    def __str__(self) -> str:
        return self.to_string()

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SegwitAddress) and self.to_string() == other.to_string()

    def __hash__(self) -> int:
        return hash(self.to_string())


class P2wpkhAddress(SegwitAddress):
    """Encapsulates a P2WPKH address."""

    def __init__(
        self,
        address: Optional[str] = None,
        witness_program: Optional[str] = None,
        network: Optional[str] = None,
    ) -> None:
        super().__init__(
            address=address,
            witness_program=witness_program,
            version=P2WPKH_ADDRESS_V0,
            network=network,
        )

    def _program_length(self) -> int:
        return 20


class P2wshAddress(SegwitAddress):
    """Encapsulates a P2WSH address."""

    def __init__(
        self,
        address: Optional[str] = None,
        witness_program: Optional[str] = None,
        script: Optional[Script] = None,
        network: Optional[str] = None,
    ) -> None:
        super().__init__(
            address=address,
            witness_program=witness_program,
            script=script,
            version=P2WSH_ADDRESS_V0,
            network=network,
        )


class P2trAddress(SegwitAddress):
    """Encapsulates a P2TR (Taproot) address.

    The witness program is the tweaked x-only output key.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        witness_program: Optional[str] = None,
        is_odd: bool = False,
        network: Optional[str] = None,
    ) -> None:
        self.odd = is_odd
        super().__init__(
            address=address,
            witness_program=witness_program,
            version=P2TR_ADDRESS_V1,
            network=network,
        )

    def is_odd(self) -> bool:
        """Returns True if the y coordinate of the output key is odd"""

        return self.odd


class P2mrAddress(SegwitAddress):
    """Encapsulates a P2MR (pay to merkle root) address.

    A segwit v2 output whose witness program is the merkle root of the
    script tree. There is no internal key and so no key path spend.
    """

    def __init__(
        self,
        address: Optional[str] = None,
        witness_program: Optional[str] = None,
        network: Optional[str] = None,
    ) -> None:
        super().__init__(
            address=address,
            witness_program=witness_program,
            version=P2MR_ADDRESS_V2,
            network=network,
        )


def hash160_of_script(script: Script) -> bytes:
    """RIPEMD160( SHA256( script ) ) - required for P2SH addresses"""
    return hash160(script.to_bytes())


def address_from_string(address: str, network: Optional[str] = None):
    """Parses an address string of any supported type

    Raises
    ------
    ParameterError
        if the address is malformed or belongs to another network
    """
    network = resolve_network(network)
    if not address:
        raise ParameterError("Address is required.")

    hrp = NETWORK_SEGWIT_PREFIXES[network]
    if address.lower().startswith(hrp + "1"):
        version, program = bech32.decode(hrp, address.lower())
        if version is None:
            raise ParameterError(f"Invalid segwit address: {address}")
        program_hex = b_to_h(bytes(program))
        if version == 0 and len(program) == 20:
            return P2wpkhAddress(witness_program=program_hex, network=network)
        if version == 0 and len(program) == 32:
            return P2wshAddress(witness_program=program_hex, network=network)
        if version == 1 and len(program) == 32:
            return P2trAddress(witness_program=program_hex, network=network)
        if version == 2 and len(program) == 32:
            return P2mrAddress(witness_program=program_hex, network=network)
        raise ParameterError(f"Unsupported witness version {version}: {address}")

    for cls in (P2pkhAddress, P2shAddress):
        try:
            return cls(address=address, network=network)
        except ParameterError:
            continue
    raise ParameterError(f"Invalid address for {network}: {address}")


def address_to_script_pub_key(address: str, network: Optional[str] = None) -> Script:
    """Returns the locking script of an address string"""
    return address_from_string(address, network).to_script_pub_key()
