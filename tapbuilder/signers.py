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

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError, SigningError
from tapbuilder.keys import PrivateKey
from tapbuilder.utils import to_bytes, x_only


SignatureResult = Union[bytes, Awaitable[bytes]]


@runtime_checkable
class Signer(Protocol):
    """The signing capability every input signer provides

    Implementations may return awaitables from the signing methods; the
    signing coordinator always awaits the result.

    Attributes
    ----------
    public_key : bytes
        the compressed (33 bytes) public key
    private_key : bytes or None
        the raw secret, if the signer exposes it
    can_sign_schnorr : bool
        whether sign_schnorr() is available
    """

    public_key: bytes
    private_key: Optional[bytes]
    can_sign_schnorr: bool

    def sign(self, digest: bytes) -> SignatureResult:
        """Returns a DER encoded ECDSA signature of the digest"""

    def sign_schnorr(self, digest: bytes) -> SignatureResult:
        """Returns a 64-byte BIP340 signature of the digest"""


class KeyPairSigner:
    """Signer over a local key pair

    Parameters
    ----------
    key : PrivateKey or bytes
        the private key or its raw 32 bytes
    ecc : EccBackend, optional
        the curve backend
    """

    can_sign_schnorr = True

    def __init__(self, key: Union[PrivateKey, bytes], ecc: Optional[EccBackend] = None):
        self.ecc = ecc or EccBackend()
        if isinstance(key, PrivateKey):
            secret = key.to_bytes()
        else:
            secret = bytes(key)
        if not self.ecc.is_secret(secret):
            raise ParameterError("A signer requires a valid 32-byte private key")
        self.private_key: bytes = secret
        self.public_key = self.ecc.public_key(secret)

    @classmethod
    def from_wif(cls, wif: str, network: Optional[str] = None, ecc: Optional[EccBackend] = None):
        return cls(PrivateKey(wif=wif, network=network), ecc=ecc)

    @classmethod
    def random(cls, ecc: Optional[EccBackend] = None) -> "KeyPairSigner":
        return cls(PrivateKey(ecc=ecc), ecc=ecc)

    @property
    def x_only_public_key(self) -> bytes:
        return self.public_key[1:]

    def sign(self, digest: bytes) -> bytes:
        return self.ecc.sign_ecdsa(self.private_key, digest)

    def sign_schnorr(self, digest: bytes) -> bytes:
        return self.ecc.sign_schnorr(self.private_key, digest)

    def __repr__(self) -> str:
        return f"KeyPairSigner({self.public_key.hex()})"


class WalletSigner:
    """Adapts an external wallet (for example a browser extension proxy) to
    the Signer interface

    The callbacks may be plain functions or coroutine functions. No private
    key is ever available, so such a signer cannot be tweaked locally.
    """

    private_key = None

    def __init__(
        self,
        public_key: Union[bytes, str],
        sign: Callable[[bytes], Any],
        sign_schnorr: Optional[Callable[[bytes], Any]] = None,
    ):
        self.public_key = to_bytes(public_key)
        if len(self.public_key) != 33:
            raise ParameterError("Wallet signers need a 33-byte compressed public key")
        self._sign = sign
        self._sign_schnorr = sign_schnorr

    @property
    def can_sign_schnorr(self) -> bool:
        return self._sign_schnorr is not None

    @property
    def x_only_public_key(self) -> bytes:
        return self.public_key[1:]

    def sign(self, digest: bytes) -> SignatureResult:
        return self._sign(digest)

    def sign_schnorr(self, digest: bytes) -> SignatureResult:
        if self._sign_schnorr is None:
            raise SigningError("Wallet signer does not support schnorr signatures")
        return self._sign_schnorr(digest)

    def __repr__(self) -> str:
        return f"WalletSigner({self.public_key.hex()})"


@dataclass(frozen=True)
class TweakSettings:
    """Network and optional merkle root (tweak hash) to tweak a signer with"""

    network: str
    tweak_hash: Optional[bytes] = None


async def resolve_signature(result: SignatureResult) -> bytes:
    """Awaits the result of a signing call if needed"""
    if inspect.isawaitable(result):
        result = await result
    return bytes(result)  # type: ignore[arg-type]


def x_only_public_key(signer: Signer) -> bytes:
    return x_only(signer.public_key)


def tweak_signer(
    signer: Signer, ecc: Optional[EccBackend] = None, tweak_hash: Optional[bytes] = None
) -> KeyPairSigner:
    """Returns a signer over the BIP341 tweaked private key

    |  Pseudocode:
    |      if public_key has odd y: secret = n - secret
    |      t = tagged_hash("TapTweak", x(public_key) || tweak_hash)
    |      tweaked = secret + t mod n

    Raises
    ------
    SigningError
        if the signer does not expose its private key
    """
    ecc = ecc or EccBackend()
    if signer.private_key is None:
        raise SigningError(f"Signer {signer.public_key.hex()} cannot be tweaked")

    key = PrivateKey(b=signer.private_key, ecc=ecc)
    return KeyPairSigner(key.get_tweaked_secret(tweak_hash), ecc=ecc)
