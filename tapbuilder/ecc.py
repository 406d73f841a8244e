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

from typing import Tuple

from coincurve import PrivateKey as _CurvePrivateKey  # type: ignore
from coincurve import PublicKey as _CurvePublicKey  # type: ignore
from coincurve import PublicKeyXOnly as _CurvePublicKeyXOnly  # type: ignore

from tapbuilder.errors import ParameterError, SigningError


class EccBackend:
    """secp256k1 operations used throughout the library, backed by
    libsecp256k1 through coincurve.

    An instance is created once by the application and passed explicitly to
    the components that need curve operations. The backend holds no mutable
    state so it can be shared by concurrent signing tasks.

    Attributes
    ----------
    ORDER : int
        the order of the secp256k1 group

    Methods
    -------
    public_key(secret, compressed=True)
        returns the serialized public key of a 32-byte secret
    is_point(pubkey)
        checks whether the bytes are a valid serialized public key
    sign_ecdsa(secret, digest)
        returns a low-S DER encoded signature
    verify_ecdsa(pubkey, digest, signature)
        verifies a DER encoded signature
    sign_schnorr(secret, digest, aux=bytes(32))
        returns a 64-byte BIP340 signature
    verify_schnorr(xonly, digest, signature)
        verifies a BIP340 signature
    negate_secret(secret)
        returns n - secret
    tweak_add_secret(secret, tweak)
        returns secret + tweak mod n
    tweak_x_only_public(xonly, tweak)
        returns the tweaked x-only key and its parity
    """

    ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

    def _private(self, secret: bytes) -> _CurvePrivateKey:
        if len(secret) != 32:
            raise ParameterError("Invalid key length: must be exactly 32 bytes.")
        try:
            return _CurvePrivateKey(secret)
        except ValueError as e:
            raise ParameterError(f"Invalid private key: {e}") from e

    def is_secret(self, secret: bytes) -> bool:
        return len(secret) == 32 and 0 < int.from_bytes(secret, "big") < self.ORDER

    def public_key(self, secret: bytes, compressed: bool = True) -> bytes:
        return self._private(secret).public_key.format(compressed=compressed)

    def is_point(self, pubkey: bytes) -> bool:
        if len(pubkey) not in (33, 65):
            return False
        try:
            _CurvePublicKey(pubkey)
        except ValueError:
            return False
        return True

    def compress(self, pubkey: bytes) -> bytes:
        """Returns the compressed (33 bytes) form of a public key"""
        if len(pubkey) == 33 and pubkey[0] in (2, 3):
            return pubkey
        try:
            return _CurvePublicKey(pubkey).format(compressed=True)
        except ValueError as e:
            raise ParameterError(f"Invalid public key: {e}") from e

    def uncompress(self, pubkey: bytes) -> bytes:
        """Returns the uncompressed (65 bytes) form of a public key"""
        try:
            return _CurvePublicKey(pubkey).format(compressed=False)
        except ValueError as e:
            raise ParameterError(f"Invalid public key: {e}") from e

    def sign_ecdsa(self, secret: bytes, digest: bytes) -> bytes:
        """Signs a 32-byte digest deterministically (RFC6979); libsecp256k1
        always produces low-S signatures"""
        if len(digest) != 32:
            raise SigningError("ECDSA digest must be 32 bytes")
        return self._private(secret).sign(digest, hasher=None)

    def verify_ecdsa(self, pubkey: bytes, digest: bytes, signature: bytes) -> bool:
        try:
            return _CurvePublicKey(pubkey).verify(signature, digest, hasher=None)
        except ValueError:
            return False

    def sign_schnorr(
        self, secret: bytes, digest: bytes, aux: bytes = bytes(32)
    ) -> bytes:
        # bitcoin core passes 32 zero bytes as auxiliary randomness, which
        # keeps signatures reproducible
        if len(digest) != 32:
            raise SigningError("Schnorr digest must be 32 bytes")
        return self._private(secret).sign_schnorr(digest, aux)

    def verify_schnorr(self, xonly: bytes, digest: bytes, signature: bytes) -> bool:
        if len(xonly) != 32 or len(signature) != 64:
            return False
        try:
            return _CurvePublicKeyXOnly(xonly).verify(signature, digest)
        except ValueError:
            return False

    def negate_secret(self, secret: bytes) -> bytes:
        value = int.from_bytes(secret, "big")
        return (self.ORDER - value).to_bytes(32, "big")

    def tweak_add_secret(self, secret: bytes, tweak: bytes) -> bytes:
        value = (int.from_bytes(secret, "big") + int.from_bytes(tweak, "big")) % self.ORDER
        if value == 0:
            raise SigningError("Tweaked private key is invalid")
        return value.to_bytes(32, "big")

    def has_even_y(self, pubkey: bytes) -> bool:
        return self.compress(pubkey)[0] == 0x02

    def lift_x(self, xonly: bytes) -> bytes:
        """Returns the compressed point with even y for an x coordinate"""
        if len(xonly) != 32:
            raise ParameterError("x-only public key must be 32 bytes")
        candidate = b"\x02" + xonly
        if not self.is_point(candidate):
            raise ParameterError("x-only public key is not on the curve")
        return candidate

    def tweak_x_only_public(self, xonly: bytes, tweak: bytes) -> Tuple[bytes, int]:
        """Computes Q = lift_x(P) + t*G and returns (x(Q), parity of Q)"""
        if int.from_bytes(tweak, "big") >= self.ORDER:
            raise ParameterError("Tweak exceeds the curve order")
        point = _CurvePublicKey(self.lift_x(xonly))
        try:
            tweaked = point.add(tweak)
        except ValueError as e:
            raise ParameterError(f"Invalid tweak: {e}") from e
        serialized = tweaked.format(compressed=True)
        return serialized[1:], serialized[0] & 1
