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

import base64
import gzip
import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import Any, Iterable, Mapping, Optional, Union

from tapbuilder.constants import REWARD_TIMELOCK_BLOCKS
from tapbuilder.errors import ParameterError
from tapbuilder.utils import to_bytes


class Features(IntFlag):
    """Opcodes of the optional data blocks of a calldata script; the header
    carries them OR-ed together"""

    ACCESS_LIST = 1
    EPOCH_SUBMISSION = 2
    MLDSA_LINK_PUBKEY = 4


class FeaturePriority(IntEnum):
    ACCESS_LIST = 1
    EPOCH_SUBMISSION = 2
    MLDSA_LINK_PUBKEY = 3


_KNOWN_OPCODES = frozenset(int(f) for f in (Features.ACCESS_LIST, Features.EPOCH_SUBMISSION, Features.MLDSA_LINK_PUBKEY))

# ML-DSA public key lengths for security levels 2, 3 and 5
MLDSA_PUBLIC_KEY_LENGTHS = {2: 1312, 3: 1952, 5: 2592}


class Compressor:
    """gzip wrapper; the header mtime is fixed so that output is
    deterministic"""

    LEVEL = 9

    @staticmethod
    def compress(data: bytes) -> bytes:
        return gzip.compress(data, Compressor.LEVEL, mtime=0)

    @staticmethod
    def decompress(data: bytes) -> bytes:
        return gzip.decompress(data)


@dataclass(frozen=True)
class Feature:
    """A tagged optional data block

    Attributes
    ----------
    opcode : Features
        the feature flag
    data : object
        the feature payload; its type depends on the opcode
    priority : int
        ordering key; defaults to the priority of the opcode
    """

    opcode: Features
    data: Any
    priority: Optional[int] = None

    def __post_init__(self) -> None:
        if isinstance(self.opcode, bool) or self.opcode not in _KNOWN_OPCODES:
            raise ParameterError(f"Unknown feature type: {self.opcode}")
        opcode = Features(self.opcode)
        object.__setattr__(self, "opcode", opcode)
        if self.priority is None:
            object.__setattr__(self, "priority", int(FeaturePriority[opcode.name]))

    def sort_key(self) -> tuple[int, int]:
        return (int(self.priority), int(self.opcode))  # type: ignore[arg-type]


@dataclass(frozen=True)
class ChallengeSubmission:
    """An epoch winner's submission embedded through EPOCH_SUBMISSION"""

    public_key: bytes
    solution: bytes
    graffiti: Optional[bytes] = None
    signature: bytes = b""
    epoch_number: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "public_key", to_bytes(self.public_key))
        object.__setattr__(self, "solution", to_bytes(self.solution))
        object.__setattr__(self, "signature", to_bytes(self.signature))
        if self.graffiti is not None:
            object.__setattr__(self, "graffiti", to_bytes(self.graffiti))
        if len(self.public_key) != 33:
            raise ParameterError("Submission public key must be 33 bytes")


@dataclass(frozen=True)
class ChallengeSolution:
    """The epoch challenge committed to by every interaction

    Attributes
    ----------
    epoch_number : int
        the epoch the challenge belongs to
    public_key : bytes
        the 32-byte identity of the challenge solver
    solution : bytes
        the 32-byte preimage solution
    legacy_public_key : bytes
        the 33-byte secp256k1 key of the solver; the reward timelock pays to
        it
    """

    epoch_number: int
    public_key: bytes
    solution: bytes
    legacy_public_key: bytes
    salt: bytes = b""
    graffiti: bytes = b""
    difficulty: int = 0
    submission: Optional[ChallengeSubmission] = None

    def __post_init__(self) -> None:
        for name in ("public_key", "solution", "legacy_public_key", "salt", "graffiti"):
            object.__setattr__(self, name, to_bytes(getattr(self, name)))
        if len(self.public_key) != 32:
            raise ParameterError("Challenge public key must be 32 bytes")
        if len(self.solution) != 32:
            raise ParameterError("Challenge solution must be 32 bytes")
        if len(self.legacy_public_key) != 33:
            raise ParameterError("Challenge legacy public key must be 33 bytes")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChallengeSolution":
        """Creates a challenge from its JSON (RPC) representation"""
        submission = None
        if data.get("submission"):
            raw = data["submission"]
            submission = ChallengeSubmission(
                public_key=_strip_0x(raw["publicKey"]),
                solution=_strip_0x(raw["solution"]),
                graffiti=_strip_0x(raw["graffiti"]) if raw.get("graffiti") else None,
                signature=_strip_0x(raw.get("signature", "")),
                epoch_number=int(data["epochNumber"]) + 2,
            )
        return cls(
            epoch_number=int(data["epochNumber"]),
            public_key=_strip_0x(data["publicKey"]),
            solution=_strip_0x(data["solution"]),
            legacy_public_key=_strip_0x(data["legacyPublicKey"]),
            salt=_strip_0x(data.get("salt", "")),
            graffiti=_strip_0x(data.get("graffiti", "")),
            difficulty=int(data.get("difficulty", 0)),
            submission=submission,
        )

    def get_timelock_script(self, csv_blocks: int = REWARD_TIMELOCK_BLOCKS):
        from tapbuilder.generators import TimeLockGenerator

        return TimeLockGenerator.get_script(self.legacy_public_key, csv_blocks)

    def get_timelock_address(
        self, network: Optional[str] = None, csv_blocks: int = REWARD_TIMELOCK_BLOCKS
    ):
        """Returns the P2WSH address the interaction reward is paid to"""
        from tapbuilder.generators import TimeLockGenerator

        return TimeLockGenerator.get_address(self.legacy_public_key, network, csv_blocks)


@dataclass(frozen=True)
class MLDSALinkRequest:
    """Links a quantum resistant ML-DSA key to the sender's legacy key"""

    level: int
    hashed_public_key: bytes
    legacy_signature: bytes
    verify_request: bool = False
    public_key: Optional[bytes] = None
    mldsa_signature: Optional[bytes] = None

    def __post_init__(self) -> None:
        if self.level not in MLDSA_PUBLIC_KEY_LENGTHS:
            raise ParameterError(f"Invalid ML-DSA security level: {self.level}")
        if len(self.hashed_public_key) != 32:
            raise ParameterError("Hashed ML-DSA public key must be 32 bytes")
        if len(self.legacy_signature) != 64:
            raise ParameterError("Legacy signature must be 64 bytes")
        if self.verify_request:
            if self.public_key is None or self.mldsa_signature is None:
                raise ParameterError("Verification requires the public key and signature")
            if len(self.public_key) != MLDSA_PUBLIC_KEY_LENGTHS[self.level]:
                raise ParameterError(
                    f"Invalid ML-DSA public key length: {len(self.public_key)}"
                )


def _strip_0x(value: Union[str, bytes]) -> Union[str, bytes]:
    if isinstance(value, str) and value.startswith("0x"):
        return value[2:]
    return value


def _decode_pointer(pointer: Union[bytes, str]) -> bytes:
    if isinstance(pointer, str):
        pointer = base64.b64decode(pointer)
    if len(pointer) != 32:
        raise ParameterError(f"Invalid pointer length: {len(pointer)}")
    return bytes(pointer)


def encode_access_list(data: Mapping[str, Iterable[Union[bytes, str]]]) -> bytes:
    """Encodes {contract: [pointer, ...]} and compresses the result

    |  u16 count
    |  per contract: address(32) | u32 n | pointer(32) * n
    """
    out = struct.pack(">H", len(data))
    for contract, pointers in data.items():
        address = to_bytes(_strip_0x(contract))
        if len(address) != 32:
            raise ParameterError(f"Invalid contract address length: {len(address)}")
        decoded = [_decode_pointer(p) for p in pointers]
        out += address + struct.pack(">I", len(decoded)) + b"".join(decoded)
    return Compressor.compress(out)


def encode_epoch_submission(submission: ChallengeSubmission) -> bytes:
    out = submission.public_key + submission.solution
    if submission.graffiti:
        out += struct.pack(">I", len(submission.graffiti)) + submission.graffiti
    return out


def encode_mldsa_link(request: MLDSALinkRequest) -> bytes:
    out = bytes([request.level]) + request.hashed_public_key + bytes([request.verify_request])
    if request.verify_request:
        if request.public_key is None or request.mldsa_signature is None:
            raise ParameterError("A verify request needs the MLDSA public key and signature")
        out += struct.pack(">I", len(request.public_key)) + request.public_key
        out += struct.pack(">I", len(request.mldsa_signature)) + request.mldsa_signature
    return out + request.legacy_signature


FEATURE_ENCODERS = {
    Features.ACCESS_LIST: encode_access_list,
    Features.EPOCH_SUBMISSION: encode_epoch_submission,
    Features.MLDSA_LINK_PUBKEY: encode_mldsa_link,
}


def encode_feature(feature: Feature) -> bytes:
    """Serializes the payload of a feature

    Raises
    ------
    ParameterError
        if the opcode is unknown or the payload is invalid
    """
    encoder = FEATURE_ENCODERS.get(feature.opcode)
    if encoder is None:
        raise ParameterError(f"Unknown feature type: {feature.opcode}")
    return encoder(feature.data)


def sort_features(features: Iterable[Feature]) -> list[Feature]:
    return sorted(features, key=lambda f: f.sort_key())
