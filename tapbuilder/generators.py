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

import struct
from typing import Any, Iterable, Optional, Sequence

from loguru import logger

from tapbuilder.constants import (
    CONTRACT_SECRET_SIZE,
    DATA_CHUNK_SIZE,
    MAGIC,
    MAX_CALLDATA_SIZE,
    REWARD_TIMELOCK_BLOCKS,
)
from tapbuilder.errors import ParameterError, ScriptIntegrityError
from tapbuilder.features import (
    ChallengeSolution,
    Compressor,
    Feature,
    encode_feature,
    sort_features,
)
from tapbuilder.hashes import hash160, hash256
from tapbuilder.keys import P2wshAddress
from tapbuilder.script import Script
from tapbuilder.utils import to_bytes, x_only


def split_into_chunks(data: bytes, chunk_size: int = DATA_CHUNK_SIZE) -> list[bytes]:
    """Splits data into consecutive chunks of at most chunk_size bytes"""
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]


def verify_round_trip(script: Script) -> Script:
    """Decompiles the serialized script and checks it serializes to the same
    bytes

    Raises
    ------
    ScriptIntegrityError
        if the script cannot be decompiled or changes on the way back
    """
    raw = script.to_bytes()
    decompiled = Script.from_raw(raw)
    if decompiled.to_bytes() != raw:
        raise ScriptIntegrityError("Script does not survive decompilation")
    return script


class Generator:
    """Base class of the tapscript generators

    Attributes
    ----------
    sender_public_key : bytes
        the compressed public key of the sender
    x_sender_public_key : bytes
        its x-only form
    network : str, optional
        the network of any derived address
    """

    def __init__(self, sender_public_key: bytes, network: Optional[str] = None):
        sender_public_key = to_bytes(sender_public_key)
        if len(sender_public_key) != 33:
            raise ParameterError(
                f"Public key must be 33 bytes, got {len(sender_public_key)} bytes."
            )
        self.sender_public_key = sender_public_key
        self.x_sender_public_key = x_only(sender_public_key)
        self.network = network

    def build_header(self, features: Iterable[int]) -> bytes:
        flags = 0
        for feature in features:
            flags |= int(feature)
        return self.sender_public_key[:1] + flags.to_bytes(3, "big")

    def get_header(self, max_priority: int, features: Iterable[int] = ()) -> bytes:
        """Returns the 12-byte header: key prefix, 24-bit feature flags and
        the 64-bit maximum priority fee (big endian)"""
        if not 0 <= max_priority < 2**64:
            raise ParameterError("Max priority must fit in 64 bits")
        return self.build_header(features) + struct.pack(">Q", max_priority)

    def encode_features(self, features: Sequence[Feature]) -> tuple[list[int], list[bytes]]:
        """Returns the feature opcodes and their data chunks, in priority
        order"""
        opcodes = []
        chunks: list[bytes] = []
        for feature in sort_features(features):
            opcodes.append(int(feature.opcode))
            chunks.extend(split_into_chunks(encode_feature(feature)))
        return opcodes, chunks


class CalldataGenerator(Generator):
    """Generates the calldata leaf of an interaction

    Parameters
    ----------
    sender_public_key : bytes
        compressed public key of the sender
    script_signer_public_key : bytes
        public key of the per transaction script signer (x-only form is
        used)
    """

    def __init__(
        self,
        sender_public_key: bytes,
        script_signer_public_key: bytes,
        network: Optional[str] = None,
    ):
        super().__init__(sender_public_key, network)
        self.script_signer_public_key = x_only(to_bytes(script_signer_public_key))

    def compile(
        self,
        calldata: bytes,
        contract_secret: bytes,
        challenge: ChallengeSolution,
        max_priority: int,
        features: Sequence[Feature] = (),
    ) -> Script:
        """Compiles an interaction script

        |  header OP_TOALTSTACK
        |  challenge.public_key OP_TOALTSTACK challenge.solution OP_TOALTSTACK
        |  x(sender) OP_DUP OP_HASH256 hash256(x(sender)) OP_EQUALVERIFY OP_CHECKSIGVERIFY
        |  x(script signer) OP_CHECKSIGVERIFY
        |  OP_HASH160 hash160(secret) OP_EQUALVERIFY
        |  OP_DEPTH OP_1 OP_NUMEQUAL
        |  OP_IF "op" <feature chunks> OP_1NEGATE <calldata chunks>
        |  OP_ELSE OP_1 OP_ENDIF

        Raises
        ------
        ParameterError
            if the calldata, secret or challenge is missing or invalid
        ScriptIntegrityError
            if the compiled script fails to round-trip
        """
        if not calldata:
            raise ParameterError("Calldata is required")
        if len(calldata) > MAX_CALLDATA_SIZE:
            raise ParameterError(f"Calldata exceeds {MAX_CALLDATA_SIZE} bytes")
        if contract_secret is None or len(contract_secret) != CONTRACT_SECRET_SIZE:
            raise ParameterError(f"Contract secret must be {CONTRACT_SECRET_SIZE} bytes")
        if challenge is None:
            raise ParameterError("Challenge solution is required")

        data_chunks = split_into_chunks(Compressor.compress(bytes(calldata)))
        opcodes, feature_chunks = self.encode_features(features)

        tokens: list[Any] = [
            self.get_header(max_priority, opcodes),
            "OP_TOALTSTACK",
            challenge.public_key,
            "OP_TOALTSTACK",
            challenge.solution,
            "OP_TOALTSTACK",
            self.x_sender_public_key,
            "OP_DUP",
            "OP_HASH256",
            hash256(self.x_sender_public_key),
            "OP_EQUALVERIFY",
            "OP_CHECKSIGVERIFY",
            self.script_signer_public_key,
            "OP_CHECKSIGVERIFY",
            "OP_HASH160",
            hash160(contract_secret),
            "OP_EQUALVERIFY",
            "OP_DEPTH",
            "OP_1",
            "OP_NUMEQUAL",
            "OP_IF",
            MAGIC,
            *feature_chunks,
            "OP_1NEGATE",
            *data_chunks,
            "OP_ELSE",
            "OP_1",
            "OP_ENDIF",
        ]

        script = verify_round_trip(Script(tokens))
        logger.debug(
            f"Compiled calldata script of {len(script)} bytes "
            f"({len(data_chunks)} chunks, features {opcodes})"
        )
        return script


class DeploymentGenerator(Generator):
    """Generates the leaf that publishes a contract's bytecode

    Same checks as the calldata leaf, except that the salt (the random
    bytes of the deployment) is revealed against its HASH256 and the
    optional constructor calldata precedes the bytecode.

    Parameters
    ----------
    sender_public_key : bytes
        compressed public key of the deployer
    contract_salt_public_key : bytes
        public key of the contract signer (x-only form is used)
    """

    def __init__(
        self,
        sender_public_key: bytes,
        contract_salt_public_key: bytes,
        network: Optional[str] = None,
    ):
        super().__init__(sender_public_key, network)
        self.contract_salt_public_key = x_only(to_bytes(contract_salt_public_key))

    def compile(
        self,
        bytecode: bytes,
        contract_salt: bytes,
        challenge: ChallengeSolution,
        max_priority: int,
        calldata: Optional[bytes] = None,
        features: Sequence[Feature] = (),
    ) -> Script:
        """Compiles a deployment script

        |  header ... x(contract signer) OP_CHECKSIGVERIFY
        |  OP_HASH256 hash256(salt) OP_EQUALVERIFY
        |  OP_DEPTH OP_1 OP_NUMEQUAL
        |  OP_IF "op" <feature chunks> OP_0 <calldata chunks>
        |        OP_1NEGATE <bytecode chunks>
        |  OP_ELSE OP_1 OP_ENDIF

        The bytecode is embedded as given; callers compress it.
        """
        if not bytecode:
            raise ParameterError("Bytecode is required")
        if challenge is None:
            raise ParameterError("Challenge solution is required")
        if not contract_salt:
            raise ParameterError("Contract salt is required")

        bytecode_chunks = split_into_chunks(bytes(bytecode))
        calldata_chunks = split_into_chunks(bytes(calldata)) if calldata else []
        opcodes, feature_chunks = self.encode_features(features)

        tokens: list[Any] = [
            self.get_header(max_priority, opcodes),
            "OP_TOALTSTACK",
            challenge.public_key,
            "OP_TOALTSTACK",
            challenge.solution,
            "OP_TOALTSTACK",
            self.x_sender_public_key,
            "OP_DUP",
            "OP_HASH256",
            hash256(self.x_sender_public_key),
            "OP_EQUALVERIFY",
            "OP_CHECKSIGVERIFY",
            self.contract_salt_public_key,
            "OP_CHECKSIGVERIFY",
            "OP_HASH256",
            hash256(to_bytes(contract_salt)),
            "OP_EQUALVERIFY",
            "OP_DEPTH",
            "OP_1",
            "OP_NUMEQUAL",
            "OP_IF",
            MAGIC,
            *feature_chunks,
            "OP_0",
            *calldata_chunks,
            "OP_1NEGATE",
            *bytecode_chunks,
            "OP_ELSE",
            "OP_1",
            "OP_ENDIF",
        ]

        script = verify_round_trip(Script(tokens))
        logger.debug(
            f"Compiled deployment script of {len(script)} bytes "
            f"({len(bytecode_chunks)} bytecode chunks, {len(calldata_chunks)} calldata chunks)"
        )
        return script


class MultiSignGenerator:
    """Generates tapscript m-of-n CHECKSIGADD leaves"""

    @staticmethod
    def order_keys(public_keys: Iterable[bytes], internal_key: Optional[bytes] = None) -> list[bytes]:
        """Deduplicates and sorts the keys, converts them to x-only and
        appends the internal key if it is not already included"""
        unique = sorted({to_bytes(k) for k in public_keys})
        keys: list[bytes] = []
        for key in unique:
            xonly = x_only(key)
            if xonly not in keys:
                keys.append(xonly)
        if internal_key is not None:
            internal = x_only(to_bytes(internal_key))
            if internal not in keys:
                keys.append(internal)
        return keys

    @staticmethod
    def compile(
        public_keys: Iterable[bytes], minimum: int, internal_key: Optional[bytes] = None
    ) -> Script:
        """Compiles OP_0 (<key> OP_CHECKSIGADD)* <m> OP_NUMEQUAL

        Raises
        ------
        ParameterError
            if minimum is outside [2, 255] or exceeds the number of keys
        """
        if minimum < 2:
            raise ParameterError("Minimum signatures must be greater than 1")
        if minimum > 255:
            raise ParameterError("The maximum amount of signatures is 255")

        keys = MultiSignGenerator.order_keys(public_keys, internal_key)
        if len(keys) < minimum:
            raise ParameterError("The amount of public keys is lower than the minimum required")

        tokens: list[Any] = ["OP_0"]
        for key in keys:
            tokens += [key, "OP_CHECKSIGADD"]
        tokens += [minimum, "OP_NUMEQUAL"]

        return verify_round_trip(Script(tokens))


class TimeLockGenerator:
    """Generates the CSV timelocked P2WSH reward script

    <csv blocks> OP_CHECKSEQUENCEVERIFY OP_DROP <pubkey> OP_CHECKSIG
    """

    @staticmethod
    def get_script(public_key: bytes, csv_blocks: int = REWARD_TIMELOCK_BLOCKS) -> Script:
        public_key = to_bytes(public_key)
        if len(public_key) != 33:
            raise ParameterError("Timelock public key must be 33 bytes")
        if not 0 < csv_blocks <= 0xFFFF:
            raise ParameterError("CSV blocks must be between 1 and 65535")
        return Script([csv_blocks, "OP_CHECKSEQUENCEVERIFY", "OP_DROP", public_key, "OP_CHECKSIG"])

    @staticmethod
    def get_address(
        public_key: bytes, network: Optional[str] = None, csv_blocks: int = REWARD_TIMELOCK_BLOCKS
    ) -> P2wshAddress:
        return P2wshAddress(script=TimeLockGenerator.get_script(public_key, csv_blocks), network=network)


class CustomGenerator:
    """Compiles arbitrary user supplied tokens into a leaf script"""

    @staticmethod
    def compile(tokens: Sequence[Any]) -> Script:
        if not tokens:
            raise ParameterError("Custom script cannot be empty")
        return verify_round_trip(Script(list(tokens)))


class LockLeafGenerator:
    """The fallback leaf spendable by the signer alone: <xonly> OP_CHECKSIG"""

    @staticmethod
    def compile(signer_public_key: bytes) -> Script:
        return Script([x_only(to_bytes(signer_public_key)), "OP_CHECKSIG"])
