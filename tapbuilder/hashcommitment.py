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

import math
from dataclasses import dataclass
from typing import Optional, Sequence

from loguru import logger

from tapbuilder.constants import (
    BYTES_PER_COMMITMENT,
    MAX_CHUNK_SIZE,
    MAX_STACK_ITEMS,
    MAX_STANDARD_WEIGHT,
    MAX_WITNESS_SIZE,
    SIG_CHECK_BYTES,
)
from tapbuilder.errors import ParameterError, ScriptIntegrityError
from tapbuilder.generators import verify_round_trip
from tapbuilder.hashes import hash160
from tapbuilder.keys import P2wshAddress
from tapbuilder.script import Script
from tapbuilder.utils import to_bytes


# signature count + DER signature + script length prefix + key check
WITNESS_FIXED_OVERHEAD = 1 + 73 + 3 + SIG_CHECK_BYTES
WITNESS_PER_CHUNK_OVERHEAD = MAX_CHUNK_SIZE + 1 + BYTES_PER_COMMITMENT
MAX_CHUNKS_PER_OUTPUT = (MAX_WITNESS_SIZE - WITNESS_FIXED_OVERHEAD) // WITNESS_PER_CHUNK_OVERHEAD

INPUT_BASE_WEIGHT = 164
WEIGHT_PER_INPUT = INPUT_BASE_WEIGHT + MAX_WITNESS_SIZE

# version, locktime and counts; typical reveal outputs
TX_OVERHEAD_WEIGHT = 40
OUTPUTS_OVERHEAD_WEIGHT = 200

MAX_INPUTS = (MAX_STANDARD_WEIGHT - TX_OVERHEAD_WEIGHT - OUTPUTS_OVERHEAD_WEIGHT) // WEIGHT_PER_INPUT
MAX_DATA_PER_TX = MAX_INPUTS * MAX_CHUNKS_PER_OUTPUT * MAX_CHUNK_SIZE


@dataclass(frozen=True)
class HashCommittedP2WSH:
    """One commitment output and the data it commits to

    Attributes
    ----------
    address : P2wshAddress
        the P2WSH address of the witness script
    witness_script : Script
        the hash-committed witness script
    script_pub_key : Script
        the P2WSH locking script
    data_hashes : list
        HASH160 of each chunk, in data order
    data_chunks : list
        the chunks revealed when spending
    chunk_start_index : int
        the position of the first chunk in the overall data
    """

    address: P2wshAddress
    witness_script: Script
    script_pub_key: Script
    data_hashes: list[bytes]
    data_chunks: list[bytes]
    chunk_start_index: int


class HashCommitmentGenerator:
    """Commits data to P2WSH outputs through HASH160 checks

    The witness script of an output that commits to chunks c1..cN is

    |  OP_HASH160 <h(cN)> OP_EQUALVERIFY ... OP_HASH160 <h(c1)> OP_EQUALVERIFY
    |  <pubkey> OP_CHECKSIG

    and it is spent with the witness [signature, c1, ..., cN, witness script].

    Attributes
    ----------
    public_key : bytes
        the 33-byte compressed key that signs the reveal
    network : str, optional
        network of the P2WSH addresses
    """

    def __init__(self, public_key: bytes, network: Optional[str] = None):
        public_key = to_bytes(public_key)
        if len(public_key) != 33:
            raise ParameterError("Public key must be 33 bytes (compressed)")
        self.public_key = public_key
        self.network = network

    @staticmethod
    def hash_chunk(chunk: bytes) -> bytes:
        return hash160(chunk)

    def generate_witness_script(self, data_hashes: Sequence[bytes]) -> Script:
        """Returns the witness script, hashes in reverse order since the last
        chunk is on top of the stack"""
        if not data_hashes:
            raise ParameterError("At least one data hash is required")
        if len(data_hashes) > MAX_CHUNKS_PER_OUTPUT:
            raise ParameterError(
                f"Too many chunks: {len(data_hashes)} exceeds limit of {MAX_CHUNKS_PER_OUTPUT}"
            )

        tokens: list = []
        for data_hash in reversed(data_hashes):
            if len(data_hash) != 20:
                raise ParameterError(f"HASH160 requires 20-byte hash, got {len(data_hash)}")
            tokens += ["OP_HASH160", data_hash, "OP_EQUALVERIFY"]
        tokens += [self.public_key, "OP_CHECKSIG"]
        return verify_round_trip(Script(tokens))

    def generate_p2wsh_output(self, data_hashes: Sequence[bytes]) -> dict:
        script = self.generate_witness_script(data_hashes)
        address = P2wshAddress(script=script, network=self.network)
        return {
            "script": script,
            "script_pub_key": address.to_script_pub_key(),
            "address": address,
        }

    def prepare_chunks(
        self, data: bytes, max_chunk_size: int = MAX_CHUNK_SIZE
    ) -> list[HashCommittedP2WSH]:
        """Splits data into chunks and greedily groups them into commitment
        outputs of at most MAX_CHUNKS_PER_OUTPUT chunks each"""
        if max_chunk_size > MAX_CHUNK_SIZE:
            raise ParameterError(
                f"Chunk size {max_chunk_size} exceeds P2WSH stack item limit of {MAX_CHUNK_SIZE}"
            )
        if max_chunk_size < 1:
            raise ParameterError("Chunk size must be positive")
        if not data:
            raise ParameterError("Data cannot be empty")

        chunks = [data[i : i + max_chunk_size] for i in range(0, len(data), max_chunk_size)]

        outputs = []
        for start in range(0, len(chunks), MAX_CHUNKS_PER_OUTPUT):
            group = chunks[start : start + MAX_CHUNKS_PER_OUTPUT]
            hashes = [self.hash_chunk(chunk) for chunk in group]
            p2wsh = self.generate_p2wsh_output(hashes)
            outputs.append(
                HashCommittedP2WSH(
                    address=p2wsh["address"],
                    witness_script=p2wsh["script"],
                    script_pub_key=p2wsh["script_pub_key"],
                    data_hashes=hashes,
                    data_chunks=group,
                    chunk_start_index=start,
                )
            )

        logger.debug(
            f"Prepared {len(outputs)} P2WSH outputs with {len(chunks)} chunks "
            f"({len(data)} bytes)"
        )
        return outputs

    @staticmethod
    def validate_hash_committed_script(witness_script: bytes | Script) -> bool:
        """Checks the script is one or more HASH160 triplets followed by
        <pubkey33> OP_CHECKSIG"""
        try:
            raw = witness_script.to_bytes() if isinstance(witness_script, Script) else witness_script
            tokens = Script.from_raw(raw).get_script()
        except (ScriptIntegrityError, ValueError):
            return False

        if len(tokens) < 5 or tokens[-1] != "OP_CHECKSIG":
            return False
        if not _is_data(tokens[-2], 33):
            return False

        parts = tokens[:-2]
        if len(parts) % 3 != 0:
            return False
        for i in range(0, len(parts), 3):
            if (
                parts[i] != "OP_HASH160"
                or not _is_data(parts[i + 1], 20)
                or parts[i + 2] != "OP_EQUALVERIFY"
            ):
                return False
        return True

    @staticmethod
    def extract_data_hashes(witness_script: bytes | Script) -> Optional[list[bytes]]:
        """Returns the committed hashes in data order, or None if the script
        is not hash-committed"""
        if not HashCommitmentGenerator.validate_hash_committed_script(witness_script):
            return None
        raw = witness_script.to_bytes() if isinstance(witness_script, Script) else witness_script
        parts = Script.from_raw(raw).get_script()[:-2]
        hashes = [bytes.fromhex(parts[i + 1]) for i in range(0, len(parts), 3)]
        return list(reversed(hashes))

    @staticmethod
    def extract_public_key(witness_script: bytes | Script) -> Optional[bytes]:
        if not HashCommitmentGenerator.validate_hash_committed_script(witness_script):
            return None
        raw = witness_script.to_bytes() if isinstance(witness_script, Script) else witness_script
        return bytes.fromhex(Script.from_raw(raw).get_script()[-2])

    @staticmethod
    def verify_chunk_commitments(chunks: Sequence[bytes], witness_script: bytes | Script) -> bool:
        committed = HashCommitmentGenerator.extract_data_hashes(witness_script)
        if committed is None or len(committed) != len(chunks):
            return False
        return all(hash160(chunk) == h for chunk, h in zip(chunks, committed))

    @staticmethod
    def estimate_output_count(data_size: int) -> int:
        return math.ceil(data_size / (MAX_CHUNKS_PER_OUTPUT * MAX_CHUNK_SIZE))

    @staticmethod
    def estimate_chunk_count(data_size: int) -> int:
        return math.ceil(data_size / MAX_CHUNK_SIZE)

    @staticmethod
    def validate_witness(chunks: Sequence[bytes], witness_script: Optional[bytes | Script] = None) -> None:
        """Checks a reveal witness against the P2WSH stack policy limits

        Raises
        ------
        ScriptIntegrityError
            if a chunk is too large, there are too many stack items or the
            witness is too large
        """
        # signature and chunks; the witness script is not a stack item
        items = 1 + len(chunks)
        if items > MAX_STACK_ITEMS:
            raise ScriptIntegrityError(f"Too many witness stack items: {items}")

        size = 73
        for chunk in chunks:
            if len(chunk) > MAX_CHUNK_SIZE:
                raise ScriptIntegrityError(f"Witness item of {len(chunk)} bytes exceeds {MAX_CHUNK_SIZE}")
            size += len(chunk)
        if witness_script is not None:
            raw = witness_script.to_bytes() if isinstance(witness_script, Script) else witness_script
            size += len(raw)
        else:
            size += len(chunks) * BYTES_PER_COMMITMENT + SIG_CHECK_BYTES
        if size > MAX_WITNESS_SIZE:
            raise ScriptIntegrityError(f"Witness of {size} bytes exceeds {MAX_WITNESS_SIZE}")

    @staticmethod
    def calculate_reveal_weight(outputs: Sequence[HashCommittedP2WSH]) -> int:
        """Weight estimate of a reveal spending every commitment output"""
        weight = 0
        for output in outputs:
            chunks = len(output.data_chunks)
            weight += (
                INPUT_BASE_WEIGHT
                + chunks * MAX_CHUNK_SIZE
                + chunks * BYTES_PER_COMMITMENT
                + SIG_CHECK_BYTES
                + 72
                + 20
            )
        return TX_OVERHEAD_WEIGHT + weight + OUTPUTS_OVERHEAD_WEIGHT


def _is_data(token, size: int) -> bool:
    if not isinstance(token, str) or token.startswith("OP_"):
        return False
    return len(token) == size * 2
