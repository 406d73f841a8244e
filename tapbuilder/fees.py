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

from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
from typing import Union

from tapbuilder.errors import ParameterError
from tapbuilder.hashcommitment import HashCommitmentGenerator, WEIGHT_PER_INPUT


FeeRate = Union[int, float, Decimal, str]

# setup transaction size model: two P2TR inputs, P2WSH commitments and change
SETUP_OVERHEAD_VBYTES = 11
P2TR_INPUT_VBYTES = 58
P2WSH_OUTPUT_VBYTES = 43


def to_decimal_rate(fee_rate: FeeRate) -> Decimal:
    """Converts a fee rate (sat/vB) to Decimal; floats go through their
    string representation"""
    if isinstance(fee_rate, bool):
        raise ParameterError("Fee rate must be a number")
    if isinstance(fee_rate, float):
        fee_rate = str(fee_rate)
    try:
        rate = Decimal(fee_rate)
    except ArithmeticError:
        raise ParameterError(f"Invalid fee rate: {fee_rate!r}") from None
    if not rate.is_finite() or rate < 0:
        raise ParameterError(f"Invalid fee rate: {fee_rate!r}")
    return rate


def fee_for_vsize(fee_rate: FeeRate, vsize: int) -> int:
    """Returns ceil(fee_rate * vsize) in satoshis"""
    if vsize < 0:
        raise ParameterError("Virtual size cannot be negative")
    fee = to_decimal_rate(fee_rate) * vsize
    return int(fee.to_integral_value(rounding=ROUND_CEILING))


def estimate_taproot_fee(
    fee_rate: FeeRate,
    num_inputs: int,
    num_outputs: int,
    num_witness_elements: int,
    avg_element_size: int,
    num_empty_witnesses: int,
    control_size: int = 32,
    script_size: int = 139,
) -> int:
    """Estimates the fee of a taproot script path transaction

    |  base = 10 + 41 * inputs + 68 * outputs
    |  witness = inputs + elements * avg_element_size + control_size * inputs
    |            + script_size * inputs + empty_witnesses
    |  weight = 3 * base + (base + witness)
    |  vsize = weight // 4
    |  fee = ceil(fee_rate * vsize)
    """
    for value in (num_inputs, num_outputs, num_witness_elements, avg_element_size, num_empty_witnesses):
        if value < 0:
            raise ParameterError("Fee estimation parameters cannot be negative")

    base_size = 10 + 41 * num_inputs + 68 * num_outputs
    witness_size = (
        num_inputs
        + num_witness_elements * avg_element_size
        + control_size * num_inputs
        + script_size * num_inputs
        + num_empty_witnesses
    )
    weight = 3 * base_size + (base_size + witness_size)
    return fee_for_vsize(fee_rate, weight // 4)


@dataclass(frozen=True)
class HashCommitmentFeeEstimate:
    compressed_size: int
    outputs_count: int
    chunks_count: int
    setup_fee: int
    reveal_fee: int
    total_fee: int
    setup_vsize: int
    reveal_vsize: int


def estimate_hash_commitment_fees(
    data_size: int, fee_rate: FeeRate, compression_ratio: FeeRate = "0.7"
) -> HashCommitmentFeeEstimate:
    """Estimates the setup and reveal fees of committing data_size bytes
    through hash-committed P2WSH outputs"""
    if data_size <= 0:
        raise ParameterError("Data size must be positive")

    ratio = to_decimal_rate(compression_ratio)
    compressed_size = int((ratio * data_size).to_integral_value(rounding=ROUND_CEILING))
    outputs_count = HashCommitmentGenerator.estimate_output_count(compressed_size)
    chunks_count = HashCommitmentGenerator.estimate_chunk_count(compressed_size)

    setup_vsize = (
        SETUP_OVERHEAD_VBYTES
        + 2 * P2TR_INPUT_VBYTES
        + outputs_count * P2WSH_OUTPUT_VBYTES
        + P2WSH_OUTPUT_VBYTES
    )
    reveal_weight = 40 + outputs_count * WEIGHT_PER_INPUT + 200
    reveal_vsize = (reveal_weight + 3) // 4

    setup_fee = fee_for_vsize(fee_rate, setup_vsize)
    reveal_fee = fee_for_vsize(fee_rate, reveal_vsize)
    return HashCommitmentFeeEstimate(
        compressed_size=compressed_size,
        outputs_count=outputs_count,
        chunks_count=chunks_count,
        setup_fee=setup_fee,
        reveal_fee=reveal_fee,
        total_fee=setup_fee + reveal_fee,
        setup_vsize=setup_vsize,
        reveal_vsize=reveal_vsize,
    )
