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
from decimal import Decimal
from typing import Tuple

from tapbuilder.constants import SATOSHIS_PER_BITCOIN
from tapbuilder.errors import ParameterError


def to_satoshis(num: int | float | Decimal) -> int:
    """
    Converts from any number type (int/float/Decimal) to satoshis (int)
    """
    # floats go through their string representation so that e.g. 0.29 does
    # not become 28999999
    if isinstance(num, float):
        num = Decimal(str(num))
    return int((Decimal(num) * SATOSHIS_PER_BITCOIN).to_integral_value())


def prepend_compact_size(data: bytes) -> bytes:
    """
    Counts bytes and returns them with their varint (or compact size) prepended.
    """
    return encode_varint(len(data)) + data


def encode_varint(i: int) -> bytes:
    """
    Encode a potentially very large integer into varint bytes. The length should be
    specified in little-endian.

    https://bitcoin.org/en/developer-reference#compactsize-unsigned-integers
    """
    if i < 0:
        raise ParameterError("Varint cannot be negative")
    if i < 253:
        return bytes([i])
    elif i < 0x10000:
        return b"\xfd" + i.to_bytes(2, "little")
    elif i < 0x100000000:
        return b"\xfe" + i.to_bytes(4, "little")
    elif i < 0x10000000000000000:
        return b"\xff" + i.to_bytes(8, "little")
    else:
        raise ParameterError("Integer is too large: %d" % i)


def parse_compact_size(data: bytes) -> Tuple[int, int]:
    """
    Parse variable integer. Returns (count, size)
    """
    if not data:
        raise ParameterError("Cannot parse compact size from empty data")
    first_byte = data[0]
    if first_byte < 0xFD:
        return (first_byte, 1)
    elif first_byte == 0xFD:
        return (struct.unpack("<H", data[1:3])[0], 3)
    elif first_byte == 0xFE:
        return (struct.unpack("<I", data[1:5])[0], 5)
    return (struct.unpack("<Q", data[1:9])[0], 9)


def witness_stack_to_bytes(stack: list[bytes]) -> bytes:
    """Serializes a final witness stack (item count followed by each item
    with its compact size)"""
    data = encode_varint(len(stack))
    for item in stack:
        data += prepend_compact_size(item)
    return data


def witness_bytes_to_stack(data: bytes) -> list[bytes]:
    """Parses a serialized witness stack back into its items"""
    count, cursor = parse_compact_size(data)
    stack = []
    for _ in range(count):
        size, offset = parse_compact_size(data[cursor:])
        cursor += offset
        stack.append(data[cursor : cursor + size])
        cursor += size
    return stack


def x_only(pubkey: bytes) -> bytes:
    """Returns the x-only (BIP340) form of a public key; 32-byte keys are
    returned as is"""
    if len(pubkey) == 32:
        return pubkey
    if len(pubkey) == 33:
        return pubkey[1:33]
    if len(pubkey) == 65:
        return pubkey[1:33]
    raise ParameterError(f"Invalid public key length: {len(pubkey)}")


def to_bytes(data: bytes | str) -> bytes:
    """Accepts bytes or a hexadecimal string and returns bytes"""
    if isinstance(data, bytes):
        return data
    if isinstance(data, bytearray):
        return bytes(data)
    if isinstance(data, str):
        try:
            return bytes.fromhex(data)
        except ValueError:
            raise ParameterError(f"Invalid hexadecimal string: {data!r}")
    raise ParameterError(f"Expected bytes or hex string, got {type(data).__name__}")


#
# Basic conversions between bytes (b), hexadecimal (h) and integer (i)
#
def b_to_h(b: bytes) -> str:
    """Converts bytes to hexadecimal string"""
    return b.hex()


def h_to_b(h: str) -> bytes:
    """Converts hexadecimal string to bytes"""
    return bytes.fromhex(h)


def h_to_i(hex_str: str) -> int:
    """Converts a string hexadecimal to a number"""
    return int(hex_str, base=16)


# to convert hashes to ints we need byteorder BIG...
def b_to_i(b: bytes) -> int:
    """Converts a bytes to a number"""
    return int.from_bytes(b, byteorder="big")


def i_to_b32(i: int) -> bytes:
    """Converts a integer to bytes"""
    return i.to_bytes(32, byteorder="big")
