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

import copy
import struct
from typing import Any, Union

from tapbuilder.errors import ParameterError, ScriptIntegrityError
from tapbuilder.hashes import hash160, sha256
from tapbuilder.utils import b_to_h, h_to_b


# Bitcoin's op codes. Complete list at: https://en.bitcoin.it/wiki/Script
OP_CODES = {
    # constants
    "OP_0": b"\x00",
    "OP_FALSE": b"\x00",
    "OP_PUSHDATA1": b"\x4c",
    "OP_PUSHDATA2": b"\x4d",
    "OP_PUSHDATA4": b"\x4e",
    "OP_1NEGATE": b"\x4f",
    "OP_1": b"\x51",
    "OP_TRUE": b"\x51",
    "OP_2": b"\x52",
    "OP_3": b"\x53",
    "OP_4": b"\x54",
    "OP_5": b"\x55",
    "OP_6": b"\x56",
    "OP_7": b"\x57",
    "OP_8": b"\x58",
    "OP_9": b"\x59",
    "OP_10": b"\x5a",
    "OP_11": b"\x5b",
    "OP_12": b"\x5c",
    "OP_13": b"\x5d",
    "OP_14": b"\x5e",
    "OP_15": b"\x5f",
    "OP_16": b"\x60",
    # flow control
    "OP_NOP": b"\x61",
    "OP_IF": b"\x63",
    "OP_NOTIF": b"\x64",
    "OP_ELSE": b"\x67",
    "OP_ENDIF": b"\x68",
    "OP_VERIFY": b"\x69",
    "OP_RETURN": b"\x6a",
    # stack
    "OP_TOALTSTACK": b"\x6b",
    "OP_FROMALTSTACK": b"\x6c",
    "OP_2DROP": b"\x6d",
    "OP_2DUP": b"\x6e",
    "OP_3DUP": b"\x6f",
    "OP_2OVER": b"\x70",
    "OP_2ROT": b"\x71",
    "OP_2SWAP": b"\x72",
    "OP_IFDUP": b"\x73",
    "OP_DEPTH": b"\x74",
    "OP_DROP": b"\x75",
    "OP_DUP": b"\x76",
    "OP_NIP": b"\x77",
    "OP_OVER": b"\x78",
    "OP_PICK": b"\x79",
    "OP_ROLL": b"\x7a",
    "OP_ROT": b"\x7b",
    "OP_SWAP": b"\x7c",
    "OP_TUCK": b"\x7d",
    # splice
    "OP_CAT": b"\x7e",
    "OP_SIZE": b"\x82",
    # bitwise logic
    "OP_INVERT": b"\x83",
    "OP_AND": b"\x84",
    "OP_OR": b"\x85",
    "OP_XOR": b"\x86",
    "OP_EQUAL": b"\x87",
    "OP_EQUALVERIFY": b"\x88",
    # arithmetic
    "OP_1ADD": b"\x8b",
    "OP_1SUB": b"\x8c",
    "OP_NEGATE": b"\x8f",
    "OP_ABS": b"\x90",
    "OP_NOT": b"\x91",
    "OP_0NOTEQUAL": b"\x92",
    "OP_ADD": b"\x93",
    "OP_SUB": b"\x94",
    "OP_BOOLAND": b"\x9a",
    "OP_BOOLOR": b"\x9b",
    "OP_NUMEQUAL": b"\x9c",
    "OP_NUMEQUALVERIFY": b"\x9d",
    "OP_NUMNOTEQUAL": b"\x9e",
    "OP_LESSTHAN": b"\x9f",
    "OP_GREATERTHAN": b"\xa0",
    "OP_LESSTHANOREQUAL": b"\xa1",
    "OP_GREATERTHANOREQUAL": b"\xa2",
    "OP_MIN": b"\xa3",
    "OP_MAX": b"\xa4",
    "OP_WITHIN": b"\xa5",
    # crypto
    "OP_RIPEMD160": b"\xa6",
    "OP_SHA1": b"\xa7",
    "OP_SHA256": b"\xa8",
    "OP_HASH160": b"\xa9",
    "OP_HASH256": b"\xaa",
    "OP_CODESEPARATOR": b"\xab",
    "OP_CHECKSIG": b"\xac",
    "OP_CHECKSIGVERIFY": b"\xad",
    "OP_CHECKMULTISIG": b"\xae",
    "OP_CHECKMULTISIGVERIFY": b"\xaf",
    # tapscript (BIP342)
    "OP_CHECKSIGADD": b"\xba",
    # locktime
    "OP_NOP1": b"\xb0",
    "OP_NOP2": b"\xb1",
    "OP_CHECKLOCKTIMEVERIFY": b"\xb1",
    "OP_NOP3": b"\xb2",
    "OP_CHECKSEQUENCEVERIFY": b"\xb2",
    "OP_NOP4": b"\xb3",
    "OP_NOP5": b"\xb4",
    "OP_NOP6": b"\xb5",
    "OP_NOP7": b"\xb6",
    "OP_NOP8": b"\xb7",
    "OP_NOP9": b"\xb8",
    "OP_NOP10": b"\xb9",
}

# aliases are skipped so that decompiling gives the canonical names
_ALIASES = {"OP_FALSE", "OP_TRUE", "OP_NOP2", "OP_NOP3"}

CODE_OPS = {code: name for name, code in OP_CODES.items() if name not in _ALIASES}


def _push_data(data: bytes) -> bytes:
    """Converts data to the minimal push operation including its length"""

    # minimal encodings (BIP62): small numbers use their dedicated opcodes
    if len(data) == 0:
        return OP_CODES["OP_0"]
    if len(data) == 1 and 1 <= data[0] <= 16:
        return bytes([0x50 + data[0]])
    if len(data) == 1 and data[0] == 0x81:
        return OP_CODES["OP_1NEGATE"]

    if len(data) < 0x4C:
        return bytes([len(data)]) + data
    elif len(data) <= 0xFF:
        return b"\x4c" + bytes([len(data)]) + data
    elif len(data) <= 0xFFFF:
        return b"\x4d" + struct.pack("<H", len(data)) + data
    elif len(data) <= 0xFFFFFFFF:
        return b"\x4e" + struct.pack("<I", len(data)) + data
    else:
        raise ParameterError("Data too large. Cannot push into script")


def script_number(integer: int) -> bytes:
    """Encodes an integer as a minimal script number (little-endian, sign
    bit in the most significant byte)"""
    if integer == 0:
        return b""

    negative = integer < 0
    absolute = -integer if negative else integer

    result = bytearray()
    while absolute:
        result.append(absolute & 0xFF)
        absolute >>= 8

    # an extra byte is needed when the sign bit is already used
    if result[-1] & 0x80:
        result.append(0x80 if negative else 0x00)
    elif negative:
        result[-1] |= 0x80

    return bytes(result)


def decode_script_number(data: bytes) -> int:
    """Decodes a script number produced by script_number()"""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


class Script:
    """Represents any script in Bitcoin

    A Script contains a list of tokens and knows how to serialize into
    bytes. Tokens are op code names (e.g. 'OP_CHECKSIG'), data as bytes or
    hexadecimal strings and integers (encoded as script numbers).

    Attributes
    ----------
    script : list
        the list with all the script OP_CODES and data

    Methods
    -------
    to_bytes()
        returns a serialized byte version of the script
    to_hex()
        returns a serialized version of the script in hex
    get_script()
        returns the list of tokens that makes up this script
    copy()
        creates a copy of the object (classmethod)
    from_raw()
        decompiles raw script bytes or hex into a Script (staticmethod)
    to_p2sh_script_pub_key()
        converts script to p2sh scriptPubKey (locking script)
    to_p2wsh_script_pub_key()
        converts script to p2wsh scriptPubKey (locking script)
    is_p2pkh(), is_p2sh(), is_p2wpkh(), is_p2wsh(), is_p2tr(), is_p2mr()
        checks the scriptPubKey template
    get_script_type()
        determines the type of script

    Raises
    ------
    ParameterError
        If a token cannot be serialized
    """

    def __init__(self, script: list[Any]):
        """See Script description"""
        self.script: list[Any] = script

    @classmethod
    def copy(cls, script: "Script") -> "Script":
        """Deep copy of Script"""
        return cls(copy.deepcopy(script.script))

    def _token_to_bytes(self, token: Any) -> bytes:
        if isinstance(token, bool):
            raise ParameterError("Booleans are not valid script tokens")
        if isinstance(token, int):
            if token == -1:
                return OP_CODES["OP_1NEGATE"]
            if 0 <= token <= 16:
                return OP_CODES["OP_" + str(token)]
            return _push_data(script_number(token))
        if isinstance(token, (bytes, bytearray)):
            return _push_data(bytes(token))
        if isinstance(token, str):
            if token in OP_CODES:
                return OP_CODES[token]
            if token.startswith("OP_"):
                raise ParameterError(f"Unknown op code: {token}")
            try:
                return _push_data(h_to_b(token))
            except ValueError:
                raise ParameterError(f"Invalid script data: {token!r}") from None
        raise ParameterError(f"Unsupported script token type: {type(token).__name__}")

    def to_bytes(self) -> bytes:
        """Converts the script to bytes"""
        return b"".join(self._token_to_bytes(token) for token in self.script)

    def to_hex(self) -> str:
        """Converts the script to hexadecimal"""
        return b_to_h(self.to_bytes())

    @staticmethod
    def from_raw(scriptraw: Union[str, bytes]) -> "Script":
        """Decompiles raw script data into a Script

        Data pushes become hexadecimal strings and op codes their names.

        Raises
        ------
        ScriptIntegrityError
            if a push runs past the end of the script or an op code is unknown
        """
        if isinstance(scriptraw, str):
            raw = h_to_b(scriptraw)
        elif isinstance(scriptraw, (bytes, bytearray)):
            raw = bytes(scriptraw)
        else:
            raise TypeError("Input must be a hexadecimal string or bytes")

        commands: list[Any] = []
        index = 0
        while index < len(raw):
            byte = raw[index]
            index += 1

            if 0x01 <= byte <= 0x4B:
                size = byte
            elif byte == 0x4C:
                size = int.from_bytes(raw[index : index + 1], "little")
                index += 1
            elif byte == 0x4D:
                size = int.from_bytes(raw[index : index + 2], "little")
                index += 2
            elif byte == 0x4E:
                size = int.from_bytes(raw[index : index + 4], "little")
                index += 4
            else:
                name = CODE_OPS.get(bytes([byte]))
                if name is None:
                    raise ScriptIntegrityError(f"Unknown op code 0x{byte:02x}")
                commands.append(name)
                continue

            if index + size > len(raw):
                raise ScriptIntegrityError("Script push exceeds script length")
            commands.append(raw[index : index + size].hex())
            index += size

        return Script(commands)

    def get_script(self) -> list[Any]:
        """Returns script as array of tokens"""
        return self.script

    def to_p2sh_script_pub_key(self) -> "Script":
        """Converts script to p2sh scriptPubKey (locking script)"""
        return Script(["OP_HASH160", hash160(self.to_bytes()), "OP_EQUAL"])

    def to_p2wsh_script_pub_key(self) -> "Script":
        """Converts script to p2wsh scriptPubKey (locking script)"""
        return Script(["OP_0", sha256(self.to_bytes())])

    def is_p2pkh(self) -> bool:
        """P2PKH format: OP_DUP OP_HASH160 <20-byte-key-hash> OP_EQUALVERIFY OP_CHECKSIG"""
        raw = self.to_bytes()
        return (
            len(raw) == 25
            and raw[:3] == b"\x76\xa9\x14"
            and raw[23:] == b"\x88\xac"
        )

    def is_p2sh(self) -> bool:
        """P2SH format: OP_HASH160 <20-byte-script-hash> OP_EQUAL"""
        raw = self.to_bytes()
        return len(raw) == 23 and raw[:2] == b"\xa9\x14" and raw[22] == 0x87

    def is_p2wpkh(self) -> bool:
        """P2WPKH format: OP_0 <20-byte-key-hash>"""
        raw = self.to_bytes()
        return len(raw) == 22 and raw[:2] == b"\x00\x14"

    def is_p2wsh(self) -> bool:
        """P2WSH format: OP_0 <32-byte-script-hash>"""
        raw = self.to_bytes()
        return len(raw) == 34 and raw[:2] == b"\x00\x20"

    def is_p2tr(self) -> bool:
        """P2TR format: OP_1 <32-byte-key>"""
        raw = self.to_bytes()
        return len(raw) == 34 and raw[:2] == b"\x51\x20"

    def is_p2mr(self) -> bool:
        """P2MR format: OP_2 <32-byte-merkle-root>"""
        raw = self.to_bytes()
        return len(raw) == 34 and raw[:2] == b"\x52\x20"

    def is_op_return(self) -> bool:
        raw = self.to_bytes()
        return len(raw) >= 1 and raw[0] == 0x6A

    def get_script_type(self) -> str:
        """
        Determine the type of script.

        Returns:
            str: Script type ('p2pkh', 'p2sh', 'p2wpkh', 'p2wsh', 'p2tr',
            'p2mr', 'nulldata', 'unknown')
        """
        if self.is_p2pkh():
            return "p2pkh"
        elif self.is_p2sh():
            return "p2sh"
        elif self.is_p2wpkh():
            return "p2wpkh"
        elif self.is_p2wsh():
            return "p2wsh"
        elif self.is_p2tr():
            return "p2tr"
        elif self.is_p2mr():
            return "p2mr"
        elif self.is_op_return():
            return "nulldata"
        else:
            return "unknown"

    def __len__(self) -> int:
        return len(self.to_bytes())

    def __str__(self) -> str:
        return str([t.hex() if isinstance(t, (bytes, bytearray)) else t for t in self.script])

    def __repr__(self) -> str:
        return self.__str__()

    def __eq__(self, _other: object) -> bool:
        if not isinstance(_other, Script):
            return False
        return self.to_bytes() == _other.to_bytes()

    def __hash__(self) -> int:
        return hash(self.to_bytes())
