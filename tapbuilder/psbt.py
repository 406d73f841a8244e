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
import struct
from io import BytesIO
from typing import Dict, List, Optional, Tuple

from tapbuilder.constants import VARIANT_P2MR, VARIANT_P2TR
from tapbuilder.errors import ParameterError, SigningError
from tapbuilder.script import Script
from tapbuilder.taproot import TapLeafScript
from tapbuilder.transactions import Transaction, TxInput, TxOutput, TxWitnessInput
from tapbuilder.utils import (
    parse_compact_size,
    prepend_compact_size,
    witness_bytes_to_stack,
)


class PSBTInput:
    """Per input PSBT data, BIP174 fields and the BIP371 taproot fields"""

    def __init__(self) -> None:
        # BIP-174 defined fields
        self.non_witness_utxo: Optional[Transaction] = None
        self.witness_utxo: Optional[TxOutput] = None
        self.partial_sigs: Dict[bytes, bytes] = {}  # pubkey -> signature
        self.sighash_type: Optional[int] = None
        self.redeem_script: Optional[Script] = None
        self.witness_script: Optional[Script] = None
        self.bip32_derivs: Dict[bytes, Tuple[int, List[int]]] = {}
        self.final_scriptsig: Optional[Script] = None
        self.final_scriptwitness: Optional[List[bytes]] = None

        # BIP-371 taproot fields
        self.tap_key_sig: Optional[bytes] = None
        # (x-only pubkey, leaf hash) -> signature
        self.tap_script_sig: Dict[Tuple[bytes, bytes], bytes] = {}
        self.tap_leaf_script: List[TapLeafScript] = []
        self.tap_internal_key: Optional[bytes] = None
        self.tap_merkle_root: Optional[bytes] = None

        self.proprietary: Dict[bytes, bytes] = {}
        self.unknown: Dict[bytes, bytes] = {}

    def is_finalized(self) -> bool:
        return self.final_scriptsig is not None or self.final_scriptwitness is not None

    def is_signed(self) -> bool:
        return (
            self.is_finalized()
            or self.tap_key_sig is not None
            or bool(self.tap_script_sig)
            or bool(self.partial_sigs)
        )

    def spent_output(self, txout_index: int) -> Optional[TxOutput]:
        """The output this input spends, from whichever utxo field is set"""
        if self.witness_utxo is not None:
            return self.witness_utxo
        if self.non_witness_utxo is not None:
            return self.non_witness_utxo.outputs[txout_index]
        return None

    def clear_signing_data(self) -> None:
        """Drops everything but the utxo fields once the input is final"""
        self.partial_sigs = {}
        self.sighash_type = None
        self.redeem_script = None
        self.witness_script = None
        self.bip32_derivs = {}
        self.tap_key_sig = None
        self.tap_script_sig = {}
        self.tap_leaf_script = []
        self.tap_internal_key = None
        self.tap_merkle_root = None


class PSBTOutput:
    def __init__(self) -> None:
        self.redeem_script: Optional[Script] = None
        self.witness_script: Optional[Script] = None
        self.bip32_derivs: Dict[bytes, Tuple[int, List[int]]] = {}
        self.tap_internal_key: Optional[bytes] = None

        self.proprietary: Dict[bytes, bytes] = {}
        self.unknown: Dict[bytes, bytes] = {}


class PSBT:
    """Partially signed bitcoin transaction (BIP174) with the taproot
    extensions of BIP371

    Attributes
    ----------
    tx : Transaction
        the unsigned transaction
    inputs : list[PSBTInput]
        one entry per transaction input
    outputs : list[PSBTOutput]
        one entry per transaction output

    Methods
    -------
    add_input(tx_input, psbt_input)
        appends an input
    add_output(tx_output, psbt_output)
        appends an output
    to_bytes() / to_base64()
        serializes the PSBT
    from_bytes() / from_base64()
        parses a serialized PSBT (classmethods)
    is_input_signed(index)
        true if the input carries any signature
    is_finalized()
        true if every input is final
    finalize_input(index, witness, script_sig)
        stores the final witness/scriptSig of an input
    extract_transaction()
        returns the fully signed transaction
    """

    # PSBT magic bytes and version
    MAGIC = b"psbt"
    VERSION = 0

    # Key types as defined in BIP-174 and BIP-371
    class GlobalTypes:
        UNSIGNED_TX = 0x00
        XPUB = 0x01
        VERSION = 0xFB
        PROPRIETARY = 0xFC

    class InputTypes:
        NON_WITNESS_UTXO = 0x00
        WITNESS_UTXO = 0x01
        PARTIAL_SIG = 0x02
        SIGHASH_TYPE = 0x03
        REDEEM_SCRIPT = 0x04
        WITNESS_SCRIPT = 0x05
        BIP32_DERIVATION = 0x06
        FINAL_SCRIPTSIG = 0x07
        FINAL_SCRIPTWITNESS = 0x08
        TAP_KEY_SIG = 0x13
        TAP_SCRIPT_SIG = 0x14
        TAP_LEAF_SCRIPT = 0x15
        TAP_INTERNAL_KEY = 0x17
        TAP_MERKLE_ROOT = 0x18
        PROPRIETARY = 0xFC

    class OutputTypes:
        REDEEM_SCRIPT = 0x00
        WITNESS_SCRIPT = 0x01
        BIP32_DERIVATION = 0x02
        TAP_INTERNAL_KEY = 0x05
        PROPRIETARY = 0xFC

    def __init__(self, unsigned_tx: Optional[Transaction] = None) -> None:
        if unsigned_tx is None:
            self.tx = Transaction([], [], has_segwit=True)
        else:
            # Ensure transaction has no scripts/witnesses (must be unsigned)
            inputs = [
                TxInput(txin.txid, txin.txout_index, sequence=txin.sequence)
                for txin in unsigned_tx.inputs
            ]
            self.tx = Transaction(
                inputs,
                [TxOutput.copy(o) for o in unsigned_tx.outputs],
                unsigned_tx.locktime,
                unsigned_tx.version,
                has_segwit=True,
            )

        self.inputs: List[PSBTInput] = [PSBTInput() for _ in self.tx.inputs]
        self.outputs: List[PSBTOutput] = [PSBTOutput() for _ in self.tx.outputs]

        # Global fields
        self.version = self.VERSION
        self.xpubs: Dict[bytes, Tuple[int, List[int]]] = {}
        self.proprietary: Dict[bytes, bytes] = {}
        self.unknown: Dict[bytes, bytes] = {}

    def add_input(self, tx_input: TxInput, psbt_input: Optional[PSBTInput] = None) -> int:
        """Appends an input and returns its index"""
        clean_input = TxInput(tx_input.txid, tx_input.txout_index, sequence=tx_input.sequence)
        self.tx.inputs.append(clean_input)
        self.inputs.append(psbt_input if psbt_input is not None else PSBTInput())
        return len(self.inputs) - 1

    def add_output(self, tx_output: TxOutput, psbt_output: Optional[PSBTOutput] = None) -> int:
        """Appends an output and returns its index"""
        self.tx.outputs.append(tx_output)
        self.outputs.append(psbt_output if psbt_output is not None else PSBTOutput())
        return len(self.outputs) - 1

    def set_input_sequence(self, index: int, sequence: bytes) -> None:
        self.tx.inputs[index].sequence = sequence

    def spent_scripts_and_amounts(self) -> Tuple[List[Script], List[int]]:
        """Returns the scriptPubKeys and amounts of all spent outputs, as
        required by taproot digests

        Raises
        ------
        SigningError
            if any input lacks its utxo data
        """
        scripts = []
        amounts = []
        for index, (txin, psbt_input) in enumerate(zip(self.tx.inputs, self.inputs)):
            spent = psbt_input.spent_output(txin.txout_index)
            if spent is None:
                raise SigningError(f"Input {index} has no utxo data", index)
            scripts.append(spent.script_pubkey)
            amounts.append(spent.amount)
        return scripts, amounts

    def is_input_signed(self, index: int) -> bool:
        return self.inputs[index].is_signed()

    def is_input_finalized(self, index: int) -> bool:
        return self.inputs[index].is_finalized()

    def is_finalized(self) -> bool:
        return all(psbt_input.is_finalized() for psbt_input in self.inputs)

    def finalize_input(
        self,
        index: int,
        witness: Optional[List[bytes]] = None,
        script_sig: Optional[Script] = None,
    ) -> None:
        """Stores the final witness and/or scriptSig of an input and drops
        its partial signing data"""
        if witness is None and script_sig is None:
            raise ParameterError("Finalizing requires a witness or a scriptSig")
        psbt_input = self.inputs[index]
        psbt_input.final_scriptwitness = list(witness) if witness is not None else None
        psbt_input.final_scriptsig = script_sig
        psbt_input.clear_signing_data()

    def extract_transaction(self) -> Transaction:
        """Returns the final transaction

        Raises
        ------
        SigningError
            if any input is not finalized
        """
        for index, psbt_input in enumerate(self.inputs):
            if not psbt_input.is_finalized():
                raise SigningError(f"Input {index} is not finalized", index)

        final_tx = Transaction.copy(self.tx)
        witnesses = []
        has_segwit = False
        for txin, psbt_input in zip(final_tx.inputs, self.inputs):
            txin.script_sig = (
                psbt_input.final_scriptsig
                if psbt_input.final_scriptsig is not None
                else Script([])
            )
            stack = psbt_input.final_scriptwitness or []
            if stack:
                has_segwit = True
            witnesses.append(TxWitnessInput(stack))

        final_tx.has_segwit = has_segwit
        final_tx.witnesses = witnesses if has_segwit else []
        return final_tx

    def copy(self) -> "PSBT":
        return PSBT.from_bytes(self.to_bytes())

    @classmethod
    def from_base64(cls, psbt_str: str) -> "PSBT":
        return cls.from_bytes(base64.b64decode(psbt_str))

    def to_base64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, psbt_bytes: bytes) -> "PSBT":
        stream = BytesIO(psbt_bytes)

        magic = stream.read(4)
        if magic != cls.MAGIC:
            raise ParameterError(f"Invalid PSBT magic: {magic.hex()}")

        if stream.read(1) != b"\xff":
            raise ParameterError("Invalid PSBT separator")

        psbt = cls()
        psbt._parse_global_section(stream)
        if not psbt.tx.inputs and not psbt.tx.outputs:
            raise ParameterError("PSBT has no unsigned transaction")

        for i in range(len(psbt.tx.inputs)):
            psbt._parse_input_section(stream, i)

        for i in range(len(psbt.tx.outputs)):
            psbt._parse_output_section(stream, i)

        return psbt

    def to_bytes(self) -> bytes:
        result = BytesIO()

        result.write(self.MAGIC)
        result.write(b"\xff")

        self._serialize_global_section(result)

        for i in range(len(self.inputs)):
            self._serialize_input_section(result, i)

        for i in range(len(self.outputs)):
            self._serialize_output_section(result, i)

        return result.getvalue()

    def _parse_global_section(self, stream: BytesIO) -> None:
        """Parse the global section of a PSBT."""
        while True:
            pair = self._read_key_value_pair(stream)
            if pair is None:
                break

            key_type, key_data, value_data = pair

            if key_type == self.GlobalTypes.UNSIGNED_TX:
                tx = Transaction.from_raw(value_data)
                tx.has_segwit = True
                self.tx = tx
                self.inputs = [PSBTInput() for _ in self.tx.inputs]
                self.outputs = [PSBTOutput() for _ in self.tx.outputs]
            elif key_type == self.GlobalTypes.XPUB:
                self.xpubs[key_data] = _parse_derivation(value_data)
            elif key_type == self.GlobalTypes.VERSION:
                self.version = struct.unpack("<I", value_data)[0]
            elif key_type == self.GlobalTypes.PROPRIETARY:
                self.proprietary[key_data] = value_data
            else:
                self.unknown[bytes([key_type]) + key_data] = value_data

    def _parse_input_section(self, stream: BytesIO, input_index: int) -> None:
        """Parse an input section of a PSBT."""
        psbt_input = self.inputs[input_index]

        while True:
            pair = self._read_key_value_pair(stream)
            if pair is None:
                break

            key_type, key_data, value_data = pair

            if key_type == self.InputTypes.NON_WITNESS_UTXO:
                psbt_input.non_witness_utxo = Transaction.from_raw(value_data)
            elif key_type == self.InputTypes.WITNESS_UTXO:
                psbt_input.witness_utxo, _ = TxOutput.from_raw(value_data)
            elif key_type == self.InputTypes.PARTIAL_SIG:
                psbt_input.partial_sigs[key_data] = value_data
            elif key_type == self.InputTypes.SIGHASH_TYPE:
                psbt_input.sighash_type = struct.unpack("<I", value_data)[0]
            elif key_type == self.InputTypes.REDEEM_SCRIPT:
                psbt_input.redeem_script = Script.from_raw(value_data)
            elif key_type == self.InputTypes.WITNESS_SCRIPT:
                psbt_input.witness_script = Script.from_raw(value_data)
            elif key_type == self.InputTypes.BIP32_DERIVATION:
                psbt_input.bip32_derivs[key_data] = _parse_derivation(value_data)
            elif key_type == self.InputTypes.FINAL_SCRIPTSIG:
                psbt_input.final_scriptsig = Script.from_raw(value_data)
            elif key_type == self.InputTypes.FINAL_SCRIPTWITNESS:
                psbt_input.final_scriptwitness = witness_bytes_to_stack(value_data)
            elif key_type == self.InputTypes.TAP_KEY_SIG:
                psbt_input.tap_key_sig = value_data
            elif key_type == self.InputTypes.TAP_SCRIPT_SIG:
                if len(key_data) != 64:
                    raise ParameterError("Invalid taproot script signature key")
                psbt_input.tap_script_sig[(key_data[:32], key_data[32:])] = value_data
            elif key_type == self.InputTypes.TAP_LEAF_SCRIPT:
                # the witness utxo is parsed first (keys are ordered) so it
                # tells the P2MR control blocks apart
                spent = psbt_input.witness_utxo
                variant = (
                    VARIANT_P2MR
                    if spent is not None and spent.script_pubkey.is_p2mr()
                    else VARIANT_P2TR
                )
                psbt_input.tap_leaf_script.append(
                    TapLeafScript(
                        leaf_version=value_data[-1],
                        script=Script.from_raw(value_data[:-1]),
                        control_block=key_data,
                        variant=variant,
                    )
                )
            elif key_type == self.InputTypes.TAP_INTERNAL_KEY:
                psbt_input.tap_internal_key = value_data
            elif key_type == self.InputTypes.TAP_MERKLE_ROOT:
                psbt_input.tap_merkle_root = value_data
            elif key_type == self.InputTypes.PROPRIETARY:
                psbt_input.proprietary[key_data] = value_data
            else:
                psbt_input.unknown[bytes([key_type]) + key_data] = value_data

    def _parse_output_section(self, stream: BytesIO, output_index: int) -> None:
        """Parse an output section of a PSBT."""
        psbt_output = self.outputs[output_index]

        while True:
            pair = self._read_key_value_pair(stream)
            if pair is None:
                break

            key_type, key_data, value_data = pair

            if key_type == self.OutputTypes.REDEEM_SCRIPT:
                psbt_output.redeem_script = Script.from_raw(value_data)
            elif key_type == self.OutputTypes.WITNESS_SCRIPT:
                psbt_output.witness_script = Script.from_raw(value_data)
            elif key_type == self.OutputTypes.BIP32_DERIVATION:
                psbt_output.bip32_derivs[key_data] = _parse_derivation(value_data)
            elif key_type == self.OutputTypes.TAP_INTERNAL_KEY:
                psbt_output.tap_internal_key = value_data
            elif key_type == self.OutputTypes.PROPRIETARY:
                psbt_output.proprietary[key_data] = value_data
            else:
                psbt_output.unknown[bytes([key_type]) + key_data] = value_data

    def _serialize_global_section(self, result: BytesIO) -> None:
        """Serialize the global section of a PSBT."""

        # Unsigned transaction (required), always in the non-witness format
        self._write_key_value_pair(
            result, self.GlobalTypes.UNSIGNED_TX, b"", self.tx.to_bytes(include_witness=False)
        )

        for xpub, derivation in self.xpubs.items():
            self._write_key_value_pair(
                result, self.GlobalTypes.XPUB, xpub, _serialize_derivation(derivation)
            )

        if self.version != self.VERSION:
            self._write_key_value_pair(
                result, self.GlobalTypes.VERSION, b"", struct.pack("<I", self.version)
            )

        for key_data, value_data in self.proprietary.items():
            self._write_key_value_pair(result, self.GlobalTypes.PROPRIETARY, key_data, value_data)

        self._write_unknown(result, self.unknown)

        # Section separator
        result.write(b"\x00")

    def _serialize_input_section(self, result: BytesIO, input_index: int) -> None:
        """Serialize an input section."""
        psbt_input = self.inputs[input_index]
        types = self.InputTypes

        if psbt_input.non_witness_utxo is not None:
            self._write_key_value_pair(
                result, types.NON_WITNESS_UTXO, b"", psbt_input.non_witness_utxo.to_bytes()
            )

        if psbt_input.witness_utxo is not None:
            self._write_key_value_pair(
                result, types.WITNESS_UTXO, b"", psbt_input.witness_utxo.to_bytes()
            )

        for pubkey, signature in psbt_input.partial_sigs.items():
            self._write_key_value_pair(result, types.PARTIAL_SIG, pubkey, signature)

        if psbt_input.sighash_type is not None:
            self._write_key_value_pair(
                result, types.SIGHASH_TYPE, b"", struct.pack("<I", psbt_input.sighash_type)
            )

        if psbt_input.redeem_script is not None:
            self._write_key_value_pair(
                result, types.REDEEM_SCRIPT, b"", psbt_input.redeem_script.to_bytes()
            )

        if psbt_input.witness_script is not None:
            self._write_key_value_pair(
                result, types.WITNESS_SCRIPT, b"", psbt_input.witness_script.to_bytes()
            )

        for pubkey, derivation in psbt_input.bip32_derivs.items():
            self._write_key_value_pair(
                result, types.BIP32_DERIVATION, pubkey, _serialize_derivation(derivation)
            )

        if psbt_input.final_scriptsig is not None:
            self._write_key_value_pair(
                result, types.FINAL_SCRIPTSIG, b"", psbt_input.final_scriptsig.to_bytes()
            )

        if psbt_input.final_scriptwitness is not None:
            self._write_key_value_pair(
                result,
                types.FINAL_SCRIPTWITNESS,
                b"",
                TxWitnessInput(psbt_input.final_scriptwitness).to_bytes(),
            )

        if psbt_input.tap_key_sig is not None:
            self._write_key_value_pair(result, types.TAP_KEY_SIG, b"", psbt_input.tap_key_sig)

        for (xonly, leaf_hash), signature in psbt_input.tap_script_sig.items():
            self._write_key_value_pair(result, types.TAP_SCRIPT_SIG, xonly + leaf_hash, signature)

        for leaf in psbt_input.tap_leaf_script:
            self._write_key_value_pair(
                result,
                types.TAP_LEAF_SCRIPT,
                leaf.control_block,
                leaf.script.to_bytes() + bytes([leaf.leaf_version]),
            )

        if psbt_input.tap_internal_key is not None:
            self._write_key_value_pair(
                result, types.TAP_INTERNAL_KEY, b"", psbt_input.tap_internal_key
            )

        if psbt_input.tap_merkle_root is not None:
            self._write_key_value_pair(
                result, types.TAP_MERKLE_ROOT, b"", psbt_input.tap_merkle_root
            )

        for key_data, value_data in psbt_input.proprietary.items():
            self._write_key_value_pair(result, types.PROPRIETARY, key_data, value_data)

        self._write_unknown(result, psbt_input.unknown)

        # Section separator
        result.write(b"\x00")

    def _serialize_output_section(self, result: BytesIO, output_index: int) -> None:
        """Serialize an output section."""
        psbt_output = self.outputs[output_index]
        types = self.OutputTypes

        if psbt_output.redeem_script is not None:
            self._write_key_value_pair(
                result, types.REDEEM_SCRIPT, b"", psbt_output.redeem_script.to_bytes()
            )

        if psbt_output.witness_script is not None:
            self._write_key_value_pair(
                result, types.WITNESS_SCRIPT, b"", psbt_output.witness_script.to_bytes()
            )

        for pubkey, derivation in psbt_output.bip32_derivs.items():
            self._write_key_value_pair(
                result, types.BIP32_DERIVATION, pubkey, _serialize_derivation(derivation)
            )

        if psbt_output.tap_internal_key is not None:
            self._write_key_value_pair(
                result, types.TAP_INTERNAL_KEY, b"", psbt_output.tap_internal_key
            )

        for key_data, value_data in psbt_output.proprietary.items():
            self._write_key_value_pair(result, types.PROPRIETARY, key_data, value_data)

        self._write_unknown(result, psbt_output.unknown)

        result.write(b"\x00")

    def _read_key_value_pair(self, stream: BytesIO) -> Optional[Tuple[int, bytes, bytes]]:
        """
        Read a key-value pair from the stream.

        Returns:
            Tuple of (key_type, key_data, value_data) or None if separator found
        """
        key_len = _read_compact_size(stream)
        if key_len == 0:
            return None

        key = stream.read(key_len)
        if len(key) != key_len:
            raise ParameterError("Unexpected end of stream reading key")

        value_len = _read_compact_size(stream)
        value = stream.read(value_len)
        if len(value) != value_len:
            raise ParameterError("Unexpected end of stream reading value")

        return key[0], key[1:], value

    def _write_key_value_pair(
        self, result: BytesIO, key_type: int, key_data: bytes, value_data: bytes
    ) -> None:
        """Write a key-value pair to the stream."""
        result.write(prepend_compact_size(bytes([key_type]) + key_data))
        result.write(prepend_compact_size(value_data))

    def _write_unknown(self, result: BytesIO, unknown: Dict[bytes, bytes]) -> None:
        # unknown keys are stored with their type byte
        for key, value in unknown.items():
            result.write(prepend_compact_size(key))
            result.write(prepend_compact_size(value))


def _read_compact_size(stream: BytesIO) -> int:
    first = stream.read(1)
    if not first:
        raise ParameterError("Unexpected end of PSBT stream")
    extra = {0xFD: 2, 0xFE: 4, 0xFF: 8}.get(first[0], 0)
    rest = stream.read(extra)
    if len(rest) != extra:
        raise ParameterError("Unexpected end of PSBT stream")
    value, _ = parse_compact_size(first + rest)
    return value


def _parse_derivation(value: bytes) -> Tuple[int, List[int]]:
    fingerprint = struct.unpack("<I", value[:4])[0]
    path = list(struct.unpack("<" + "I" * ((len(value) - 4) // 4), value[4:]))
    return fingerprint, path


def _serialize_derivation(derivation: Tuple[int, List[int]]) -> bytes:
    fingerprint, path = derivation
    return struct.pack("<I", fingerprint) + struct.pack("<" + "I" * len(path), *path)


