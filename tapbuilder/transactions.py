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
from typing import Optional, Union

from tapbuilder.constants import (
    DEFAULT_TX_LOCKTIME,
    DEFAULT_TX_SEQUENCE,
    DEFAULT_TX_VERSION,
    EMPTY_TX_SEQUENCE,
    LEAF_VERSION_TAPSCRIPT,
    NEGATIVE_SATOSHI,
    SIGHASH_ALL,
    SIGHASH_ANYONECANPAY,
    SIGHASH_NONE,
    SIGHASH_SINGLE,
    TAPROOT_SIGHASH_ALL,
)
from tapbuilder.errors import ParameterError
from tapbuilder.hashes import hash256, sha256, tagged_hash
from tapbuilder.script import Script
from tapbuilder.utils import (
    b_to_h,
    encode_varint,
    h_to_b,
    parse_compact_size,
    prepend_compact_size,
    to_bytes,
    witness_stack_to_bytes,
)


class TxInput:
    """Represents a transaction input.

    A transaction input requires a transaction id of a UTXO and the index of
    that UTXO.

    Attributes
    ----------
    txid : str
        the transaction id as a hex string (little-endian as displayed by
        tools)
    txout_index : int
        the index of the UTXO that we want to spend
    script_sig : Script
        the script that satisfies the locking conditions (aka unlocking script)
    sequence : bytes
        the input sequence (for timelocks, RBF, etc.)

    Methods
    -------
    to_bytes()
        serializes TxInput to bytes
    copy()
        creates a copy of the object (classmethod)
    from_raw()
        instantiates object from raw input bytes (staticmethod)
    """

    def __init__(
        self,
        txid: str,
        txout_index: int,
        script_sig: Optional[Script] = None,
        sequence: str | bytes = DEFAULT_TX_SEQUENCE,
    ) -> None:
        """See TxInput description"""

        if len(txid) != 64:
            raise ParameterError(f"Invalid transaction id: {txid}")

        # expected in the format used for displaying Bitcoin hashes
        self.txid = txid
        self.txout_index = txout_index
        self.script_sig = script_sig if script_sig is not None else Script([])
        self.sequence = to_bytes(sequence)

    def to_bytes(self) -> bytes:
        """Serializes to bytes"""

        # hashes are displayed in little-endian order so the txid string is
        # reversed back to the internal byte order
        txid_bytes = h_to_b(self.txid)[::-1]
        txout_bytes = struct.pack("<L", self.txout_index)
        script_sig_bytes = self.script_sig.to_bytes()

        return (
            txid_bytes
            + txout_bytes
            + prepend_compact_size(script_sig_bytes)
            + self.sequence
        )

    def outpoint(self) -> bytes:
        return h_to_b(self.txid)[::-1] + struct.pack("<I", self.txout_index)

    def __str__(self) -> str:
        return str(
            {
                "txid": self.txid,
                "txout_index": self.txout_index,
                "script_sig": self.script_sig,
                "sequence": self.sequence.hex(),
            }
        )

    def __repr__(self) -> str:
        return self.__str__()

    @staticmethod
    def from_raw(txinputraw: bytes, cursor: int = 0) -> tuple["TxInput", int]:
        """
        Imports a TxInput from a Transaction's raw data

        Returns the input and the cursor after it
        """
        # Unpack transaction ID (hash) in bytes and output index
        txid, vout = struct.unpack_from("<32sI", txinputraw, cursor)
        cursor += 36

        unlocking_script_size, size = parse_compact_size(txinputraw[cursor:])
        cursor += size
        unlocking_script = txinputraw[cursor : cursor + unlocking_script_size]
        cursor += unlocking_script_size

        (sequence,) = struct.unpack_from("<4s", txinputraw, cursor)
        cursor += 4

        tx_input = TxInput(
            txid=txid[::-1].hex(),
            txout_index=vout,
            script_sig=Script.from_raw(unlocking_script),
            sequence=sequence,
        )
        return tx_input, cursor

    @classmethod
    def copy(cls, txin: "TxInput") -> "TxInput":
        """Deep copy of TxInput"""

        return cls(txin.txid, txin.txout_index, Script.copy(txin.script_sig), txin.sequence)


class TxWitnessInput:
    """A list of the witness items required to satisfy the locking conditions
       of a segwit input (aka witness stack).

    Attributes
    ----------
    stack : list
        the witness items (bytes) list

    Methods
    -------
    to_bytes()
        returns a serialized byte version of the witness items list
    copy()
        creates a copy of the object (classmethod)
    """

    def __init__(self, stack: list[bytes | str]) -> None:
        """See description"""

        self.stack: list[bytes] = [to_bytes(item) for item in stack]

    def to_bytes(self) -> bytes:
        """Converts to bytes, item count included"""
        return witness_stack_to_bytes(self.stack)

    @classmethod
    def copy(cls, txwin: "TxWitnessInput") -> "TxWitnessInput":
        """Deep copy of TxWitnessInput"""

        return cls(list(txwin.stack))

    def __str__(self) -> str:
        return str({"witness_items": [b_to_h(item) for item in self.stack]})

    def __repr__(self) -> str:
        return self.__str__()


class TxOutput:
    """Represents a transaction output

    Attributes
    ----------
    amount : int
        the value we want to send to this output in satoshis
    script_pubkey : Script
        the script that will lock this amount

    Methods
    -------
    to_bytes()
        serializes TxOutput to bytes
    copy()
        creates a copy of the object (classmethod)
    from_raw()
        instantiates object from raw output bytes (staticmethod)
    """

    def __init__(self, amount: int, script_pubkey: Script) -> None:
        """See TxOutput description"""

        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TypeError("Amount needs to be in satoshis as an integer")

        self.amount = amount
        self.script_pubkey = script_pubkey

    def to_bytes(self) -> bytes:
        """Serializes to bytes"""

        # internally all little-endian except hashes
        amount_bytes = struct.pack("<q", self.amount)
        return amount_bytes + prepend_compact_size(self.script_pubkey.to_bytes())

    @staticmethod
    def from_raw(txoutputraw: bytes, cursor: int = 0) -> tuple["TxOutput", int]:
        """
        Imports a TxOutput from a Transaction's raw data

        Returns the output and the cursor after it
        """
        (amount,) = struct.unpack_from("<q", txoutputraw, cursor)
        cursor += 8

        lock_script_size, size = parse_compact_size(txoutputraw[cursor:])
        cursor += size
        lock_script = txoutputraw[cursor : cursor + lock_script_size]
        cursor += lock_script_size

        return TxOutput(amount=amount, script_pubkey=Script.from_raw(lock_script)), cursor

    def __str__(self) -> str:
        return str({"amount": self.amount, "script_pubkey": self.script_pubkey})

    def __repr__(self) -> str:
        return self.__str__()

    @classmethod
    def copy(cls, txout: "TxOutput") -> "TxOutput":
        """Deep copy of TxOutput"""

        return cls(txout.amount, Script.copy(txout.script_pubkey))


def _serialize_output(txout: TxOutput) -> bytes:
    return struct.pack("<q", txout.amount) + prepend_compact_size(txout.script_pubkey.to_bytes())


class Transaction:
    """Represents a Bitcoin transaction

    Attributes
    ----------
    inputs : list (TxInput)
        A list of all the transaction inputs
    outputs : list (TxOutput)
        A list of all the transaction outputs
    locktime : bytes
        The transaction's locktime parameter
    version : bytes
        The transaction version
    has_segwit : bool
        Specifies a tx that includes segwit inputs
    witnesses : list (TxWitnessInput)
        The witness structure that corresponds to the inputs

    Methods
    -------
    to_bytes()
        Serializes Transaction to bytes
    to_hex()
        converts result of to_bytes to hexadecimal string
    from_raw()
        Instantiates a Transaction from serialized raw data (staticmethod)
    get_txid()
        Calculates txid and returns it
    get_wtxid()
        Calculates tx hash (wtxid) and returns it
    get_size()
        Calculates the tx size
    get_weight()
        Calculates the tx weight
    get_vsize()
        Calculates the tx segwit size
    copy()
        creates a copy of the object (classmethod)
    get_transaction_digest(txin_index, script, sighash)
        returns the transaction input's digest that is to be signed according
    get_transaction_segwit_digest(txin_index, script, amount, sighash)
        returns the transaction input's segwit digest that is to be signed
        according to sighash
    get_transaction_taproot_digest(txin_index, script_pubkeys, amounts, ext_flag,
            script, leaf_ver, sighash, annex)
        returns the transaction input's taproot digest that is to be signed
        according to sighash
    """

    def __init__(
        self,
        inputs: Optional[list[TxInput]] = None,
        outputs: Optional[list[TxOutput]] = None,
        locktime: str | bytes = DEFAULT_TX_LOCKTIME,
        version: bytes = DEFAULT_TX_VERSION,
        has_segwit: bool = False,
        witnesses: Optional[list[TxWitnessInput]] = None,
    ) -> None:
        """See Transaction description"""

        self.inputs = inputs if inputs is not None else []
        self.outputs = outputs if outputs is not None else []
        self.has_segwit = has_segwit
        self.witnesses = witnesses if witnesses is not None else []
        self.locktime = to_bytes(locktime)
        self.version = version

    def to_bytes(self, include_witness: bool = True) -> bytes:
        """Serializes transaction to bytes following the Bitcoin protocol
        serialization

        Parameters
        ----------
        include_witness : bool
            Whether to include witness data in serialization
        """
        inputs_ser = b"".join(txin.to_bytes() for txin in self.inputs)
        outputs_ser = b"".join(txout.to_bytes() for txout in self.outputs)

        # non-segwit format
        if not include_witness or not self.has_segwit:
            return (
                self.version
                + encode_varint(len(self.inputs))
                + inputs_ser
                + encode_varint(len(self.outputs))
                + outputs_ser
                + self.locktime
            )

        # segwit format, marker and flag followed by one witness per input;
        # inputs without a witness get an empty one
        marker_flag = b"\x00\x01"
        witness_ser = b""
        for index in range(len(self.inputs)):
            if index < len(self.witnesses):
                witness_ser += self.witnesses[index].to_bytes()
            else:
                witness_ser += b"\x00"

        return (
            self.version
            + marker_flag
            + encode_varint(len(self.inputs))
            + inputs_ser
            + encode_varint(len(self.outputs))
            + outputs_ser
            + witness_ser
            + self.locktime
        )

    def to_hex(self) -> str:
        """Serializes transaction to hex string"""
        return b_to_h(self.to_bytes())

    def serialize(self) -> str:
        """Alias for to_hex()"""
        return self.to_hex()

    def get_txid(self) -> str:
        """Calculates the transaction id (txid) and returns it"""
        # txid uses the pre-segwit serialization
        return b_to_h(hash256(self.to_bytes(include_witness=False))[::-1])

    def get_wtxid(self) -> str:
        """Calculates the witness transaction id (wtxid) and returns it"""
        if not self.has_segwit:
            return self.get_txid()
        return b_to_h(hash256(self.to_bytes(include_witness=True))[::-1])

    def get_size(self) -> int:
        """Calculates the transaction size in bytes (including witness data
        if present)"""
        return len(self.to_bytes())

    def get_weight(self) -> int:
        """weight = 3 * non_witness_size + full_size"""
        return 3 * len(self.to_bytes(include_witness=False)) + len(self.to_bytes())

    def get_vsize(self) -> int:
        """Calculates the virtual transaction size (rounded up)"""
        if not self.has_segwit:
            return self.get_size()
        return (self.get_weight() + 3) // 4

    @staticmethod
    def from_raw(rawtx: str | bytes) -> "Transaction":
        """
        Imports a Transaction from raw hexadecimal or bytes data.

        Raises
        ------
        ParameterError
            if the data is truncated
        """
        raw = to_bytes(rawtx)
        try:
            return Transaction._parse(raw)
        except (struct.error, IndexError) as e:
            raise ParameterError(f"Invalid raw transaction: {e}") from e

    @staticmethod
    def _parse(rawtx: bytes) -> "Transaction":
        version = rawtx[0:4]
        cursor = 4

        has_segwit = False
        if rawtx[cursor : cursor + 2] == b"\x00\x01":
            has_segwit = True
            cursor += 2

        n_inputs, size = parse_compact_size(rawtx[cursor:])
        cursor += size
        inputs = []
        for _ in range(n_inputs):
            inp, cursor = TxInput.from_raw(rawtx, cursor)
            inputs.append(inp)

        n_outputs, size = parse_compact_size(rawtx[cursor:])
        cursor += size
        outputs = []
        for _ in range(n_outputs):
            output, cursor = TxOutput.from_raw(rawtx, cursor)
            outputs.append(output)

        witnesses = []
        if has_segwit:
            for _ in range(n_inputs):
                n_items, size = parse_compact_size(rawtx[cursor:])
                cursor += size
                items = []
                for _ in range(n_items):
                    item_size, size = parse_compact_size(rawtx[cursor:])
                    cursor += size
                    items.append(rawtx[cursor : cursor + item_size])
                    cursor += item_size
                witnesses.append(TxWitnessInput(items))

        locktime = rawtx[cursor : cursor + 4]
        if len(locktime) != 4:
            raise ParameterError("Invalid raw transaction: missing locktime")

        return Transaction(
            inputs=inputs,
            outputs=outputs,
            version=version,
            locktime=locktime,
            has_segwit=has_segwit,
            witnesses=witnesses,
        )

    def __str__(self) -> str:
        return str(
            {
                "inputs": self.inputs,
                "outputs": self.outputs,
                "has_segwit": self.has_segwit,
                "witnesses": self.witnesses,
                "locktime": self.locktime.hex(),
                "version": self.version.hex(),
            }
        )

    def __repr__(self) -> str:
        return self.__str__()

    @classmethod
    def copy(cls, tx: "Transaction") -> "Transaction":
        """Deep copy of Transaction"""

        ins = [TxInput.copy(txin) for txin in tx.inputs]
        outs = [TxOutput.copy(txout) for txout in tx.outputs]
        wits = [TxWitnessInput.copy(witness) for witness in tx.witnesses]
        return cls(ins, outs, tx.locktime, tx.version, tx.has_segwit, wits)

    def get_transaction_digest(
        self, txin_index: int, script: Script, sighash: int = SIGHASH_ALL
    ) -> bytes:
        """Returns the transaction's digest for signing.
        https://en.bitcoin.it/wiki/OP_CHECKSIG

        |  SIGHASH types (see constants.py):
        |      SIGHASH_ALL - signs all inputs and outputs (default)
        |      SIGHASH_NONE - signs all of the inputs
        |      SIGHASH_SINGLE - signs all inputs but only txin_index output
        |      SIGHASH_ANYONECANPAY (only combined with one of the above)
        |      - with ALL - signs all outputs but only txin_index input
        |      - with NONE - signs only the txin_index input
        |      - with SINGLE - signs txin_index input and output

        Attributes
        ----------
        txin_index : int
            The index of the input that we wish to sign
        script : Script
            The scriptPubKey of the UTXO that we want to spend
        sighash : int
            The type of the signature hash to be created
        """

        # clone transaction to modify without messing up the real transaction
        tmp_tx = Transaction.copy(self)

        # make sure all input scriptSigs are empty
        for txin in tmp_tx.inputs:
            txin.script_sig = Script([])

        # the scriptSig of the signed input is set to the scriptPubKey of
        # the UTXO being spent
        tmp_tx.inputs[txin_index].script_sig = script

        # whether 0x0n or 0x8n, bitwise AND'ing will result to n
        if (sighash & 0x1F) == SIGHASH_NONE:
            # do not include outputs in digest (i.e. do not sign outputs)
            tmp_tx.outputs = []

            # zero the sequence of other inputs so that they can be replaced
            for i in range(len(tmp_tx.inputs)):
                if i != txin_index:
                    tmp_tx.inputs[i].sequence = EMPTY_TX_SEQUENCE

        elif (sighash & 0x1F) == SIGHASH_SINGLE:
            if txin_index >= len(tmp_tx.outputs):
                raise ParameterError(
                    "Transaction index is greater than the available outputs"
                )

            # keep only output that corresponds to txin_index -- delete all outputs
            # after txin_index and zero out all outputs upto txin_index
            txout = tmp_tx.outputs[txin_index]
            tmp_tx.outputs = []
            for i in range(txin_index):
                tmp_tx.outputs.append(TxOutput(NEGATIVE_SATOSHI, Script([])))
            tmp_tx.outputs.append(txout)

            for i in range(len(tmp_tx.inputs)):
                if i != txin_index:
                    tmp_tx.inputs[i].sequence = EMPTY_TX_SEQUENCE

        # bitwise AND'ing 0x8n to 0x80 will result to true
        if sighash & SIGHASH_ANYONECANPAY:
            tmp_tx.inputs = [tmp_tx.inputs[txin_index]]

        tx_for_signing = tmp_tx.to_bytes(False)

        # sighash is hashed as a 4 byte value
        tx_for_signing += struct.pack("<i", sighash)

        return hash256(tx_for_signing)

    def get_transaction_segwit_digest(
        self, txin_index: int, script: Script, amount: int, sighash: int = SIGHASH_ALL
    ) -> bytes:
        """Returns the segwit v0 transaction's digest for signing.
        https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki

        Attributes
        ----------
        txin_index : int
            The index of the input that we wish to sign
        script : Script
            The scriptCode (template) that corresponds to the segwit
            transaction output type that we want to spend
        amount : int
            The amount of the UTXO to spend in satoshis
        sighash : int
            The type of the signature hash to be created
        """

        # defaults for BIP143
        hash_prevouts = b"\x00" * 32
        hash_sequence = b"\x00" * 32
        hash_outputs = b"\x00" * 32

        basic_sig_hash_type = sighash & 0x1F
        anyone_can_pay = sighash & 0xF0 == SIGHASH_ANYONECANPAY
        sign_all = (basic_sig_hash_type != SIGHASH_SINGLE) and (
            basic_sig_hash_type != SIGHASH_NONE
        )

        if not anyone_can_pay:
            hash_prevouts = hash256(b"".join(txin.outpoint() for txin in self.inputs))

        if not anyone_can_pay and sign_all:
            hash_sequence = hash256(b"".join(txin.sequence for txin in self.inputs))

        if sign_all:
            hash_outputs = hash256(b"".join(_serialize_output(o) for o in self.outputs))
        elif basic_sig_hash_type == SIGHASH_SINGLE and txin_index < len(self.outputs):
            hash_outputs = hash256(_serialize_output(self.outputs[txin_index]))

        txin = self.inputs[txin_index]
        tx_for_signing = (
            self.version
            + hash_prevouts
            + hash_sequence
            + txin.outpoint()
            + prepend_compact_size(script.to_bytes())
            + struct.pack("<q", amount)
            + txin.sequence
            + hash_outputs
            + self.locktime
            + struct.pack("<i", sighash)
        )

        return hash256(tx_for_signing)

    def get_transaction_taproot_digest(
        self,
        txin_index: int,
        script_pubkeys: list[Script],
        amounts: list[int],
        ext_flag: int = 0,
        script: Optional[Script] = None,
        leaf_ver: int = LEAF_VERSION_TAPSCRIPT,
        sighash: int = TAPROOT_SIGHASH_ALL,
        annex: Union[bytes, str, None] = None,
    ) -> bytes:
        """Returns the segwit v1 (taproot) transaction's digest for signing.
        https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki

        The same digest is used for P2MR script path spends.

        Attributes
        ----------
        txin_index : int
            The index of the input that we wish to sign
        script_pubkeys : list(Script)
            The scriptPubkeys that correspond to all the inputs/UTXOs
        amounts : list(int)
            The amounts that correspond to all the inputs/UTXOs
        ext_flag : int
            Extension mechanism, default is 0; 1 is for script spending (BIP342)
        script : Script
            The script that we are spending (ext_flag=1)
        leaf_ver : int
            The script version, LEAF_VERSION_TAPSCRIPT for the default tapscript
        sighash : int
            The type of the signature hash to be created
        annex : bytes or None
            Optional annex data, starting with 0x50
        """

        if len(script_pubkeys) != len(self.inputs) or len(amounts) != len(self.inputs):
            raise ParameterError("Every input requires its script and amount")

        sighash_none = sighash & 0x03 == SIGHASH_NONE
        sighash_single = sighash & 0x03 == SIGHASH_SINGLE
        anyone_can_pay = sighash & 0x80 == SIGHASH_ANYONECANPAY

        # epoch, sighash type, version and locktime
        tx_for_signing = bytes([0]) + bytes([sighash]) + self.version + self.locktime

        # Data about the transaction
        if not anyone_can_pay:
            tx_for_signing += sha256(b"".join(txin.outpoint() for txin in self.inputs))
            tx_for_signing += sha256(b"".join(a.to_bytes(8, "little") for a in amounts))
            tx_for_signing += sha256(
                b"".join(prepend_compact_size(s.to_bytes()) for s in script_pubkeys)
            )
            tx_for_signing += sha256(b"".join(txin.sequence for txin in self.inputs))

        if not (sighash_none or sighash_single):
            tx_for_signing += sha256(b"".join(_serialize_output(o) for o in self.outputs))

        # Data about this input
        spend_type = ext_flag * 2

        annex_bytes = None
        if annex is not None:
            annex_bytes = to_bytes(annex)
            if not annex_bytes or annex_bytes[0] != 0x50:
                raise ParameterError("Invalid annex: first byte must be 0x50")
            spend_type |= 1

        tx_for_signing += bytes([spend_type])

        if anyone_can_pay:
            txin = self.inputs[txin_index]
            tx_for_signing += txin.outpoint()
            tx_for_signing += amounts[txin_index].to_bytes(8, "little")
            tx_for_signing += prepend_compact_size(script_pubkeys[txin_index].to_bytes())
            tx_for_signing += txin.sequence
        else:
            tx_for_signing += txin_index.to_bytes(4, "little")

        if annex_bytes is not None:
            tx_for_signing += sha256(prepend_compact_size(annex_bytes))

        # Data about this output
        if sighash_single:
            if txin_index >= len(self.outputs):
                raise ParameterError(
                    "Transaction index is greater than the available outputs"
                )
            tx_for_signing += sha256(_serialize_output(self.outputs[txin_index]))

        if ext_flag == 1:
            if script is None:
                raise ParameterError("Script path digests require the leaf script")
            # committing the tapleaf hash - makes it safe to reuse keys for separate
            # scripts in the same output
            tx_for_signing += tagged_hash(
                bytes([leaf_ver]) + prepend_compact_size(script.to_bytes()), "TapLeaf"
            )

            # key version - type of public key used for this signature, currently only 0
            tx_for_signing += bytes([0])

            # code separator position, OP_CODESEPARATOR is never executed
            tx_for_signing += b"\xff\xff\xff\xff"

        return tagged_hash(tx_for_signing, "TapSighash")
