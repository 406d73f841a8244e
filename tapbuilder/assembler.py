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

from enum import Enum
from typing import Optional, Union

from loguru import logger

from tapbuilder.constants import DEFAULT_TX_SEQUENCE, MINIMUM_DUST, RBF_TX_SEQUENCE
from tapbuilder.errors import BuilderStateError, DustError, ParameterError, SigningError
from tapbuilder.keys import address_to_script_pub_key
from tapbuilder.psbt import PSBT, PSBTInput, PSBTOutput
from tapbuilder.script import Script
from tapbuilder.setup import resolve_network
from tapbuilder.taproot import TapLeafScript
from tapbuilder.transactions import Transaction, TxInput, TxOutput
from tapbuilder.utils import to_bytes, x_only
from tapbuilder.utxo import UTXO


class AssemblerState(Enum):
    EMPTY = "empty"
    INPUTS_ADDED = "inputs_added"
    OUTPUTS_ADDED = "outputs_added"
    BUILT = "built"


class TransactionAssembler:
    """Assembles the unsigned PSBT of a transaction

    Inputs are added first, then outputs, then the PSBT is built exactly once:

    |  EMPTY -> INPUTS_ADDED -> OUTPUTS_ADDED -> BUILT

    Attributes
    ----------
    psbt : PSBT
        the PSBT under construction
    utxos : list[UTXO]
        the UTXO spent by each input, in input order
    state : AssemblerState
        the current state

    Methods
    -------
    add_input(utxo, tap_leaf_script, tap_internal_key, tap_merkle_root)
        adds an input spending a UTXO
    add_output(value, address, script)
        adds an output
    add_note(data)
        adds a 0-value OP_RETURN output
    disable_rbf()
        makes every input final
    build()
        returns the PSBT

    Raises
    ------
    BuilderStateError
        when an operation is called in the wrong state
    """

    def __init__(self, network: Optional[str] = None, rbf: bool = True) -> None:
        self.network = resolve_network(network)
        self.psbt = PSBT()
        self.utxos: list[UTXO] = []
        self.state = AssemblerState.EMPTY
        self.sequence = RBF_TX_SEQUENCE if rbf else DEFAULT_TX_SEQUENCE

    def add_input(
        self,
        utxo: UTXO,
        tap_leaf_script: Optional[TapLeafScript] = None,
        tap_internal_key: Optional[bytes] = None,
        tap_merkle_root: Optional[bytes] = None,
    ) -> int:
        """Adds an input spending the UTXO and returns its index"""
        if self.state not in (AssemblerState.EMPTY, AssemblerState.INPUTS_ADDED):
            raise BuilderStateError(f"Cannot add inputs in state {self.state.value}")

        script_pub_key = utxo.script_pub_key
        psbt_input = PSBTInput()
        psbt_input.witness_utxo = TxOutput(utxo.value, script_pub_key)

        if utxo.non_witness_utxo is not None:
            psbt_input.non_witness_utxo = Transaction.from_raw(utxo.non_witness_utxo)

        if script_pub_key.is_p2wsh() or script_pub_key.is_p2sh():
            if utxo.witness_script is not None:
                psbt_input.witness_script = Script.from_raw(utxo.witness_script)
            if utxo.redeem_script is not None:
                psbt_input.redeem_script = Script.from_raw(utxo.redeem_script)
            if script_pub_key.is_p2wsh() and psbt_input.witness_script is None:
                raise ParameterError(
                    f"P2WSH input {utxo.transaction_id}:{utxo.output_index} requires its witness script"
                )

        if tap_leaf_script is not None:
            psbt_input.tap_leaf_script = [tap_leaf_script]
        if tap_internal_key is not None:
            psbt_input.tap_internal_key = x_only(to_bytes(tap_internal_key))
        if tap_merkle_root is not None:
            psbt_input.tap_merkle_root = to_bytes(tap_merkle_root)

        index = self.psbt.add_input(
            TxInput(utxo.transaction_id, utxo.output_index, sequence=self.sequence),
            psbt_input,
        )
        self.utxos.append(utxo)
        self.state = AssemblerState.INPUTS_ADDED
        return index

    def add_output(
        self,
        value: int,
        address: Optional[str] = None,
        script: Optional[Union[Script, bytes]] = None,
        tap_internal_key: Optional[bytes] = None,
    ) -> int:
        """Adds an output paying to an address or a script and returns its
        index

        Raises
        ------
        ParameterError
            if neither an address nor a script is given, or a 0-value output
            is not a proper OP_RETURN
        DustError
            if the value is below the dust limit
        """
        if self.state not in (AssemblerState.INPUTS_ADDED, AssemblerState.OUTPUTS_ADDED):
            raise BuilderStateError(f"Cannot add outputs in state {self.state.value}")

        if script is None:
            if address is None:
                raise ParameterError("An output requires an address or a script")
            script = address_to_script_pub_key(address, self.network)
        elif not isinstance(script, Script):
            script = Script.from_raw(script)

        if value == 0:
            raw = script.to_bytes()
            if len(raw) < 2:
                raise ParameterError("Output script is too short")
            if not script.is_op_return():
                raise ParameterError("Output script must start with OP_RETURN when value is 0")
        elif value < MINIMUM_DUST:
            raise DustError(f"Output value is less than the minimum dust {value} < {MINIMUM_DUST}")

        psbt_output = PSBTOutput()
        if tap_internal_key is not None:
            psbt_output.tap_internal_key = x_only(to_bytes(tap_internal_key))

        index = self.psbt.add_output(TxOutput(value, script), psbt_output)
        self.state = AssemblerState.OUTPUTS_ADDED
        return index

    def add_note(self, data: Union[bytes, str]) -> int:
        """Adds a 0-value OP_RETURN output carrying the note; strings are
        utf-8 encoded"""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if not data:
            raise ParameterError("Note cannot be empty")
        return self.add_output(0, script=Script(["OP_RETURN", data]))

    def disable_rbf(self) -> None:
        """Sets the sequence of every existing and future input to final

        Raises
        ------
        SigningError
            if any input is already signed
        """
        for index in range(len(self.psbt.inputs)):
            if self.psbt.is_input_signed(index):
                raise SigningError("Transaction is already signed", index)

        self.sequence = DEFAULT_TX_SEQUENCE
        for index in range(len(self.psbt.tx.inputs)):
            self.psbt.set_input_sequence(index, DEFAULT_TX_SEQUENCE)

    def build(self) -> PSBT:
        """Returns the assembled PSBT; can only be called once"""
        if self.state != AssemblerState.OUTPUTS_ADDED:
            raise BuilderStateError(f"Cannot build in state {self.state.value}")
        self.state = AssemblerState.BUILT
        logger.debug(
            f"Assembled {len(self.psbt.inputs)} inputs and {len(self.psbt.outputs)} outputs"
        )
        return self.psbt

    @property
    def is_built(self) -> bool:
        return self.state == AssemblerState.BUILT

    def total_input_value(self) -> int:
        return sum(utxo.value for utxo in self.utxos)

    def total_output_value(self) -> int:
        return sum(txout.amount for txout in self.psbt.tx.outputs)
