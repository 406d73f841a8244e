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

import asyncio
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Union

from loguru import logger

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.constants import MINIMUM_AMOUNT_REWARD, MINIMUM_DUST
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import (
    BuilderStateError,
    DustError,
    InsufficientFundsError,
    ParameterError,
    SigningError,
)
from tapbuilder.fees import FeeRate, fee_for_vsize, to_decimal_rate
from tapbuilder.finalizers import Finalizer
from tapbuilder.keys import PublicKey
from tapbuilder.psbt import PSBT, PSBTInput
from tapbuilder.rotation import AddressRotationConfig, SignerResolver
from tapbuilder.script import Script
from tapbuilder.setup import resolve_network
from tapbuilder.signers import Signer
from tapbuilder.signing import SigningCoordinator
from tapbuilder.transactions import Transaction, TxOutput, TxWitnessInput
from tapbuilder.utils import x_only
from tapbuilder.utxo import UTXO, total_value


@dataclass(frozen=True)
class PaymentOutput:
    """An extra output added next to the primary outputs of a builder

    Attributes
    ----------
    value : int
        amount in satoshis
    address : str, optional
        the receiving address
    script : Script, optional
        a raw locking script, used when there is no address
    """

    value: int
    address: Optional[str] = None
    script: Optional[Script] = None

    def __post_init__(self) -> None:
        if self.address is None and self.script is None:
            raise ParameterError("An output requires an address or a script")


class TransactionBuilder:
    """Base class of every transaction kind

    A builder puts together an assembler (inputs and outputs), the fee
    policy, a signing coordinator and the finalizer of each input.
    Subclasses add their own inputs and outputs through _add_inputs() and
    _add_outputs() and declare their finalizers and extra signers.

    The fee is found by assembling the transaction once, signing a
    throwaway copy and measuring its virtual size; the refund output then
    receives inputs - outputs - fee.

    Parameters
    ----------
    signer : Signer, optional
        signs every input unless a UTXO or the rotation map names another
        signer
    utxos : list[UTXO]
        the inputs to spend
    network : str, optional
        defaults to the network set with setup()
    fee_rate : int, Decimal, str or float
        sat/vB
    priority_fee, gas_sat_fee : int
        interaction fees, added to the reward output
    optional_inputs : list[UTXO]
        inputs appended after the UTXOs
    optional_outputs : list[PaymentOutput]
        outputs appended after the primary outputs
    note : bytes or str, optional
        data for an OP_RETURN output
    address_rotation : AddressRotationConfig, optional
        per address signers
    disable_auto_refund : bool
        do not add a refund output; whatever is left pays the fee
    ignore_signature_errors : bool
        leave failing inputs unfinalized instead of raising
    ecc : EccBackend, optional
        the curve backend
    from_address : str, optional
        the refund address, defaults to the key path P2TR address of the
        signer

    Attributes
    ----------
    psbt : PSBT or None
        the final PSBT once signed
    transaction_fee : int
        the fee paid, set when the transaction is built
    finalized : bool
        whether every input was finalized
    """

    def __init__(
        self,
        signer: Optional[Signer] = None,
        utxos: Sequence[UTXO] = (),
        network: Optional[str] = None,
        fee_rate: FeeRate = 1,
        priority_fee: int = 0,
        gas_sat_fee: int = 0,
        optional_inputs: Sequence[UTXO] = (),
        optional_outputs: Sequence[PaymentOutput] = (),
        note: Optional[Union[bytes, str]] = None,
        address_rotation: Optional[AddressRotationConfig] = None,
        disable_auto_refund: bool = False,
        ignore_signature_errors: bool = False,
        ecc: Optional[EccBackend] = None,
        from_address: Optional[str] = None,
    ) -> None:
        self.network = resolve_network(network)
        self.ecc = ecc or EccBackend()
        self.signer = signer
        self.utxos = list(utxos)
        self.optional_inputs = list(optional_inputs)
        self.optional_outputs = list(optional_outputs)
        self.note = note
        self.disable_auto_refund = disable_auto_refund

        if not self.utxos:
            raise ParameterError("No UTXOs specified")
        to_decimal_rate(fee_rate)
        self.fee_rate = fee_rate
        if priority_fee < 0 or gas_sat_fee < 0:
            raise ParameterError("Fees cannot be negative")
        self.priority_fee = priority_fee
        self.gas_sat_fee = gas_sat_fee

        self.resolver = SignerResolver(signer, address_rotation)
        self.resolver.validate(self.utxos + self.optional_inputs)

        if from_address is None:
            if signer is None:
                raise ParameterError("A refund address is required when there is no signer")
            from_address = (
                PublicKey(signer.public_key).get_taproot_address(network=self.network).to_string()
            )
        self.from_address = from_address

        self.coordinator = SigningCoordinator(
            self.resolver,
            ecc=self.ecc,
            network=self.network,
            ignore_signature_errors=ignore_signature_errors,
        )

        self.psbt: Optional[PSBT] = None
        self.transaction_fee = 0
        self.finalized = False
        self._input_utxos: list[UTXO] = []
        self._rbf = True
        self._consumed = False

    def get_reward(self) -> int:
        """The amount paid to the challenge solver:
        max(max(priority + gas, dust), minimum reward)"""
        reward = max(self.priority_fee + self.gas_sat_fee, MINIMUM_DUST)
        return max(reward, MINIMUM_AMOUNT_REWARD)

    # assembly hooks

    def _add_inputs(self, assembler: TransactionAssembler) -> None:
        """Adds every UTXO and optional input as a key path or plain input"""
        for utxo in self.utxos + self.optional_inputs:
            self._add_plain_input(assembler, utxo)

    def _add_plain_input(self, assembler: TransactionAssembler, utxo: UTXO) -> int:
        script_pub_key = utxo.script_pub_key
        if script_pub_key.is_p2tr():
            signer = self.resolver.resolve(utxo)
            return assembler.add_input(utxo, tap_internal_key=x_only(signer.public_key))
        return assembler.add_input(utxo)

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        """Adds the primary outputs of the transaction"""
        raise NotImplementedError

    def _finalizers(self) -> Mapping[int, Finalizer]:
        return {}

    def _extra_signers(self) -> Mapping[int, Sequence[Signer]]:
        return {}

    def _refund_tap_internal_key(self) -> Optional[bytes]:
        if self.signer is None:
            return None
        own = PublicKey(self.signer.public_key).get_taproot_address(network=self.network)
        if own.to_string() == self.from_address:
            return x_only(self.signer.public_key)
        return None

    def _assemble(self, refund: Optional[int]) -> TransactionAssembler:
        assembler = TransactionAssembler(self.network, rbf=self._rbf)
        self._add_inputs(assembler)
        self._add_outputs(assembler)
        for output in self.optional_outputs:
            assembler.add_output(output.value, address=output.address, script=output.script)
        if self.note:
            assembler.add_note(self.note)
        if refund is not None:
            assembler.add_output(
                refund, address=self.from_address, tap_internal_key=self._refund_tap_internal_key()
            )
        return assembler

    # fees

    async def _virtual_size(self, assembler: TransactionAssembler) -> int:
        """Signs a throwaway copy of the transaction and measures it"""
        psbt = assembler.build().copy()
        await self.coordinator.sign_and_finalize(
            psbt, assembler.utxos, self._finalizers(), self._extra_signers()
        )
        if psbt.is_finalized():
            return psbt.extract_transaction().get_vsize()
        return _partial_virtual_size(psbt)

    async def _compute_fee(self) -> tuple[int, Optional[int]]:
        """Returns (fee, refund); the refund is None when auto refund is
        disabled

        Raises
        ------
        InsufficientFundsError
            if the inputs do not cover the outputs and the fee
        DustError
            if the refund would be below the dust limit
        """
        draft = self._assemble(None)
        available = draft.total_input_value() - draft.total_output_value()
        if available < 0:
            raise InsufficientFundsError(
                f"Insufficient funds: inputs {draft.total_input_value()} < outputs "
                f"{draft.total_output_value()}",
                available=draft.total_input_value(),
                requested=draft.total_output_value(),
            )

        if not self.disable_auto_refund:
            draft = self._assemble(max(available, MINIMUM_DUST))
        vsize = await self._virtual_size(draft)
        fee = fee_for_vsize(self.fee_rate, vsize) + 1
        leftover = available - fee
        logger.debug(f"Estimated {vsize} vB, fee {fee} sat, leftover {leftover} sat")

        if leftover < 0:
            raise InsufficientFundsError(
                f"Insufficient funds to pay the fee: {available} < {fee}",
                available=available,
                requested=fee,
            )
        if self.disable_auto_refund:
            return fee, None
        if leftover < MINIMUM_DUST:
            raise DustError(
                f"Refund amount {leftover} sat is below the minimum dust {MINIMUM_DUST} sat"
            )
        return fee, leftover

    async def estimate_transaction_fees(self) -> int:
        """Returns the fee the transaction would pay, without signing it"""
        fee, _ = await self._compute_fee()
        return fee

    # signing

    def _consume(self) -> None:
        if self._consumed:
            raise BuilderStateError(
                "Transaction was already signed, create a new builder to sign again"
            )
        self._consumed = True

    async def build_psbt(self) -> PSBT:
        """Returns the unsigned PSBT with the final refund"""
        fee, refund = await self._compute_fee()
        assembler = self._assemble(refund)
        self.transaction_fee = assembler.total_input_value() - assembler.total_output_value()
        self._input_utxos = list(assembler.utxos)
        self.psbt = assembler.build()
        logger.debug(
            f"Built transaction paying {self.transaction_fee} sat in fees (needed {fee}), "
            f"refund {refund}"
        )
        return self.psbt

    async def sign_psbt(self) -> PSBT:
        """Builds, signs and finalizes every input it can

        With ignore_signature_errors the returned PSBT may still have
        unfinalized inputs.
        """
        self._consume()
        psbt = await self.build_psbt()
        self.finalized = await self.coordinator.sign_and_finalize(
            psbt, self._input_utxos, self._finalizers(), self._extra_signers()
        )
        return psbt

    async def sign_transaction(self) -> Transaction:
        """Builds and signs the transaction; can be awaited once

        Raises
        ------
        BuilderStateError
            if called a second time
        SigningError
            if an input could not be finalized
        """
        psbt = await self.sign_psbt()
        if not self.finalized:
            raise SigningError("Could not finalize every input of the transaction")
        return psbt.extract_transaction()

    def sign(self) -> Transaction:
        """Blocking version of sign_transaction()"""
        return asyncio.run(self.sign_transaction())

    def disable_rbf(self) -> None:
        """Makes every input final (sequence 0xffffffff)

        Raises
        ------
        SigningError
            if the transaction is already signed
        """
        if self._consumed:
            raise SigningError("Transaction is already signed")
        self._rbf = False

    def to_base64(self) -> str:
        if self.psbt is None:
            raise BuilderStateError("Transaction has not been built")
        return self.psbt.to_base64()

    @property
    def inputs(self) -> list[PSBTInput]:
        return self.psbt.inputs if self.psbt is not None else []

    @property
    def outputs(self) -> list[TxOutput]:
        return self.psbt.tx.outputs if self.psbt is not None else []

    def total_input_value(self) -> int:
        return total_value(self.utxos + self.optional_inputs)


def _witness_allowance(psbt_input: PSBTInput) -> int:
    """Witness weight an input will need once signed"""
    if psbt_input.tap_leaf_script:
        leaf = psbt_input.tap_leaf_script[0]
        return 1 + 65 + len(leaf.script.to_bytes()) + 3 + len(leaf.control_block) + 1
    if psbt_input.tap_internal_key is not None:
        return 1 + 65
    # signature and public key, in the scriptSig for legacy inputs
    return 4 * (1 + 73 + 1 + 33)


def _partial_virtual_size(psbt: PSBT) -> int:
    tx = Transaction.copy(psbt.tx)
    tx.has_segwit = True
    witnesses = []
    extra_weight = 0
    for txin, psbt_input in zip(tx.inputs, psbt.inputs):
        if psbt_input.is_finalized():
            if psbt_input.final_scriptsig is not None:
                txin.script_sig = psbt_input.final_scriptsig
            witnesses.append(TxWitnessInput(psbt_input.final_scriptwitness or []))
        else:
            witnesses.append(TxWitnessInput([]))
            extra_weight += _witness_allowance(psbt_input)
    tx.witnesses = witnesses
    return (tx.get_weight() + extra_weight + 3) // 4

