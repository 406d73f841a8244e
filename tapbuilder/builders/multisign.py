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
from typing import Any, Iterable, Optional, Sequence

from loguru import logger

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.base import TransactionBuilder
from tapbuilder.constants import MINIMUM_DUST, NUMS_INTERNAL_KEY
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import DustError, InsufficientFundsError, ParameterError, SigningError
from tapbuilder.fees import fee_for_vsize
from tapbuilder.finalizers import MultisigFinalizer
from tapbuilder.generators import MultiSignGenerator
from tapbuilder.psbt import PSBT
from tapbuilder.rotation import SignerResolver
from tapbuilder.script import Script
from tapbuilder.signers import Signer
from tapbuilder.signing import SigningCoordinator
from tapbuilder.taproot import ScriptTree, TaprootOutput, build_tree, derive_address
from tapbuilder.transactions import Transaction, TxWitnessInput
from tapbuilder.utxo import total_value

# the unspendable second leaf of a vault tree
VAULT_FILLER_LEAF = Script(["OP_XOR", "OP_NOP", "OP_CODESEPARATOR"])


def multisig_tree(public_keys: Iterable[bytes], minimum: int) -> ScriptTree:
    """[m-of-n CHECKSIGADD leaf, filler leaf]"""
    return build_tree([MultiSignGenerator.compile(public_keys, minimum), VAULT_FILLER_LEAF])


class MultiSignTransaction(TransactionBuilder):
    """Spends m-of-n vault outputs

    A vault is a P2TR output with the NUMS point as internal key, so it can
    only be spent through its multisig leaf. The requested amount is paid
    to the receiver and the rest, minus the fee, goes back to the refund
    vault. Cosigners add their signatures one after the other; the PSBT is
    finalized once the minimum number of signatures is present.

    Parameters
    ----------
    pubkeys : list[bytes]
        the vault keys
    minimum_signatures : int
        m, between 2 and 255
    receiver : str
        receives requested_amount
    requested_amount : int
        amount in satoshis
    refund_vault : str
        receives the change

    Examples
    --------
    >>> tx = MultiSignTransaction(signer=cosigner_1, utxos=vault_utxos, ...)
    >>> psbt = tx.sign_psbt_sync()
    >>> MultiSignTransaction.sign_partial_sync(psbt, cosigner_2)
    >>> MultiSignTransaction.attempt_finalize(psbt, 2)
    True
    """

    def __init__(
        self,
        pubkeys: Optional[Sequence[bytes]] = None,
        minimum_signatures: int = 0,
        receiver: Optional[str] = None,
        requested_amount: int = 0,
        refund_vault: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if not refund_vault:
            raise ParameterError("Refund vault is required")
        if not requested_amount:
            raise ParameterError("Requested amount is required")
        if not receiver:
            raise ParameterError("Receiver is required")
        if not pubkeys:
            raise ParameterError("Pubkeys are required")

        kwargs["from_address"] = refund_vault
        kwargs["disable_auto_refund"] = True
        kwargs.setdefault("priority_fee", 0)
        super().__init__(**kwargs)

        self.public_keys = list(pubkeys)
        self.minimum_signatures = minimum_signatures
        self.receiver = receiver
        self.requested_amount = requested_amount
        self.refund_vault = refund_vault

        self.compiled_target_script = MultiSignGenerator.compile(self.public_keys, minimum_signatures)
        self.key_count = len(MultiSignGenerator.order_keys(self.public_keys))
        self.script_tree = multisig_tree(self.public_keys, minimum_signatures)
        self.script_output: TaprootOutput = derive_address(
            NUMS_INTERNAL_KEY, self.script_tree, self.network, ecc=self.ecc
        )
        self.tap_leaf_script = self.script_tree.tap_leaf_script(0, NUMS_INTERNAL_KEY, ecc=self.ecc)
        self._fee: Optional[int] = None

    @staticmethod
    def create_vault_address(
        pubkeys: Sequence[bytes],
        minimum_signatures: int,
        network: Optional[str] = None,
        ecc: Optional[EccBackend] = None,
    ) -> str:
        tree = multisig_tree(pubkeys, minimum_signatures)
        return derive_address(NUMS_INTERNAL_KEY, tree, network, ecc=ecc).to_string()

    def get_script_address(self) -> str:
        return self.script_output.to_string()

    def _add_inputs(self, assembler: TransactionAssembler) -> None:
        vault_script = self.script_output.script_pub_key
        for utxo in self.utxos + self.optional_inputs:
            if utxo.script_pub_key != vault_script:
                raise ParameterError(
                    f"UTXO {utxo.transaction_id}:{utxo.output_index} is not a vault output"
                )
            assembler.add_input(
                utxo,
                tap_leaf_script=self.tap_leaf_script,
                tap_internal_key=NUMS_INTERNAL_KEY,
                tap_merkle_root=self.script_output.merkle_root,
            )

    def _vault_value(self) -> int:
        if self._fee is None:
            return MINIMUM_DUST
        return self.total_input_value() - self.requested_amount - self._fee

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        assembler.add_output(self._vault_value(), address=self.refund_vault)
        assembler.add_output(self.requested_amount, address=self.receiver)

    def _full_witness_vsize(self, psbt: PSBT) -> int:
        """Size once the minimum number of signatures is present"""
        tx = Transaction.copy(psbt.tx)
        tx.has_segwit = True
        witnesses = []
        for psbt_input in psbt.inputs:
            leaf = psbt_input.tap_leaf_script[0]
            stack = [bytes(64)] * self.minimum_signatures
            stack += [b""] * (self.key_count - self.minimum_signatures)
            stack += [leaf.script.to_bytes(), leaf.control_block]
            witnesses.append(TxWitnessInput(stack))
        tx.witnesses = witnesses
        return tx.get_vsize()

    async def _compute_fee(self) -> tuple[int, Optional[int]]:
        self._fee = None
        vsize = self._full_witness_vsize(self._assemble(None).build())
        fee = fee_for_vsize(self.fee_rate, vsize) + 1

        vault = self.total_input_value() - self.requested_amount - fee
        if vault < 0:
            raise InsufficientFundsError(
                f"Output value left is negative {vault}",
                available=self.total_input_value(),
                requested=self.requested_amount + fee,
            )
        if vault < MINIMUM_DUST:
            raise DustError(f"Vault refund {vault} sat is below the minimum dust {MINIMUM_DUST} sat")
        self._fee = fee
        logger.debug(f"Multisig spend of {vsize} vB, fee {fee} sat, vault refund {vault} sat")
        return fee, None

    async def sign_psbt(self) -> PSBT:
        """Builds the PSBT and adds the signature of the signer; the PSBT is
        finalized only if enough signatures are present"""
        self._consume()
        psbt = await self.build_psbt()
        await self.coordinator.sign_inputs(psbt, self._input_utxos)
        self.finalized = self.attempt_finalize(psbt, self.minimum_signatures)
        return psbt

    def sign_psbt_sync(self) -> PSBT:
        return asyncio.run(self.sign_psbt())

    @staticmethod
    async def sign_partial(
        psbt: PSBT,
        signer: Signer,
        start_index: int = 0,
        ecc: Optional[EccBackend] = None,
    ) -> bool:
        """Adds the signature of another cosigner to every unfinalized
        input; returns False if the signer could not sign any of them"""
        coordinator = SigningCoordinator(SignerResolver(signer), ecc=ecc)
        before = _signature_count(psbt, start_index)
        pending = [
            index for index in range(start_index, len(psbt.inputs)) if not psbt.is_input_finalized(index)
        ]
        for index in pending:
            try:
                await coordinator.sign_input(psbt, index, None)
            except SigningError as e:
                logger.warning(f"Cosigner could not sign input {index}: {e}")
        return _signature_count(psbt, start_index) > before

    @staticmethod
    def sign_partial_sync(psbt: PSBT, signer: Signer, start_index: int = 0) -> bool:
        return asyncio.run(MultiSignTransaction.sign_partial(psbt, signer, start_index))

    @staticmethod
    def attempt_finalize(psbt: PSBT, minimum_signatures: int, start_index: int = 0) -> bool:
        """Finalizes every input that has enough signatures and returns True
        if all inputs from start_index on are final"""
        finalizer = MultisigFinalizer(minimum_signatures)
        done = 0
        for index in range(start_index, len(psbt.inputs)):
            if psbt.is_input_finalized(index):
                done += 1
            elif finalizer.can_finalize(psbt, index):
                finalizer.finalize(psbt, index)
                done += 1
        return done == len(psbt.inputs) - start_index


def _signature_count(psbt: PSBT, start_index: int) -> int:
    return sum(len(psbt.inputs[i].tap_script_sig) for i in range(start_index, len(psbt.inputs)))
