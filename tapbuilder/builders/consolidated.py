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

import os
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from loguru import logger

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.base import TransactionBuilder
from tapbuilder.builders.interaction import generate_features
from tapbuilder.constants import (
    CONTRACT_SECRET_SIZE,
    MAX_CHUNK_SIZE,
    MAX_FEE_LOSS_PERCENT,
    MIN_OUTPUT_VALUE,
    MINIMUM_DUST,
)
from tapbuilder.errors import FeeLossError, ParameterError, SigningError
from tapbuilder.features import ChallengeSolution, Feature, MLDSALinkRequest
from tapbuilder.fees import fee_for_vsize
from tapbuilder.finalizers import Finalizer, HashCommitmentFinalizer
from tapbuilder.generators import CalldataGenerator
from tapbuilder.hashcommitment import MAX_DATA_PER_TX, MAX_INPUTS, HashCommitmentGenerator, HashCommittedP2WSH
from tapbuilder.hashes import hash256
from tapbuilder.script import Script
from tapbuilder.signers import KeyPairSigner, Signer
from tapbuilder.transactions import Transaction
from tapbuilder.utils import to_bytes
from tapbuilder.utxo import UTXO


@dataclass(frozen=True)
class SetupResult:
    transaction: Transaction
    txid: str
    outputs: list[HashCommittedP2WSH]
    fees_paid: int
    chunk_count: int
    total_data_size: int

    @property
    def tx_hex(self) -> str:
        return self.transaction.to_hex()


@dataclass(frozen=True)
class RevealResult:
    transaction: Transaction
    txid: str
    data_size: int
    fees_paid: int
    input_count: int

    @property
    def tx_hex(self) -> str:
        return self.transaction.to_hex()


@dataclass(frozen=True)
class ConsolidatedResult:
    setup: SetupResult
    reveal: RevealResult

    @property
    def total_fees(self) -> int:
        return self.setup.fees_paid + self.reveal.fees_paid


@dataclass(frozen=True)
class ConsolidatedFeeEstimate:
    setup_fee: int
    reveal_fee: int
    value_per_output: int

    @property
    def total_fee(self) -> int:
        return self.setup_fee + self.reveal_fee


class ConsolidatedInteractionTransaction(TransactionBuilder):
    """Reveals the calldata of an interaction through hash committed P2WSH
    outputs (CHCT) instead of a taproot leaf

    The compiled calldata script is split into chunks. The setup
    transaction creates one P2WSH output per group of chunks; each output
    only verifies the HASH160 of its chunks, so the reveal transaction that
    spends them all has to publish the data in its witnesses. The reveal
    pays the reward and returns the change above dust.

    Parameters
    ----------
    to : str
        the contract address
    calldata, contract_secret, challenge, features
        as for InteractionTransaction
    random_bytes : bytes, optional
        seed of the script signer
    max_chunk_size : int
        size of each data chunk, at most 80 bytes

    Methods
    -------
    build()
        signs the setup and the reveal transactions
    build_reveal(setup_txid)
        signs the reveal transaction of an already signed setup
    estimate_fees()
        returns the setup and reveal fees
    """

    def __init__(
        self,
        to: Optional[str] = None,
        calldata: Optional[bytes] = None,
        contract_secret: Optional[Union[bytes, str]] = None,
        challenge: Optional[ChallengeSolution] = None,
        features: Sequence[Feature] = (),
        loaded_storage: Optional[Mapping[str, Iterable[Union[bytes, str]]]] = None,
        mldsa_link: Optional[MLDSALinkRequest] = None,
        random_bytes: Optional[Union[bytes, str]] = None,
        compiled_target_script: Optional[Union[bytes, str]] = None,
        max_chunk_size: int = MAX_CHUNK_SIZE,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not to:
            raise ParameterError("Contract address (to) is required")
        if contract_secret is None:
            raise ParameterError("Contract secret is required")
        if not calldata:
            raise ParameterError("Calldata is required")
        if challenge is None:
            raise ParameterError("Challenge solution is required")
        if self.signer is None:
            raise ParameterError("A signer is required to reveal the commitments")
        self.sender: Signer = self.signer

        self.contract_address = to
        self.contract_secret = to_bytes(contract_secret)
        if len(self.contract_secret) != CONTRACT_SECRET_SIZE:
            raise ParameterError(
                f"Invalid contract secret length. Expected {CONTRACT_SECRET_SIZE} bytes."
            )
        self.calldata = bytes(calldata)
        self.challenge = challenge
        self.max_chunk_size = max_chunk_size
        self.random_bytes = to_bytes(random_bytes) if random_bytes is not None else os.urandom(32)
        self.script_signer = KeyPairSigner(hash256(self.random_bytes), ecc=self.ecc)
        self.epoch_challenge = challenge.get_timelock_address(self.network)

        self.calldata_generator = CalldataGenerator(
            self.sender.public_key, self.script_signer.public_key, self.network
        )
        if compiled_target_script is not None:
            self.compiled_target_script = Script.from_raw(compiled_target_script)
        else:
            self.compiled_target_script = self.calldata_generator.compile(
                self.calldata,
                self.contract_secret,
                challenge,
                self.priority_fee,
                generate_features(challenge, features, loaded_storage, mldsa_link),
            )

        self.hash_commitment_generator = HashCommitmentGenerator(
            self.sender.public_key, self.network
        )
        self.compiled_data = self.compiled_target_script.to_bytes()
        self.commitment_outputs = self.hash_commitment_generator.prepare_chunks(
            self.compiled_data, max_chunk_size
        )
        self._validate_output_count()

        logger.debug(
            f"Consolidated interaction: {len(self.commitment_outputs)} outputs, "
            f"{self.total_chunk_count} chunks from {len(self.compiled_data)} bytes"
        )

    def _validate_output_count(self) -> None:
        if len(self.commitment_outputs) > MAX_INPUTS:
            raise ParameterError(
                f"Data too large: {len(self.commitment_outputs)} P2WSH outputs needed, "
                f"max {MAX_INPUTS} per standard transaction (~{MAX_DATA_PER_TX // 1024}KB). "
                f"Compiled data: {len(self.compiled_data)} bytes."
            )

    @property
    def output_count(self) -> int:
        return len(self.commitment_outputs)

    @property
    def total_chunk_count(self) -> int:
        return sum(len(output.data_chunks) for output in self.commitment_outputs)

    # reveal sizing

    def reveal_fee(self) -> int:
        weight = HashCommitmentGenerator.calculate_reveal_weight(self.commitment_outputs)
        return fee_for_vsize(self.fee_rate, (weight + 3) // 4)

    def value_per_output(self) -> int:
        """Each commitment output carries an equal share of the reward, the
        reveal fee and one dust amount of change"""
        total_needed = self.get_reward() + self.reveal_fee() + MINIMUM_DUST
        value = -(-total_needed // self.output_count)
        return max(value, MIN_OUTPUT_VALUE)

    # setup

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        value = self.value_per_output()
        for commitment in self.commitment_outputs:
            assembler.add_output(value, address=commitment.address.to_string())

    async def _compute_fee(self) -> tuple[int, Optional[int]]:
        fee, refund = await super()._compute_fee()
        self._check_fee_loss(fee)
        return fee, refund

    def _check_fee_loss(self, setup_fee: int) -> None:
        total = self.total_input_value()
        loss = setup_fee + self.reveal_fee()
        percent = 100 * loss / total if total else 100
        if percent > MAX_FEE_LOSS_PERCENT:
            raise FeeLossError(
                f"Fees of {loss} sat would consume {percent:.1f}% of the inputs "
                f"(max {MAX_FEE_LOSS_PERCENT}%)"
            )

    async def estimate_fees(self) -> ConsolidatedFeeEstimate:
        fee, _ = await self._compute_fee()
        return ConsolidatedFeeEstimate(
            setup_fee=fee, reveal_fee=self.reveal_fee(), value_per_output=self.value_per_output()
        )

    # reveal

    def reveal_utxos(self, setup_txid: str) -> list[UTXO]:
        value = self.value_per_output()
        return [
            UTXO(
                transaction_id=setup_txid,
                output_index=index,
                value=value,
                script_pub_key_hex=commitment.script_pub_key.to_hex(),
                address=commitment.address.to_string(),
                witness_script=commitment.witness_script.to_bytes(),
            )
            for index, commitment in enumerate(self.commitment_outputs)
        ]

    async def build_reveal(self, setup_txid: str) -> RevealResult:
        """Signs the transaction that spends every commitment output of the
        setup transaction

        Raises
        ------
        SigningError
            if a commitment input cannot be signed
        """
        utxos = self.reveal_utxos(setup_txid)
        assembler = TransactionAssembler(self.network, rbf=self._rbf)
        for utxo in utxos:
            assembler.add_input(utxo)

        reward = self.get_reward()
        assembler.add_output(reward, address=self.epoch_challenge.to_string())

        reveal_fee = self.reveal_fee()
        change = assembler.total_input_value() - reward - reveal_fee
        if change > MINIMUM_DUST:
            assembler.add_output(change, address=self.from_address)

        finalizers: dict[int, Finalizer] = {
            index: HashCommitmentFinalizer(self.sender.public_key, commitment.data_chunks)
            for index, commitment in enumerate(self.commitment_outputs)
        }
        psbt = assembler.build()
        if not await self.coordinator.sign_and_finalize(psbt, utxos, finalizers):
            raise SigningError("Could not finalize the reveal transaction")

        for commitment in self.commitment_outputs:
            HashCommitmentGenerator.validate_witness(commitment.data_chunks, commitment.witness_script)

        reveal = psbt.extract_transaction()
        logger.debug(f"Reveal transaction {reveal.get_txid()}")
        return RevealResult(
            transaction=reveal,
            txid=reveal.get_txid(),
            data_size=len(self.compiled_data),
            fees_paid=reveal_fee,
            input_count=len(utxos),
        )

    async def build(self) -> ConsolidatedResult:
        """Signs the setup transaction, then the reveal spending it"""
        setup_tx = await self.sign_transaction()
        setup = SetupResult(
            transaction=setup_tx,
            txid=setup_tx.get_txid(),
            outputs=self.commitment_outputs,
            fees_paid=self.transaction_fee,
            chunk_count=self.total_chunk_count,
            total_data_size=len(self.compiled_data),
        )
        logger.debug(f"Setup transaction {setup.txid}")
        reveal = await self.build_reveal(setup.txid)
        return ConsolidatedResult(setup=setup, reveal=reveal)
