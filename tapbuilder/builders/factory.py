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
from typing import Any, NamedTuple, Optional, Sequence

from loguru import logger

from tapbuilder.builders.base import PaymentOutput
from tapbuilder.builders.deployment import DeploymentTransaction
from tapbuilder.builders.funding import FundingTransaction
from tapbuilder.builders.interaction import InteractionTransaction
from tapbuilder.builders.multisign import MultiSignTransaction
from tapbuilder.builders.shared import SharedInteractionTransaction
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.keys import address_to_script_pub_key
from tapbuilder.setup import resolve_network
from tapbuilder.transactions import Transaction
from tapbuilder.utxo import UTXO, total_value


class InteractionResponse(NamedTuple):
    """The two signed transactions of an interaction and the change they
    leave to the sender"""

    funding_transaction: str
    interaction_transaction: str
    next_utxos: list[UTXO]
    estimated_fees: int = 0


class DeploymentResponse(NamedTuple):
    funding_transaction: str
    deployment_transaction: str
    contract_address: str
    contract_public_key: str
    next_utxos: list[UTXO]
    estimated_fees: int = 0


class TransactionFactory:
    """Builds the transaction pairs that need a funding step

    An interaction spends its script address, so the sender first funds that
    address with exactly the reward, the optional outputs and the fee of
    the interaction itself.

    Parameters
    ----------
    network : str, optional
        network of every transaction
    ecc : EccBackend, optional
        the curve backend shared by the builders
    """

    def __init__(self, network: Optional[str] = None, ecc: Optional[EccBackend] = None) -> None:
        self.network = resolve_network(network)
        self.ecc = ecc or EccBackend()

    async def sign_interaction(
        self,
        utxos: Sequence[UTXO],
        random_bytes: Optional[bytes] = None,
        optional_outputs: Sequence[PaymentOutput] = (),
        **parameters: Any,
    ) -> InteractionResponse:
        """Signs the funding and the interaction transactions

        The keyword parameters are those of InteractionTransaction (signer,
        calldata, contract_secret, challenge, fee_rate, priority_fee, ...).

        Raises
        ------
        ParameterError
            if there are no UTXOs or a parameter is invalid
        InsufficientFundsError
            if the UTXOs cannot fund the interaction
        """
        funding_tx, funding, interaction_tx, interaction = await self._sign_pair(
            InteractionTransaction, utxos, random_bytes, optional_outputs, parameters
        )
        return InteractionResponse(
            funding_transaction=funding_tx.to_hex(),
            interaction_transaction=interaction_tx.to_hex(),
            next_utxos=self.next_utxos(funding_tx, funding.from_address),
            estimated_fees=funding.transaction_fee + interaction.transaction_fee,
        )

    async def sign_deployment(
        self,
        utxos: Sequence[UTXO],
        random_bytes: Optional[bytes] = None,
        optional_outputs: Sequence[PaymentOutput] = (),
        **parameters: Any,
    ) -> DeploymentResponse:
        """Signs the funding and the deployment transactions

        The keyword parameters are those of DeploymentTransaction (signer,
        bytecode, calldata, challenge, fee_rate, priority_fee, ...).
        """
        funding_tx, funding, deployment_tx, deployment = await self._sign_pair(
            DeploymentTransaction, utxos, random_bytes, optional_outputs, parameters
        )
        return DeploymentResponse(
            funding_transaction=funding_tx.to_hex(),
            deployment_transaction=deployment_tx.to_hex(),
            contract_address=deployment.contract_address,
            contract_public_key=deployment.contract_public_key,
            next_utxos=self.next_utxos(funding_tx, funding.from_address),
            estimated_fees=funding.transaction_fee + deployment.transaction_fee,
        )

    async def _sign_pair(
        self,
        builder: type[SharedInteractionTransaction],
        utxos: Sequence[UTXO],
        random_bytes: Optional[bytes],
        optional_outputs: Sequence[PaymentOutput],
        parameters: dict[str, Any],
    ) -> tuple[Transaction, FundingTransaction, Transaction, SharedInteractionTransaction]:
        if not utxos:
            raise ParameterError("No UTXOs specified")
        if "disable_auto_refund" in parameters or "utxos" in parameters:
            raise ParameterError("The factory decides the inputs and the refund of an interaction")

        random_bytes = random_bytes if random_bytes is not None else os.urandom(32)
        parameters.setdefault("network", self.network)
        parameters.setdefault("ecc", self.ecc)

        # derives the script address of the script path spend
        draft = builder(utxos=list(utxos), random_bytes=random_bytes, **parameters)
        placeholder = draft.placeholder_utxo(total_value(utxos))

        estimator = builder(
            utxos=[placeholder],
            random_bytes=random_bytes,
            optional_outputs=optional_outputs,
            disable_auto_refund=True,
            **parameters,
        )
        interaction_fee = await estimator.estimate_transaction_fees()
        optional_total = sum(output.value for output in optional_outputs)
        amount = draft.get_reward() + optional_total + interaction_fee
        logger.debug(
            f"Funding {draft.script_address} with {amount} sat (interaction fee {interaction_fee})"
        )

        funding = FundingTransaction(
            to=draft.script_address,
            amount=amount,
            utxos=list(utxos),
            **_funding_parameters(parameters),
        )
        funding_tx = await funding.sign_transaction()

        spend = builder(
            utxos=[
                UTXO(
                    transaction_id=funding_tx.get_txid(),
                    output_index=0,
                    value=amount,
                    script_pub_key_hex=placeholder.script_pub_key_hex,
                    address=draft.script_address,
                )
            ],
            random_bytes=random_bytes,
            optional_outputs=optional_outputs,
            disable_auto_refund=True,
            **parameters,
        )
        spend_tx = await spend.sign_transaction()
        return funding_tx, funding, spend_tx, spend

    def next_utxos(self, tx: Transaction, address: str) -> list[UTXO]:
        """The outputs of tx paying to address, spendable by the next
        transaction"""
        script = address_to_script_pub_key(address, self.network)
        txid = tx.get_txid()
        return [
            UTXO(
                transaction_id=txid,
                output_index=index,
                value=txout.amount,
                script_pub_key_hex=txout.script_pubkey.to_hex(),
                address=address,
            )
            for index, txout in enumerate(tx.outputs)
            if txout.script_pubkey == script
        ]

    def create_multisig_vault_address(
        self, pubkeys: Sequence[bytes], minimum_signatures: int
    ) -> str:
        return MultiSignTransaction.create_vault_address(
            pubkeys, minimum_signatures, self.network, self.ecc
        )


_FUNDING_PARAMETERS = (
    "signer",
    "network",
    "fee_rate",
    "address_rotation",
    "ignore_signature_errors",
    "ecc",
    "from_address",
)


def _funding_parameters(parameters: dict[str, Any]) -> dict[str, Any]:
    return {name: parameters[name] for name in _FUNDING_PARAMETERS if name in parameters}
