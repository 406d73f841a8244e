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

from typing import Any, Mapping, Optional, Sequence, Union

from loguru import logger

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.interaction import generate_features
from tapbuilder.builders.shared import SharedInteractionTransaction
from tapbuilder.constants import DEPLOYMENT_VERSION, MAX_CALLDATA_SIZE, MAXIMUM_CONTRACT_SIZE
from tapbuilder.errors import ParameterError
from tapbuilder.features import ChallengeSolution, Compressor, Feature, MLDSALinkRequest
from tapbuilder.finalizers import CalldataFinalizer, Finalizer
from tapbuilder.generators import DeploymentGenerator
from tapbuilder.hashes import hash256
from tapbuilder.script import Script
from tapbuilder.signers import KeyPairSigner
from tapbuilder.utils import b_to_h, x_only
from tapbuilder.verification import (
    ContractVerificationParams,
    generate_contract_virtual_address,
    get_contract_seed,
)


class DeploymentTransaction(SharedInteractionTransaction):
    """Publishes a contract by revealing its bytecode through a script
    path spend

    The bytecode is prefixed with the deployment version and compressed.
    The script signer is the contract signer, whose secret is the
    contract seed, so the contract identity is fixed by the deployer key,
    the random bytes (salt) and the bytecode.

    Parameters
    ----------
    bytecode : bytes
        the contract bytecode
    calldata : bytes, optional
        constructor calldata
    challenge : ChallengeSolution
        the epoch challenge
    features : list[Feature]
        extra data blocks; EPOCH_SUBMISSION is added from the challenge
    mldsa_link : MLDSALinkRequest, optional
        sent as a MLDSA_LINK_PUBKEY feature
    compiled_target_script : bytes or str, optional
        an already compiled deployment script

    Attributes
    ----------
    contract_seed : bytes
        identity of the contract
    contract_signer : KeyPairSigner
        signs the deployment leaf next to the deployer
    """

    def __init__(
        self,
        bytecode: Optional[bytes] = None,
        calldata: Optional[bytes] = None,
        challenge: Optional[ChallengeSolution] = None,
        features: Sequence[Feature] = (),
        mldsa_link: Optional[MLDSALinkRequest] = None,
        compiled_target_script: Optional[Union[bytes, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not bytecode:
            raise ParameterError("Bytecode is required")
        if challenge is None:
            raise ParameterError("Challenge solution is required")

        self.bytecode = Compressor.compress(bytes([DEPLOYMENT_VERSION]) + bytes(bytecode))
        if len(self.bytecode) > MAXIMUM_CONTRACT_SIZE:
            raise ParameterError("Contract size overflow.")
        self.calldata = bytes(calldata) if calldata else None
        if self.calldata is not None and len(self.calldata) > MAX_CALLDATA_SIZE:
            raise ParameterError("Calldata size overflow.")

        self.challenge = challenge
        self.features = generate_features(challenge, features, None, mldsa_link)

        self.contract_seed = get_contract_seed(
            self.sender.public_key, self.bytecode, hash256(self.random_bytes)
        )
        self.contract_signer = KeyPairSigner(self.contract_seed, ecc=self.ecc)
        self.script_signer = self.contract_signer

        self.deployment_generator = DeploymentGenerator(
            self.sender.public_key, self.contract_signer.public_key, self.network
        )
        if compiled_target_script is not None:
            target = Script.from_raw(compiled_target_script)
        else:
            target = self.deployment_generator.compile(
                self.bytecode,
                self.random_bytes,
                self.challenge,
                self.priority_fee,
                self.calldata,
                self.features,
            )
        self._commit(target)
        logger.debug(f"Deploying contract {self.contract_public_key}")

    @property
    def contract_public_key(self) -> str:
        return "0x" + b_to_h(self.contract_seed)

    @property
    def contract_address(self) -> str:
        """The virtual address of the contract"""
        return generate_contract_virtual_address(
            self.sender.public_key, self.bytecode, hash256(self.random_bytes), self.network
        )

    @property
    def reward_address(self) -> str:
        return self.challenge.get_timelock_address(self.network).to_string()

    def verification_params(self) -> ContractVerificationParams:
        """The data a verifier needs to recompute the script address"""
        return ContractVerificationParams(
            deployer_public_key=self.sender.public_key,
            contract_salt_public_key=x_only(self.contract_signer.public_key),
            original_salt=self.random_bytes,
            bytecode=self.bytecode,
            challenge=self.challenge,
            priority_fee=self.priority_fee,
            calldata=self.calldata,
            features=tuple(self.features),
            network=self.network,
            variant=self.variant,
        )

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        assembler.add_output(self.get_reward(), address=self.reward_address)

    def _finalizers(self) -> Mapping[int, Finalizer]:
        return {
            0: CalldataFinalizer(
                self.random_bytes, self.contract_signer.public_key, self.sender.public_key
            )
        }
