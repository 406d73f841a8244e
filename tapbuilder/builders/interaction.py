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

from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.shared import SharedInteractionTransaction
from tapbuilder.constants import CONTRACT_SECRET_SIZE
from tapbuilder.errors import ParameterError
from tapbuilder.features import ChallengeSolution, Feature, Features, MLDSALinkRequest
from tapbuilder.finalizers import CalldataFinalizer, Finalizer
from tapbuilder.generators import CalldataGenerator
from tapbuilder.script import Script
from tapbuilder.utils import to_bytes


def generate_features(
    challenge: ChallengeSolution,
    features: Sequence[Feature] = (),
    loaded_storage: Optional[Mapping[str, Iterable[Union[bytes, str]]]] = None,
    mldsa_link: Optional[MLDSALinkRequest] = None,
) -> list[Feature]:
    """Adds the features implied by the parameters to the given ones"""
    result = list(features)
    present = {feature.opcode for feature in result}

    if loaded_storage and Features.ACCESS_LIST not in present:
        result.append(Feature(Features.ACCESS_LIST, loaded_storage))
    if challenge.submission is not None and Features.EPOCH_SUBMISSION not in present:
        result.append(Feature(Features.EPOCH_SUBMISSION, challenge.submission))
    if mldsa_link is not None and Features.MLDSA_LINK_PUBKEY not in present:
        result.append(Feature(Features.MLDSA_LINK_PUBKEY, mldsa_link))
    return result


class InteractionTransaction(SharedInteractionTransaction):
    """Calls a contract by revealing calldata through a script path spend

    Input 0 spends the calldata leaf of [calldata, lock leaf]; the reward
    is paid to the CSV timelocked address of the challenge solver and the
    rest is refunded.

    Parameters
    ----------
    calldata : bytes
        the contract call, compressed before it is embedded
    contract_secret : bytes
        the 32-byte secret whose HASH160 the script checks
    challenge : ChallengeSolution
        the epoch challenge
    features : list[Feature]
        extra data blocks; EPOCH_SUBMISSION is added from the challenge
    loaded_storage : dict, optional
        contract -> storage pointers, sent as an ACCESS_LIST feature
    mldsa_link : MLDSALinkRequest, optional
        sent as a MLDSA_LINK_PUBKEY feature
    compiled_target_script : bytes or str, optional
        an already compiled calldata script

    Examples
    --------
    >>> tx = InteractionTransaction(signer=signer, utxos=utxos, fee_rate=2,
    ...     calldata=b"...", contract_secret=secret, challenge=challenge)
    >>> signed = tx.sign()
    """

    def __init__(
        self,
        calldata: Optional[bytes] = None,
        contract_secret: Optional[Union[bytes, str]] = None,
        challenge: Optional[ChallengeSolution] = None,
        features: Sequence[Feature] = (),
        loaded_storage: Optional[Mapping[str, Iterable[Union[bytes, str]]]] = None,
        mldsa_link: Optional[MLDSALinkRequest] = None,
        compiled_target_script: Optional[Union[bytes, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not calldata:
            raise ParameterError("Calldata is required")
        if contract_secret is None:
            raise ParameterError("Contract secret is required")
        if challenge is None:
            raise ParameterError("Challenge solution is required")

        self.calldata = bytes(calldata)
        self.contract_secret = to_bytes(contract_secret)
        if len(self.contract_secret) != CONTRACT_SECRET_SIZE:
            raise ParameterError(
                f"Invalid contract secret length. Expected {CONTRACT_SECRET_SIZE} bytes."
            )
        self.challenge = challenge
        self.features = generate_features(challenge, features, loaded_storage, mldsa_link)

        self.calldata_generator = CalldataGenerator(
            self.sender.public_key, self.script_signer.public_key, self.network
        )
        if compiled_target_script is not None:
            target = Script.from_raw(compiled_target_script)
        else:
            target = self.calldata_generator.compile(
                self.calldata,
                self.contract_secret,
                self.challenge,
                self.priority_fee,
                self.features,
            )
        self._commit(target)

    @property
    def reward_address(self) -> str:
        return self.challenge.get_timelock_address(self.network).to_string()

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        assembler.add_output(self.get_reward(), address=self.reward_address)

    def _finalizers(self) -> Mapping[int, Finalizer]:
        return {
            0: CalldataFinalizer(
                self.contract_secret, self.script_signer.public_key, self.sender.public_key
            )
        }
