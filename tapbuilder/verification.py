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

from dataclasses import dataclass
from typing import Optional, Sequence, Union

from tapbuilder.constants import VARIANT_P2MR, VARIANT_P2TR
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.features import ChallengeSolution, Feature
from tapbuilder.generators import DeploymentGenerator, LockLeafGenerator
from tapbuilder.hashes import hash256
from tapbuilder.keys import P2trAddress
from tapbuilder.script import Script
from tapbuilder.taproot import ScriptTree, TaprootOutput, build_tree, derive_address
from tapbuilder.utils import b_to_h, to_bytes, x_only


@dataclass(frozen=True)
class ContractVerificationParams:
    """What a third party needs to recompute the script address of a
    deployment

    Attributes
    ----------
    deployer_public_key : bytes
        compressed public key of the deployer
    contract_salt_public_key : bytes
        public key of the contract signer
    original_salt : bytes
        the random bytes of the deployment
    bytecode : bytes
        the compressed, versioned bytecode as embedded in the script
    challenge : ChallengeSolution
        the challenge the deployment committed to
    priority_fee : int
        the maximum priority written in the header
    calldata : bytes, optional
        constructor calldata
    features : list[Feature]
        the features embedded in the script
    network : str, optional
    variant : str
        "p2tr" or "p2mr"
    """

    deployer_public_key: bytes
    contract_salt_public_key: bytes
    original_salt: bytes
    bytecode: bytes
    challenge: ChallengeSolution
    priority_fee: int = 0
    calldata: Optional[bytes] = None
    features: Sequence[Feature] = ()
    network: Optional[str] = None
    variant: str = VARIANT_P2TR


def get_contract_seed(deployer_public_key: bytes, bytecode: bytes, salt_hash: bytes) -> bytes:
    """hash256(x(deployer) || hash256(salt) || hash256(bytecode)), the
    secret of the contract signer and the identity of the contract"""
    buf = x_only(to_bytes(deployer_public_key)) + to_bytes(salt_hash) + hash256(bytecode)
    return hash256(buf)


def generate_contract_virtual_address(
    deployer_public_key: bytes,
    bytecode: bytes,
    salt_hash: bytes,
    network: Optional[str] = None,
) -> str:
    """The contract seed encoded as a segwit v1 witness program"""
    seed = get_contract_seed(deployer_public_key, bytecode, salt_hash)
    return P2trAddress(witness_program=b_to_h(seed), network=network).to_string()


def compile_deployment_script(params: ContractVerificationParams) -> Script:
    generator = DeploymentGenerator(
        params.deployer_public_key, params.contract_salt_public_key, params.network
    )
    return generator.compile(
        params.bytecode,
        params.original_salt,
        params.challenge,
        params.priority_fee,
        params.calldata,
        params.features,
    )


def deployment_tree(params: ContractVerificationParams) -> ScriptTree:
    """[deployment script, lock leaf of the deployer]"""
    return build_tree(
        [
            compile_deployment_script(params),
            LockLeafGenerator.compile(params.deployer_public_key),
        ]
    )


def _internal_key(deployer_public_key: bytes, variant: str) -> Optional[bytes]:
    if variant == VARIANT_P2MR:
        return None
    return x_only(to_bytes(deployer_public_key))


def get_contract_address(params: ContractVerificationParams, ecc: Optional[EccBackend] = None) -> str:
    """Recomputes the script address a deployment must be funded at"""
    tree = deployment_tree(params)
    output = derive_address(
        _internal_key(params.deployer_public_key, params.variant),
        tree,
        params.network,
        params.variant,
        ecc,
    )
    return output.to_string()


def verify_control_block(
    params: ContractVerificationParams,
    control_block: Union[bytes, str],
    ecc: Optional[EccBackend] = None,
) -> bool:
    """Returns True if the control block spends the deployment leaf of
    the tree described by params"""
    tree = deployment_tree(params)
    expected = tree.control_block(
        0, _internal_key(params.deployer_public_key, params.variant), params.variant, ecc
    )
    return expected == to_bytes(control_block)


def verify_script_address(
    address: str,
    scripts: Sequence[Script],
    internal_key: Optional[bytes] = None,
    network: Optional[str] = None,
    variant: str = VARIANT_P2TR,
    ecc: Optional[EccBackend] = None,
) -> bool:
    """Returns True if address commits to exactly these leaf scripts

    Raises
    ------
    ParameterError
        if no script is given
    """
    if not scripts:
        raise ParameterError("At least one leaf script is required")
    output: TaprootOutput = derive_address(
        internal_key, build_tree(list(scripts)), network, variant, ecc
    )
    return output.to_string() == address
