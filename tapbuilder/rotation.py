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

from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Tuple, Union

from loguru import logger

from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.hashes import hash160, tap_tweak_hash
from tapbuilder.psbt import PSBTInput
from tapbuilder.script import Script
from tapbuilder.signers import Signer
from tapbuilder.utxo import UTXO
from tapbuilder.utils import x_only


SignerMap = dict[str, Signer]


@dataclass(frozen=True)
class AddressRotationConfig:
    """Signs each UTXO with the signer that controls its address

    Attributes
    ----------
    enabled : bool
        when false the transaction's single signer is used for all inputs
    signer_map : dict
        address -> signer
    """

    enabled: bool = False
    signer_map: SignerMap = field(default_factory=dict)


def create_signer_map(pairs: Iterable[Tuple[str, Signer]]) -> SignerMap:
    """Builds a signer map; for duplicate addresses the last pair wins"""
    return {address: signer for address, signer in pairs}


def create_address_rotation(
    signers: Union[Mapping[str, Signer], Iterable[Tuple[str, Signer]]]
) -> AddressRotationConfig:
    if isinstance(signers, Mapping):
        signer_map = dict(signers)
    else:
        signer_map = create_signer_map(signers)
    return AddressRotationConfig(enabled=True, signer_map=signer_map)


def disabled_address_rotation() -> AddressRotationConfig:
    return AddressRotationConfig(enabled=False, signer_map={})


class SignerResolver:
    """Finds the signer of an input

    The first match wins:

    |  1. the signer embedded in the UTXO
    |  2. the rotation map entry for the UTXO address (rotation enabled)
    |  3. the default signer
    """

    def __init__(
        self,
        default_signer: Optional[Signer],
        address_rotation: Optional[AddressRotationConfig] = None,
    ) -> None:
        self.default_signer = default_signer
        self.address_rotation = address_rotation or disabled_address_rotation()

        if default_signer is None and not self.address_rotation.enabled:
            raise ParameterError("A signer is required")

    @property
    def rotation_enabled(self) -> bool:
        return self.address_rotation.enabled

    def resolve(self, utxo: Optional[UTXO]) -> Signer:
        """Returns the signer for a UTXO

        Raises
        ------
        ParameterError
            if no signer is available for the UTXO
        """
        if utxo is not None and utxo.signer is not None:
            return utxo.signer

        if self.rotation_enabled and utxo is not None and utxo.address:
            signer = self.address_rotation.signer_map.get(utxo.address)
            if signer is not None:
                return signer
            logger.debug(f"No rotation signer for {utxo.address}, using the default signer")

        if self.default_signer is None:
            where = utxo.address if utxo is not None else "input"
            raise ParameterError(f"No signer found for {where}")
        return self.default_signer

    def validate(self, utxos: Iterable[UTXO]) -> None:
        """Makes sure every UTXO resolves to a signer before anything is
        built"""
        for utxo in utxos:
            self.resolve(utxo)


def is_taproot_input(psbt_input: PSBTInput) -> bool:
    """True for inputs carrying taproot data or spending P2TR/P2MR outputs"""
    if (
        psbt_input.tap_internal_key is not None
        or psbt_input.tap_merkle_root is not None
        or psbt_input.tap_leaf_script
    ):
        return True
    spent = psbt_input.witness_utxo
    return spent is not None and (spent.script_pubkey.is_p2tr() or spent.script_pubkey.is_p2mr())


def get_input_relevant_script(
    psbt_input: PSBTInput, txout_index: Optional[int] = None
) -> Optional[Script]:
    """Returns the script that decides which key signs the input"""
    if psbt_input.redeem_script is not None:
        return psbt_input.redeem_script
    if psbt_input.witness_script is not None:
        return psbt_input.witness_script
    if psbt_input.witness_utxo is not None:
        return psbt_input.witness_utxo.script_pubkey
    if psbt_input.non_witness_utxo is not None and txout_index is not None:
        return psbt_input.non_witness_utxo.outputs[txout_index].script_pubkey
    return None


def pubkey_in_script(public_key: bytes, script: Script) -> bool:
    """Checks if a public key appears in a script, as is, x-only or as its
    HASH160"""
    candidates = {public_key, hash160(public_key)}
    if len(public_key) == 33:
        candidates.add(x_only(public_key))
    for token in script.get_script():
        if isinstance(token, str) and not token.startswith("OP_"):
            try:
                token = bytes.fromhex(token)
            except ValueError:
                continue
        if isinstance(token, (bytes, bytearray)) and bytes(token) in candidates:
            return True
    return False


def can_sign_non_taproot_input(
    psbt_input: PSBTInput, public_key: bytes, txout_index: Optional[int] = None
) -> bool:
    """Legacy and P2SH inputs are always attempted, the rest only when the
    key is found in the relevant script"""
    if psbt_input.redeem_script is not None:
        return True
    if (
        psbt_input.non_witness_utxo is not None
        and psbt_input.witness_script is None
        and psbt_input.witness_utxo is None
    ):
        return True

    script = get_input_relevant_script(psbt_input, txout_index)
    if script is None:
        return False
    return pubkey_in_script(public_key, script)


def matches_taproot_input(
    psbt_input: PSBTInput, public_key: bytes, ecc: Optional[EccBackend] = None
) -> bool:
    """True if the key can sign a taproot input, through the internal key,
    the output key or one of its leaf scripts"""
    xonly = x_only(public_key)
    if psbt_input.tap_internal_key is not None and psbt_input.tap_internal_key == xonly:
        return True

    for leaf in psbt_input.tap_leaf_script:
        if pubkey_in_script(public_key, leaf.script):
            return True

    spent = psbt_input.witness_utxo
    if spent is not None and spent.script_pubkey.is_p2tr():
        output_key = spent.script_pubkey.to_bytes()[2:]
        if output_key == xonly:
            return True
        ecc = ecc or EccBackend()
        tweaked, _ = ecc.tweak_x_only_public(
            xonly, tap_tweak_hash(xonly, psbt_input.tap_merkle_root)
        )
        return tweaked == output_key
    return False
