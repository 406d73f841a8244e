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
from typing import Any, Mapping, Optional, Sequence, Union

from loguru import logger

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.base import TransactionBuilder
from tapbuilder.constants import VARIANT_P2MR, VARIANT_P2TR
from tapbuilder.errors import ParameterError
from tapbuilder.generators import LockLeafGenerator
from tapbuilder.hashes import hash256
from tapbuilder.script import Script
from tapbuilder.signers import KeyPairSigner, Signer
from tapbuilder.taproot import VARIANTS, ScriptTree, TapLeafScript, build_tree, derive_address
from tapbuilder.utils import to_bytes, x_only
from tapbuilder.utxo import UTXO


class SharedInteractionTransaction(TransactionBuilder):
    """Base of the transactions that spend a two leaf script tree,
    [target script, lock leaf], through its first leaf

    The first UTXO must pay to the script address. A per transaction
    script signer is derived from random bytes; the script address is
    deterministic for a given signer, target script and random bytes.

    Parameters
    ----------
    random_bytes : bytes, optional
        seed of the script signer, 32 random bytes by default
    variant : str
        "p2tr" (internal key = signer x-only) or "p2mr" (no internal key)

    Attributes
    ----------
    script_signer : KeyPairSigner
        the per transaction signer
    script_tree : ScriptTree
        the committed tree
    tap_leaf_script : TapLeafScript
        what input 0 needs to spend the target leaf
    """

    def __init__(
        self,
        random_bytes: Optional[Union[bytes, str]] = None,
        variant: str = VARIANT_P2TR,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if self.signer is None:
            raise ParameterError("A signer is required to spend a script path")
        self.sender: Signer = self.signer
        if variant not in VARIANTS:
            raise ParameterError(f"Unknown taproot variant: {variant}")
        self.variant = variant
        self.random_bytes = to_bytes(random_bytes) if random_bytes is not None else os.urandom(32)
        self.script_signer = KeyPairSigner(hash256(self.random_bytes), ecc=self.ecc)
        self.lock_leaf_script = LockLeafGenerator.compile(self.sender.public_key)

    @property
    def internal_key(self) -> Optional[bytes]:
        if self.variant == VARIANT_P2MR:
            return None
        return x_only(self.sender.public_key)

    def _commit(self, target_script: Script) -> None:
        """Builds the tree over the target script and derives the script
        address; subclasses call it once their script is compiled"""
        self.compiled_target_script = target_script
        self.script_tree: ScriptTree = build_tree([target_script, self.lock_leaf_script])
        self.script_output = derive_address(
            self.internal_key, self.script_tree, self.network, self.variant, self.ecc
        )
        self.tap_leaf_script: TapLeafScript = self.script_tree.tap_leaf_script(
            0, self.internal_key, self.variant, self.ecc
        )
        logger.debug(f"Script address {self.script_address} ({self.variant})")

    @property
    def script_address(self) -> str:
        return self.script_output.to_string()

    def get_script_address(self) -> str:
        return self.script_address

    def _add_inputs(self, assembler: TransactionAssembler) -> None:
        first, rest = self.utxos[0], self.utxos[1:]
        if first.script_pub_key != self.script_output.script_pub_key:
            raise ParameterError(
                f"The first UTXO must pay to the script address {self.script_address}"
            )

        merkle_root = None if self.variant == VARIANT_P2MR else self.script_output.merkle_root
        assembler.add_input(
            first,
            tap_leaf_script=self.tap_leaf_script,
            tap_internal_key=self.internal_key,
            tap_merkle_root=merkle_root,
        )
        for utxo in rest + self.optional_inputs:
            self._add_plain_input(assembler, utxo)

    def _extra_signers(self) -> Mapping[int, Sequence[Signer]]:
        return {0: [self.script_signer]}

    def placeholder_utxo(self, value: int) -> UTXO:
        """A UTXO at the script address used to size the transaction before
        the funding transaction exists"""
        return UTXO(
            transaction_id="00" * 32,
            output_index=0,
            value=value,
            script_pub_key_hex=self.script_output.script_pub_key.to_hex(),
            address=self.script_address,
        )
