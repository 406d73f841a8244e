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

from tapbuilder.constants import (
    LEAF_VERSION_TAPSCRIPT,
    P2MR_CONTROL_BYTE,
    VARIANT_P2MR,
    VARIANT_P2TR,
)
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError
from tapbuilder.hashes import tagged_hash, tap_tweak_hash
from tapbuilder.keys import P2mrAddress, P2trAddress, SegwitAddress
from tapbuilder.script import Script
from tapbuilder.utils import b_to_h, prepend_compact_size, to_bytes, x_only


VARIANTS = (VARIANT_P2TR, VARIANT_P2MR)


def tapleaf_tagged_hash(script: Script, version: int = LEAF_VERSION_TAPSCRIPT) -> bytes:
    """Calculates the tagged hash for a tapleaf"""
    script_part = bytes([version]) + prepend_compact_size(script.to_bytes())
    return tagged_hash(script_part, "TapLeaf")


def tapbranch_tagged_hash(thashed_a: bytes, thashed_b: bytes) -> bytes:
    """Calculates the tagged hash for a tapbranch"""
    # order - smaller left side
    if thashed_a < thashed_b:
        return tagged_hash(thashed_a + thashed_b, "TapBranch")
    else:
        return tagged_hash(thashed_b + thashed_a, "TapBranch")


def _check_variant(variant: str) -> str:
    if variant not in VARIANTS:
        raise ParameterError(f"Unknown taproot variant: {variant}")
    return variant


@dataclass(frozen=True)
class TapLeaf:
    script: Script
    version: int = LEAF_VERSION_TAPSCRIPT

    def leaf_hash(self) -> bytes:
        return tapleaf_tagged_hash(self.script, self.version)


@dataclass(frozen=True)
class TapLeafScript:
    """What a script path spend needs: leaf version, leaf script and control
    block"""

    leaf_version: int
    script: Script
    control_block: bytes
    variant: str = VARIANT_P2TR

    def is_p2mr(self) -> bool:
        return self.variant == VARIANT_P2MR


class ScriptTree:
    """An ordered script tree; leaves are paired by repeatedly halving the
    list so that N leaves give a balanced tree

    Example of leaves ordering: [A, B, C] is committed as [[A, B], C]

    Attributes
    ----------
    leaves : list[TapLeaf]
        the leaves in the order they were given

    Methods
    -------
    merkle_root()
        the root of the tree
    merkle_path(index)
        the concatenated sibling hashes from the leaf up to the root
    tap_leaf_script(index, internal_key, variant, ecc)
        returns the TapLeafScript to spend a leaf
    """

    def __init__(self, leaves: Sequence[Union[TapLeaf, Script]]):
        if not leaves:
            raise ParameterError("A script tree needs at least one leaf")
        self.leaves = [leaf if isinstance(leaf, TapLeaf) else TapLeaf(leaf) for leaf in leaves]

    def __len__(self) -> int:
        return len(self.leaves)

    def _nested(self, leaves: list) -> object:
        if len(leaves) == 1:
            return leaves[0]
        middle = (len(leaves) + 1) // 2
        return [self._nested(leaves[:middle]), self._nested(leaves[middle:])]

    def _hash(self, node) -> bytes:
        if isinstance(node, list):
            return tapbranch_tagged_hash(self._hash(node[0]), self._hash(node[1]))
        return self.leaves[node].leaf_hash()

    def merkle_root(self) -> bytes:
        return self._hash(self._nested(list(range(len(self.leaves)))))

    def merkle_path(self, index: int) -> bytes:
        """Generate the merkle path for spending a leaf"""
        if not 0 <= index < len(self.leaves):
            raise ParameterError(f"Leaf index {index} out of range")

        path = b""
        node = self._nested(list(range(len(self.leaves))))
        siblings = []
        while isinstance(node, list):
            left, right = node
            if index in _flatten(left):
                siblings.append(self._hash(right))
                node = left
            else:
                siblings.append(self._hash(left))
                node = right
        # the path is listed from the leaf towards the root
        for sibling in reversed(siblings):
            path += sibling
        return path

    def depth(self, index: int) -> int:
        return len(self.merkle_path(index)) // 32

    def control_block(
        self,
        index: int,
        internal_key: Optional[bytes] = None,
        variant: str = VARIANT_P2TR,
        ecc: Optional[EccBackend] = None,
    ) -> bytes:
        """Returns the control block for a leaf

        P2TR: (leaf version | parity) || internal x-only key || path
        P2MR: 0xC1 || path, there is no internal key
        """
        _check_variant(variant)
        path = self.merkle_path(index)
        if variant == VARIANT_P2MR:
            return bytes([P2MR_CONTROL_BYTE]) + path

        if internal_key is None:
            raise ParameterError("P2TR control blocks require an internal key")
        internal = x_only(to_bytes(internal_key))
        ecc = ecc or EccBackend()
        _, parity = ecc.tweak_x_only_public(internal, tap_tweak_hash(internal, self.merkle_root()))
        return bytes([self.leaves[index].version | parity]) + internal + path

    def tap_leaf_script(
        self,
        index: int,
        internal_key: Optional[bytes] = None,
        variant: str = VARIANT_P2TR,
        ecc: Optional[EccBackend] = None,
    ) -> TapLeafScript:
        leaf = self.leaves[index]
        return TapLeafScript(
            leaf_version=leaf.version,
            script=leaf.script,
            control_block=self.control_block(index, internal_key, variant, ecc),
            variant=variant,
        )


def _flatten(node) -> list[int]:
    if isinstance(node, list):
        return _flatten(node[0]) + _flatten(node[1])
    return [node]


def build_tree(scripts: Sequence[Script], version: int = LEAF_VERSION_TAPSCRIPT) -> ScriptTree:
    return ScriptTree([TapLeaf(script, version) for script in scripts])


@dataclass(frozen=True)
class TaprootOutput:
    """A derived taproot (or P2MR) output

    Attributes
    ----------
    address : SegwitAddress
        the P2trAddress or P2mrAddress
    script_pub_key : Script
        OP_1 <output key> or OP_2 <merkle root>
    merkle_root : bytes
        the root of the script tree
    output_key : bytes
        the witness program
    parity : int
        parity of the tweaked key, always 0 for P2MR
    """

    address: SegwitAddress
    script_pub_key: Script
    merkle_root: bytes
    output_key: bytes
    parity: int

    def to_string(self) -> str:
        return self.address.to_string()


def derive_address(
    internal_key: Optional[bytes],
    tree: ScriptTree,
    network: Optional[str] = None,
    variant: str = VARIANT_P2TR,
    ecc: Optional[EccBackend] = None,
) -> TaprootOutput:
    """Derives the output committing to a script tree

    For P2TR the internal key is tweaked with the merkle root. For P2MR
    the merkle root itself is the witness program and the internal key is
    ignored.
    """
    _check_variant(variant)
    root = tree.merkle_root()

    if variant == VARIANT_P2MR:
        address: SegwitAddress = P2mrAddress(witness_program=b_to_h(root), network=network)
        return TaprootOutput(address, address.to_script_pub_key(), root, root, 0)

    if internal_key is None:
        raise ParameterError("P2TR outputs require an internal key")
    internal = x_only(to_bytes(internal_key))
    ecc = ecc or EccBackend()
    output_key, parity = ecc.tweak_x_only_public(internal, tap_tweak_hash(internal, root))
    address = P2trAddress(witness_program=b_to_h(output_key), is_odd=bool(parity), network=network)
    return TaprootOutput(address, address.to_script_pub_key(), root, output_key, parity)


def control_block_size(depth: int, variant: str = VARIANT_P2TR) -> int:
    """Size of a control block for a leaf at the given depth"""
    _check_variant(variant)
    if variant == VARIANT_P2MR:
        return 1 + 32 * depth
    return 33 + 32 * depth
