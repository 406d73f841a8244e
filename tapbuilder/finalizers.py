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

from enum import Enum
from typing import Optional, Sequence, Union

from tapbuilder.errors import SigningError
from tapbuilder.psbt import PSBT, PSBTInput
from tapbuilder.script import Script
from tapbuilder.taproot import TapLeafScript, tapleaf_tagged_hash
from tapbuilder.utils import to_bytes, x_only


class FinalizerKind(Enum):
    CALLDATA = "calldata"
    MULTISIG = "multisig"
    HASH_COMMITMENT = "hash_commitment"
    CUSTOM = "custom"
    STANDARD = "standard"


class Finalizer:
    """Builds the final witness (and scriptSig) of an input from the
    signatures collected in the PSBT

    Attributes
    ----------
    kind : FinalizerKind
        the strategy implemented
    annex : bytes or None
        the annex appended to the witness; it is committed to by the
        signatures so the signer needs it too
    """

    kind = FinalizerKind.STANDARD
    annex: Optional[bytes] = None

    @property
    def is_script_path(self) -> bool:
        return self.kind != FinalizerKind.STANDARD

    def finalize(self, psbt: PSBT, index: int) -> None:
        raise NotImplementedError


def _leaf(psbt_input: PSBTInput, index: int) -> TapLeafScript:
    if not psbt_input.tap_leaf_script:
        raise SigningError(f"Input {index} has no tap leaf script", index)
    return psbt_input.tap_leaf_script[0]


def _script_sig(psbt_input: PSBTInput, leaf: TapLeafScript, xonly: bytes) -> Optional[bytes]:
    leaf_hash = tapleaf_tagged_hash(leaf.script, leaf.leaf_version)
    return psbt_input.tap_script_sig.get((x_only(xonly), leaf_hash))


def _leaf_keys(script: Script) -> list[bytes]:
    """The x-only keys of a CHECKSIGADD leaf in script order"""
    keys = []
    tokens = Script.from_raw(script.to_bytes()).get_script()
    for position, token in enumerate(tokens[:-1]):
        if tokens[position + 1] in ("OP_CHECKSIGADD", "OP_CHECKSIG") and isinstance(token, str):
            if len(token) == 64 and not token.startswith("OP_"):
                keys.append(bytes.fromhex(token))
    return keys


class CalldataFinalizer(Finalizer):
    """[preimage, sig(script signer), sig(sender), script, control block]

    The preimage is the contract secret of an interaction or the salt of a
    deployment.
    """

    kind = FinalizerKind.CALLDATA

    def __init__(self, preimage: bytes, script_signer_key: bytes, sender_key: bytes):
        self.preimage = to_bytes(preimage)
        self.script_signer_key = x_only(to_bytes(script_signer_key))
        self.sender_key = x_only(to_bytes(sender_key))

    def finalize(self, psbt: PSBT, index: int) -> None:
        psbt_input = psbt.inputs[index]
        leaf = _leaf(psbt_input, index)

        script_signer_sig = _script_sig(psbt_input, leaf, self.script_signer_key)
        sender_sig = _script_sig(psbt_input, leaf, self.sender_key)
        if script_signer_sig is None or sender_sig is None:
            raise SigningError(f"Input {index} is missing calldata signatures", index)

        psbt.finalize_input(
            index,
            [
                self.preimage,
                script_signer_sig,
                sender_sig,
                leaf.script.to_bytes(),
                leaf.control_block,
            ],
        )


class MultisigFinalizer(Finalizer):
    """Signatures in reverse key order (empty for the keys that did not
    sign), then the script and the control block

    Raises SigningError while fewer than minimum signatures are present.
    """

    kind = FinalizerKind.MULTISIG

    def __init__(self, minimum: int):
        self.minimum = minimum

    def signature_count(self, psbt_input: PSBTInput, index: int) -> int:
        leaf = _leaf(psbt_input, index)
        return sum(
            1 for key in _leaf_keys(leaf.script) if _script_sig(psbt_input, leaf, key) is not None
        )

    def can_finalize(self, psbt: PSBT, index: int) -> bool:
        return self.signature_count(psbt.inputs[index], index) >= self.minimum

    def finalize(self, psbt: PSBT, index: int) -> None:
        psbt_input = psbt.inputs[index]
        leaf = _leaf(psbt_input, index)

        keys = _leaf_keys(leaf.script)
        signatures = [_script_sig(psbt_input, leaf, key) for key in keys]
        present = sum(1 for sig in signatures if sig is not None)
        if present < self.minimum:
            raise SigningError(
                f"Input {index} has {present} of {self.minimum} required signatures", index
            )

        witness = [sig if sig is not None else b"" for sig in reversed(signatures)]
        witness += [leaf.script.to_bytes(), leaf.control_block]
        psbt.finalize_input(index, witness)


class HashCommitmentFinalizer(Finalizer):
    """[sig, chunk_1 .. chunk_N, witness_script] for hash committed P2WSH
    outputs"""

    kind = FinalizerKind.HASH_COMMITMENT

    def __init__(self, public_key: bytes, data_chunks: Sequence[bytes]):
        self.public_key = to_bytes(public_key)
        self.data_chunks = [to_bytes(chunk) for chunk in data_chunks]

    def finalize(self, psbt: PSBT, index: int) -> None:
        psbt_input = psbt.inputs[index]
        if psbt_input.witness_script is None:
            raise SigningError(f"Input {index} has no witness script", index)
        signature = psbt_input.partial_sigs.get(self.public_key)
        if signature is None:
            raise SigningError(f"Input {index} is missing its signature", index)

        witness = [signature] + self.data_chunks + [psbt_input.witness_script.to_bytes()]
        psbt.finalize_input(index, witness)


class CustomFinalizer(Finalizer):
    """User witnesses, then the collected signatures, then the script and
    the control block, optionally followed by an annex"""

    kind = FinalizerKind.CUSTOM

    def __init__(
        self,
        witnesses: Sequence[Union[bytes, str]],
        annex: Optional[Union[bytes, str]] = None,
    ):
        self.witnesses = [to_bytes(w) for w in witnesses]
        if annex is not None:
            annex = to_bytes(annex)
            if not annex:
                annex = None
            elif annex[0] != 0x50:
                annex = b"\x50" + annex
        self.annex = annex

    def finalize(self, psbt: PSBT, index: int) -> None:
        psbt_input = psbt.inputs[index]
        leaf = _leaf(psbt_input, index)

        if not psbt_input.tap_script_sig:
            raise SigningError(f"Input {index} has no tap script signature", index)

        witness = list(self.witnesses)
        witness += list(psbt_input.tap_script_sig.values())
        witness += [leaf.script.to_bytes(), leaf.control_block]
        if self.annex is not None:
            witness.append(self.annex)
        psbt.finalize_input(index, witness)


class StandardFinalizer(Finalizer):
    """Finalizes single key spends

    |  taproot key path      [sig]
    |  taproot leaf spend    [sig, script, control block]
    |  P2WPKH                [sig, pubkey]
    |  P2SH-P2WPKH           [sig, pubkey] and scriptSig <redeem script>
    |  P2WSH (single key)    [sig, witness script]
    |  P2PKH                 scriptSig <sig> <pubkey>
    """

    kind = FinalizerKind.STANDARD

    def finalize(self, psbt: PSBT, index: int) -> None:
        psbt_input = psbt.inputs[index]

        if psbt_input.tap_leaf_script:
            leaf = psbt_input.tap_leaf_script[0]
            if not psbt_input.tap_script_sig:
                raise SigningError(f"Input {index} has no tap script signature", index)
            signature = next(iter(psbt_input.tap_script_sig.values()))
            psbt.finalize_input(
                index, [signature, leaf.script.to_bytes(), leaf.control_block]
            )
            return

        if psbt_input.tap_key_sig is not None:
            psbt.finalize_input(index, [psbt_input.tap_key_sig])
            return

        if not psbt_input.partial_sigs:
            raise SigningError(f"Input {index} is not signed", index)
        public_key, signature = next(iter(psbt_input.partial_sigs.items()))

        spent = psbt_input.spent_output(psbt.tx.inputs[index].txout_index)
        if spent is None:
            raise SigningError(f"Input {index} has no utxo data", index)
        script_pub_key = spent.script_pubkey

        if script_pub_key.is_p2wpkh():
            psbt.finalize_input(index, [signature, public_key])
        elif script_pub_key.is_p2sh() and psbt_input.redeem_script is not None:
            redeem = psbt_input.redeem_script
            if not redeem.is_p2wpkh():
                raise SigningError(f"Unsupported P2SH redeem script for input {index}", index)
            psbt.finalize_input(
                index, [signature, public_key], script_sig=Script([redeem.to_bytes()])
            )
        elif script_pub_key.is_p2wsh() and psbt_input.witness_script is not None:
            psbt.finalize_input(index, [signature, psbt_input.witness_script.to_bytes()])
        elif script_pub_key.is_p2pkh():
            psbt.finalize_input(index, script_sig=Script([signature, public_key]))
        else:
            raise SigningError(
                f"Cannot finalize input {index} of type {script_pub_key.get_script_type()}",
                index,
            )


STANDARD_FINALIZER = StandardFinalizer()
