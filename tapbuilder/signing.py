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
from typing import Mapping, Optional, Sequence

from loguru import logger

from tapbuilder.constants import SIGHASH_ALL, SIGNING_BATCH_SIZE, TAPROOT_SIGHASH_ALL
from tapbuilder.ecc import EccBackend
from tapbuilder.errors import ParameterError, SigningError, TransactionBuilderError
from tapbuilder.finalizers import STANDARD_FINALIZER, Finalizer
from tapbuilder.hashes import hash160
from tapbuilder.keys import P2pkhAddress
from tapbuilder.psbt import PSBT, PSBTInput
from tapbuilder.rotation import (
    SignerResolver,
    can_sign_non_taproot_input,
    is_taproot_input,
    matches_taproot_input,
    pubkey_in_script,
)
from tapbuilder.script import Script
from tapbuilder.setup import resolve_network
from tapbuilder.signers import KeyPairSigner, Signer, resolve_signature, tweak_signer
from tapbuilder.taproot import tapleaf_tagged_hash
from tapbuilder.utils import b_to_h, x_only
from tapbuilder.utxo import UTXO


class SigningCoordinator:
    """Signs and finalizes the inputs of a PSBT

    Input 0 is processed on its own when it spends a script leaf; the
    remaining inputs are signed concurrently in batches. Each input is
    finalized right after it is signed.

    Parameters
    ----------
    resolver : SignerResolver
        picks the signer of each input
    ecc : EccBackend, optional
        the curve backend
    network : str, optional
        the network of the transaction
    ignore_signature_errors : bool
        log failing inputs and leave them unfinalized instead of raising
    batch_size : int
        maximum number of inputs signed concurrently

    Attributes
    ----------
    finalized : bool
        true once every input of the last processed PSBT is final
    """

    def __init__(
        self,
        resolver: SignerResolver,
        ecc: Optional[EccBackend] = None,
        network: Optional[str] = None,
        ignore_signature_errors: bool = False,
        batch_size: int = SIGNING_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ParameterError("Batch size must be positive")
        self.resolver = resolver
        self.ecc = ecc or EccBackend()
        self.network = resolve_network(network)
        self.ignore_signature_errors = ignore_signature_errors
        self.batch_size = batch_size
        self.finalized = False
        # (public key, merkle root) -> tweaked signer
        self._tweaked: dict[tuple[bytes, bytes], KeyPairSigner] = {}

    def tweaked_signer(self, signer: Signer, merkle_root: Optional[bytes] = None) -> KeyPairSigner:
        """Returns the key path signer of a taproot output, cached for the
        life of the coordinator"""
        cache_key = (bytes(signer.public_key), merkle_root or b"")
        tweaked = self._tweaked.get(cache_key)
        if tweaked is None:
            tweaked = tweak_signer(signer, self.ecc, merkle_root)
            self._tweaked[cache_key] = tweaked
        return tweaked

    async def sign_and_finalize(
        self,
        psbt: PSBT,
        utxos: Sequence[Optional[UTXO]],
        finalizers: Optional[Mapping[int, Finalizer]] = None,
        extra_signers: Optional[Mapping[int, Sequence[Signer]]] = None,
    ) -> bool:
        """Signs and finalizes every input and returns True if all of them
        are final"""
        return await self._run(psbt, utxos, finalizers or {}, extra_signers or {}, True)

    async def sign_inputs(
        self,
        psbt: PSBT,
        utxos: Sequence[Optional[UTXO]],
        extra_signers: Optional[Mapping[int, Sequence[Signer]]] = None,
    ) -> None:
        """Adds signatures without finalizing, for PSBTs that collect
        signatures from several parties"""
        await self._run(psbt, utxos, {}, extra_signers or {}, False)

    async def _run(
        self,
        psbt: PSBT,
        utxos: Sequence[Optional[UTXO]],
        finalizers: Mapping[int, Finalizer],
        extra_signers: Mapping[int, Sequence[Signer]],
        finalize: bool,
    ) -> bool:
        if len(utxos) != len(psbt.inputs):
            raise ParameterError("Every input requires its UTXO")

        remaining = list(range(len(psbt.inputs)))
        first = finalizers.get(0)
        if remaining and first is not None and first.is_script_path:
            await self._process(psbt, 0, utxos[0], first, extra_signers.get(0, ()), finalize)
            remaining = remaining[1:]

        for start in range(0, len(remaining), self.batch_size):
            batch = remaining[start : start + self.batch_size]
            # every input of the batch settles before the first failure is raised
            results = await asyncio.gather(
                *(
                    self._process(
                        psbt,
                        index,
                        utxos[index],
                        finalizers.get(index, STANDARD_FINALIZER),
                        extra_signers.get(index, ()),
                        finalize,
                    )
                    for index in batch
                ),
                return_exceptions=True,
            )
            errors = [result for result in results if isinstance(result, BaseException)]
            if errors:
                raise errors[0]

        self.finalized = psbt.is_finalized()
        logger.debug(f"Signed {len(psbt.inputs)} inputs, finalized: {self.finalized}")
        return self.finalized

    async def _process(
        self,
        psbt: PSBT,
        index: int,
        utxo: Optional[UTXO],
        finalizer: Finalizer,
        extra_signers: Sequence[Signer],
        finalize: bool,
    ) -> None:
        try:
            if psbt.is_input_finalized(index):
                return
            await self.sign_input(psbt, index, utxo, extra_signers, finalizer.annex)
            if finalize:
                finalizer.finalize(psbt, index)
        except (TransactionBuilderError, ValueError) as e:
            if self.ignore_signature_errors:
                logger.warning(f"Failed to sign input {index}: {e}")
                return
            if isinstance(e, SigningError):
                raise
            raise SigningError(f"Failed to sign input {index}: {e}", index) from e

    async def sign_input(
        self,
        psbt: PSBT,
        index: int,
        utxo: Optional[UTXO],
        extra_signers: Sequence[Signer] = (),
        annex: Optional[bytes] = None,
    ) -> None:
        """Adds the signatures of one input to the PSBT

        |  script path (P2TR, P2MR)  tap_script_sig from the untweaked signers
        |  key path (P2TR)           tap_key_sig from the tweaked signer
        |  everything else           partial_sigs (ECDSA)
        """
        signer = self.resolver.resolve(utxo)
        psbt_input = psbt.inputs[index]

        if psbt_input.tap_leaf_script:
            await self._sign_script_path(psbt, index, [*extra_signers, signer], annex)
        elif is_taproot_input(psbt_input):
            await self._sign_key_path(psbt, index, signer, annex)
        else:
            await self._sign_ecdsa(psbt, index, signer)

    def _taproot_sighash(self, psbt_input: PSBTInput) -> int:
        if psbt_input.sighash_type is None:
            return TAPROOT_SIGHASH_ALL
        return psbt_input.sighash_type

    async def _schnorr(self, signer: Signer, digest: bytes, index: int) -> bytes:
        if not signer.can_sign_schnorr:
            raise SigningError(f"Signer {b_to_h(signer.public_key)} cannot sign schnorr", index)
        signature = await resolve_signature(signer.sign_schnorr(digest))
        if not self.ecc.verify_schnorr(x_only(signer.public_key), digest, signature):
            raise SigningError(f"Invalid schnorr signature for input {index}", index)
        return signature

    async def _sign_script_path(
        self, psbt: PSBT, index: int, candidates: Sequence[Signer], annex: Optional[bytes]
    ) -> None:
        psbt_input = psbt.inputs[index]
        leaf = psbt_input.tap_leaf_script[0]
        leaf_hash = tapleaf_tagged_hash(leaf.script, leaf.leaf_version)
        sighash = self._taproot_sighash(psbt_input)
        scripts, amounts = psbt.spent_scripts_and_amounts()
        digest = psbt.tx.get_transaction_taproot_digest(
            index,
            scripts,
            amounts,
            ext_flag=1,
            script=leaf.script,
            leaf_ver=leaf.leaf_version,
            sighash=sighash,
            annex=annex,
        )

        signed = 0
        seen: set[bytes] = set()
        for candidate in candidates:
            xonly = x_only(candidate.public_key)
            if xonly in seen or not pubkey_in_script(candidate.public_key, leaf.script):
                continue
            seen.add(xonly)
            signature = await self._schnorr(candidate, digest, index)
            if sighash != TAPROOT_SIGHASH_ALL:
                signature += bytes([sighash])
            psbt_input.tap_script_sig[(xonly, leaf_hash)] = signature
            signed += 1

        if not signed:
            raise SigningError(f"No signer matches the leaf script of input {index}", index)

    async def _sign_key_path(
        self, psbt: PSBT, index: int, signer: Signer, annex: Optional[bytes]
    ) -> None:
        psbt_input = psbt.inputs[index]
        if not matches_taproot_input(psbt_input, signer.public_key, self.ecc):
            raise SigningError(
                f"Signer {b_to_h(signer.public_key)} cannot sign taproot input {index}", index
            )

        tweaked = self.tweaked_signer(signer, psbt_input.tap_merkle_root)
        sighash = self._taproot_sighash(psbt_input)
        scripts, amounts = psbt.spent_scripts_and_amounts()
        digest = psbt.tx.get_transaction_taproot_digest(
            index, scripts, amounts, ext_flag=0, sighash=sighash, annex=annex
        )
        signature = await self._schnorr(tweaked, digest, index)
        if sighash != TAPROOT_SIGHASH_ALL:
            signature += bytes([sighash])
        psbt_input.tap_key_sig = signature

    async def _sign_ecdsa(self, psbt: PSBT, index: int, signer: Signer) -> None:
        psbt_input = psbt.inputs[index]
        txout_index = psbt.tx.inputs[index].txout_index
        spent = psbt_input.spent_output(txout_index)
        if spent is None:
            raise SigningError(f"Input {index} has no utxo data", index)
        public_key = bytes(signer.public_key)
        script_pub_key = spent.script_pubkey

        if script_pub_key.is_p2sh() and psbt_input.redeem_script is None:
            # nested P2WPKH of the signer key
            nested = Script(["OP_0", hash160(public_key)])
            if nested.to_p2sh_script_pub_key() != script_pub_key:
                raise SigningError(f"Input {index} requires its redeem script", index)
            psbt_input.redeem_script = nested

        if not can_sign_non_taproot_input(psbt_input, public_key, txout_index):
            raise SigningError(
                f"Signer {b_to_h(public_key)} cannot sign input {index}", index
            )

        sighash = psbt_input.sighash_type or SIGHASH_ALL
        p2pkh_code = P2pkhAddress(hash160=b_to_h(hash160(public_key))).to_script_pub_key()

        if script_pub_key.is_p2wpkh() or (
            psbt_input.redeem_script is not None and psbt_input.redeem_script.is_p2wpkh()
        ):
            digest = psbt.tx.get_transaction_segwit_digest(index, p2pkh_code, spent.amount, sighash)
        elif psbt_input.witness_script is not None:
            digest = psbt.tx.get_transaction_segwit_digest(
                index, psbt_input.witness_script, spent.amount, sighash
            )
        elif script_pub_key.is_p2pkh():
            digest = psbt.tx.get_transaction_digest(index, script_pub_key, sighash)
        elif psbt_input.redeem_script is not None:
            digest = psbt.tx.get_transaction_digest(index, psbt_input.redeem_script, sighash)
        else:
            raise SigningError(
                f"Unsupported input type {script_pub_key.get_script_type()} at {index}", index
            )

        signature = await resolve_signature(signer.sign(digest))
        if not self.ecc.verify_ecdsa(public_key, digest, signature):
            raise SigningError(f"Invalid signature for input {index}", index)
        psbt_input.partial_sigs[public_key] = signature + bytes([sighash])

    def sign_and_finalize_sync(
        self,
        psbt: PSBT,
        utxos: Sequence[Optional[UTXO]],
        finalizers: Optional[Mapping[int, Finalizer]] = None,
        extra_signers: Optional[Mapping[int, Sequence[Signer]]] = None,
    ) -> bool:
        return asyncio.run(self.sign_and_finalize(psbt, utxos, finalizers, extra_signers))
