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
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping, Optional, Sequence

from loguru import logger

from tapbuilder.errors import InsufficientFundsError, ParameterError
from tapbuilder.script import Script
from tapbuilder.utils import to_bytes, to_satoshis

if TYPE_CHECKING:
    from tapbuilder.signers import Signer
    from tapbuilder.transactions import Transaction


@dataclass(frozen=True)
class UTXO:
    """An unspent output available as an input

    Attributes
    ----------
    transaction_id : str
        the id (hex, display order) of the transaction that created it
    output_index : int
        the output index in that transaction
    value : int
        the amount in satoshis
    script_pub_key_hex : str
        the locking script
    address : str, optional
        the address of the output, used for signer rotation
    witness_script, redeem_script : bytes, optional
        scripts required to spend P2WSH and P2SH outputs
    non_witness_utxo : bytes, optional
        the full previous transaction, for legacy inputs
    signer : Signer, optional
        signs this input instead of the transaction's signer
    """

    transaction_id: str
    output_index: int
    value: int
    script_pub_key_hex: str
    address: Optional[str] = None
    witness_script: Optional[bytes] = None
    redeem_script: Optional[bytes] = None
    non_witness_utxo: Optional[bytes] = None
    signer: Optional["Signer"] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if len(self.transaction_id) != 64:
            raise ParameterError(f"Invalid transaction id: {self.transaction_id}")
        if self.output_index < 0:
            raise ParameterError("Output index cannot be negative")
        if self.value < 0:
            raise ParameterError("UTXO value cannot be negative")
        if not self.script_pub_key_hex:
            raise ParameterError("Address is required")
        for name in ("witness_script", "redeem_script", "non_witness_utxo"):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, to_bytes(value))

    @property
    def outpoint(self) -> tuple[str, int]:
        return (self.transaction_id, self.output_index)

    @property
    def script_pub_key(self) -> Script:
        return Script.from_raw(self.script_pub_key_hex)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], signer: Optional["Signer"] = None) -> "UTXO":
        """Creates a UTXO from a listunspent row (amount in BTC) or from an
        indexer row (value in satoshis)"""
        if "txid" in data:
            script = data["scriptPubKey"]
            return cls(
                transaction_id=data["txid"],
                output_index=int(data["vout"]),
                value=to_satoshis(data["amount"]),
                script_pub_key_hex=script,
                address=data.get("address"),
                witness_script=data.get("witnessScript"),
                redeem_script=data.get("redeemScript"),
                signer=signer,
            )

        script = data["scriptPubKey"]
        address = data.get("address")
        if isinstance(script, Mapping):
            address = address or script.get("address")
            script = script["hex"]
        return cls(
            transaction_id=data["transactionId"],
            output_index=int(data["outputIndex"]),
            value=int(data["value"]),
            script_pub_key_hex=script,
            address=address,
            witness_script=data.get("witnessScript"),
            redeem_script=data.get("redeemScript"),
            non_witness_utxo=data.get("nonWitnessUtxo") or data.get("raw"),
            signer=signer,
        )


class UTXOManager:
    """Keeps track of outputs spent by transactions built locally but not
    yet confirmed, and of the change those transactions create"""

    def __init__(self) -> None:
        self.spent: set[tuple[str, int]] = set()
        self.pending: list[UTXO] = []

    def mark_spent(self, tx: "Transaction") -> None:
        """Records every input of the transaction as spent"""
        for txin in tx.inputs:
            self.spent.add((txin.txid, txin.txout_index))
        self.pending = [u for u in self.pending if u.outpoint not in self.spent]

    def add_pending(self, utxos: Iterable[UTXO]) -> None:
        for utxo in utxos:
            if utxo.outpoint not in self.spent:
                self.pending.append(utxo)

    def is_spent(self, utxo: UTXO) -> bool:
        return utxo.outpoint in self.spent

    def filter_unspent(self, utxos: Iterable[UTXO], use_pending: bool = False) -> list[UTXO]:
        result = [u for u in utxos if not self.is_spent(u)]
        if use_pending:
            known = {u.outpoint for u in result}
            result += [u for u in self.pending if u.outpoint not in known]
        return result

    def clean(self) -> None:
        self.spent.clear()
        self.pending.clear()


SelectionStrategy = Callable[[Sequence[UTXO], int], list[UTXO]]


def first_fit(utxos: Sequence[UTXO], requested_amount: int) -> list[UTXO]:
    """Accumulates in the given order until the total exceeds the request"""
    selected = []
    total = 0
    for utxo in utxos:
        selected.append(utxo)
        total += utxo.value
        if total > requested_amount:
            break
    return selected


def select_utxos(
    utxos: Sequence[UTXO],
    min_amount_per_utxo: int,
    requested_amount: int,
    spent: Optional[Iterable[tuple[str, int]]] = None,
    strategy: SelectionStrategy = first_fit,
) -> list[UTXO]:
    """Selects the inputs that pay for requested_amount

    Raises
    ------
    InsufficientFundsError
        if no UTXO is worth at least min_amount_per_utxo or the selected
        total does not reach the requested amount
    """
    spent_set = set(spent or ())
    available = [u for u in utxos if u.outpoint not in spent_set]
    candidates = [u for u in available if u.value >= min_amount_per_utxo]
    if not candidates:
        raise InsufficientFundsError(
            "No UTXO found (minAmount)", available=0, requested=requested_amount
        )

    selected = strategy(candidates, requested_amount)
    total = sum(u.value for u in selected)
    if total < requested_amount:
        raise InsufficientFundsError(
            f"Insufficient funds: {total} < {requested_amount}",
            available=total,
            requested=requested_amount,
        )

    logger.debug(f"Selected {len(selected)} of {len(utxos)} UTXOs for {total} sat")
    return selected


def total_value(utxos: Iterable[UTXO]) -> int:
    return sum(u.value for u in utxos)
