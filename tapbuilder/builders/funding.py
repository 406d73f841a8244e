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

from typing import Any, Optional

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.base import TransactionBuilder
from tapbuilder.errors import ParameterError
from tapbuilder.script import Script
from tapbuilder.utils import to_bytes


def _public_key_destination(to: str) -> Optional[Script]:
    """Returns a P2PK script if the destination is a hex public key"""
    candidate = to[2:] if to.startswith("0x") else to
    if len(candidate) not in (66, 130):
        return None
    try:
        public_key = to_bytes(candidate)
    except ValueError:
        return None
    if public_key[0] not in (0x02, 0x03, 0x04):
        return None
    return Script([public_key, "OP_CHECKSIG"])


class FundingTransaction(TransactionBuilder):
    """Pays an amount to an address, optionally split into equal outputs,
    and refunds the rest

    Parameters
    ----------
    to : str
        the receiving address, or a hex public key for a P2PK output
    amount : int
        the total amount to send in satoshis
    split_inputs_into : int
        number of equal outputs the amount is divided into
    """

    def __init__(self, to: str, amount: int, split_inputs_into: int = 1, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not to:
            raise ParameterError("Recipient address is required")
        if amount <= 0:
            raise ParameterError("Amount must be positive")
        if split_inputs_into < 1:
            raise ParameterError("Cannot split into less than one output")
        self.to = to
        self.amount = amount
        self.split_inputs_into = split_inputs_into
        self._to_script = _public_key_destination(to)

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        split_amount = self.amount // self.split_inputs_into
        for _ in range(self.split_inputs_into):
            if self._to_script is not None:
                assembler.add_output(split_amount, script=self._to_script)
            else:
                assembler.add_output(split_amount, address=self.to)
