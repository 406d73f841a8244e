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

from tapbuilder.assembler import TransactionAssembler
from tapbuilder.builders.shared import SharedInteractionTransaction
from tapbuilder.errors import ParameterError
from tapbuilder.finalizers import STANDARD_FINALIZER, Finalizer
from tapbuilder.script import Script
from tapbuilder.signers import Signer


class CancelTransaction(SharedInteractionTransaction):
    """Recovers the funds of a stuck interaction through the lock leaf

    The tree is rebuilt from the compiled target script of the interaction
    and input 0 spends the lock leaf with [sig, lock script, control
    block]. Every input is sent back to `to` minus the fee.

    Parameters
    ----------
    compiled_target_script : bytes or str
        the target script committed by the stuck transaction
    to : str, optional
        receives the funds, defaults to the refund address
    """

    LOCK_LEAF_INDEX = 1

    def __init__(
        self,
        compiled_target_script: Union[bytes, str, Script, None] = None,
        to: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        if compiled_target_script is None:
            raise ParameterError("Compiled target script is required")
        if kwargs.get("disable_auto_refund"):
            raise ParameterError("A cancel transaction always refunds")
        if to is not None:
            kwargs["from_address"] = to
        super().__init__(**kwargs)

        if not isinstance(compiled_target_script, Script):
            compiled_target_script = Script.from_raw(compiled_target_script)
        self._commit(compiled_target_script)
        self.to = self.from_address
        self.tap_leaf_script = self.script_tree.tap_leaf_script(
            self.LOCK_LEAF_INDEX, self.internal_key, self.variant, self.ecc
        )

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        """Nothing but the refund is paid"""

    def _finalizers(self) -> Mapping[int, Finalizer]:
        return {0: STANDARD_FINALIZER}

    def _extra_signers(self) -> Mapping[int, Sequence[Signer]]:
        return {}
