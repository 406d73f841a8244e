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
from tapbuilder.finalizers import CustomFinalizer, Finalizer
from tapbuilder.generators import CustomGenerator


class CustomScriptTransaction(SharedInteractionTransaction):
    """Spends a user supplied leaf script

    The witness of input 0 is the given witnesses, then the signatures of
    the signers whose keys appear in the script, then the script and the
    control block, and optionally an annex.

    Parameters
    ----------
    script : list
        the leaf script tokens
    witnesses : list[bytes]
        stack items placed below the signatures
    annex : bytes, optional
        0x50 is prepended if missing
    to : str, optional
        receives the reward, defaults to the script address
    """

    def __init__(
        self,
        script: Optional[Sequence[Any]] = None,
        witnesses: Optional[Sequence[Union[bytes, str]]] = None,
        annex: Optional[Union[bytes, str]] = None,
        to: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not script:
            raise ParameterError("Bitcoin script is required")
        if witnesses is None:
            raise ParameterError("Witness(es) are required")

        self.finalizer = CustomFinalizer(witnesses, annex)
        self._commit(CustomGenerator.compile(script))
        self.to = to or self.script_address

    def _add_outputs(self, assembler: TransactionAssembler) -> None:
        assembler.add_output(self.get_reward(), address=self.to)

    def _finalizers(self) -> Mapping[int, Finalizer]:
        return {0: self.finalizer}
