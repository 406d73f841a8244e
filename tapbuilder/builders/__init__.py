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

from tapbuilder.builders.base import PaymentOutput, TransactionBuilder
from tapbuilder.builders.cancel import CancelTransaction
from tapbuilder.builders.consolidated import ConsolidatedInteractionTransaction
from tapbuilder.builders.custom import CustomScriptTransaction
from tapbuilder.builders.deployment import DeploymentTransaction
from tapbuilder.builders.factory import (
    DeploymentResponse,
    InteractionResponse,
    TransactionFactory,
)
from tapbuilder.builders.funding import FundingTransaction
from tapbuilder.builders.interaction import InteractionTransaction
from tapbuilder.builders.multisign import MultiSignTransaction
from tapbuilder.builders.shared import SharedInteractionTransaction

__all__ = [
    'PaymentOutput',
    'TransactionBuilder',
    'SharedInteractionTransaction',
    'FundingTransaction',
    'InteractionTransaction',
    'DeploymentTransaction',
    'MultiSignTransaction',
    'ConsolidatedInteractionTransaction',
    'CustomScriptTransaction',
    'CancelTransaction',
    'TransactionFactory',
    'InteractionResponse',
    'DeploymentResponse',
]
