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

__version__ = "0.1.0"

from loguru import logger

from tapbuilder.setup import setup, get_network

from tapbuilder.ecc import EccBackend

from tapbuilder.keys import (
    PrivateKey,
    PublicKey,
    P2pkhAddress,
    P2shAddress,
    P2wpkhAddress,
    P2wshAddress,
    P2trAddress,
    P2mrAddress,
)

from tapbuilder.script import Script

from tapbuilder.transactions import (
    Transaction,
    TxInput,
    TxOutput,
    TxWitnessInput,
)

from tapbuilder.psbt import PSBT
from tapbuilder.utxo import UTXO, select_utxos
from tapbuilder.signers import KeyPairSigner, WalletSigner
from tapbuilder.rotation import create_address_rotation, disabled_address_rotation
from tapbuilder.features import ChallengeSolution, Feature, Features
from tapbuilder.taproot import build_tree, derive_address
from tapbuilder.verification import get_contract_address, verify_script_address

from tapbuilder.builders import (
    PaymentOutput,
    FundingTransaction,
    InteractionTransaction,
    DeploymentTransaction,
    MultiSignTransaction,
    ConsolidatedInteractionTransaction,
    CustomScriptTransaction,
    CancelTransaction,
    TransactionFactory,
)

from tapbuilder import proxy

logger.disable("tapbuilder")

__all__ = [
    'setup',
    'get_network',
    'EccBackend',
    'PrivateKey',
    'PublicKey',
    'P2pkhAddress',
    'P2shAddress',
    'P2wpkhAddress',
    'P2wshAddress',
    'P2trAddress',
    'P2mrAddress',
    'Script',
    'Transaction',
    'TxInput',
    'TxOutput',
    'TxWitnessInput',
    'PSBT',
    'UTXO',
    'select_utxos',
    'KeyPairSigner',
    'WalletSigner',
    'create_address_rotation',
    'disabled_address_rotation',
    'ChallengeSolution',
    'Feature',
    'Features',
    'build_tree',
    'derive_address',
    'get_contract_address',
    'verify_script_address',
    'PaymentOutput',
    'FundingTransaction',
    'InteractionTransaction',
    'DeploymentTransaction',
    'MultiSignTransaction',
    'ConsolidatedInteractionTransaction',
    'CustomScriptTransaction',
    'CancelTransaction',
    'TransactionFactory',
    'proxy'
]
