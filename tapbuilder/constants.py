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

NETWORK_DEFAULT_PORTS = {
    "mainnet": 8332,
    "signet": 38332,
    "testnet": 18332,
    "regtest": 18443,
}

NETWORK_WIF_PREFIXES = {
    "mainnet": b"\x80",
    "signet": b"\xef",
    "testnet": b"\xef",
    "regtest": b"\xef",
}

NETWORK_P2PKH_PREFIXES = {
    "mainnet": b"\x00",
    "signet": b"\x6f",
    "testnet": b"\x6f",
    "regtest": b"\x6f",
}

NETWORK_P2SH_PREFIXES = {
    "mainnet": b"\x05",
    "signet": b"\xc4",
    "testnet": b"\xc4",
    "regtest": b"\xc4",
}

NETWORK_SEGWIT_PREFIXES = {
    "mainnet": "bc",
    "signet": "tb",
    "testnet": "tb",
    "regtest": "bcrt",
}

# BIP44 coin types, used for derivation paths
NETWORK_COIN_TYPES = {
    "mainnet": 0,
    "signet": 1,
    "testnet": 1,
    "regtest": 1,
}


# Constants for address types
P2PKH_ADDRESS = "p2pkh"
P2SH_ADDRESS = "p2sh"
P2WPKH_ADDRESS_V0 = "p2wpkhv0"
P2WSH_ADDRESS_V0 = "p2wshv0"
P2TR_ADDRESS_V1 = "p2trv1"
P2MR_ADDRESS_V2 = "p2mrv2"

# Taproot output variants
VARIANT_P2TR = "p2tr"
VARIANT_P2MR = "p2mr"


# Constants related to transaction signature types
TAPROOT_SIGHASH_ALL = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80


# Sequence and locktime
DEFAULT_TX_LOCKTIME = b"\x00\x00\x00\x00"

EMPTY_TX_SEQUENCE = b"\x00\x00\x00\x00"
DEFAULT_TX_SEQUENCE = b"\xff\xff\xff\xff"

# 0xfffffffd, signals opt-in replace-by-fee (BIP125)
RBF_TX_SEQUENCE = b"\xfd\xff\xff\xff"


# Constants related to transaction versions and scripts
LEAF_VERSION_TAPSCRIPT = 0xC0

# first byte of a P2MR control block; there is no parity to encode
P2MR_CONTROL_BYTE = LEAF_VERSION_TAPSCRIPT | 0x01

# TX version 2 was introduced in BIP-68 with relative locktime -- tx v1
# does not support relative locktime
DEFAULT_TX_VERSION = b"\x02\x00\x00\x00"

# x-only key with no known discrete logarithm (BIP341), used when a tree
# must not be spendable through the key path
NUMS_INTERNAL_KEY = bytes.fromhex(
    "50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0"
)


# Monetary constants
SATOSHIS_PER_BITCOIN = 100000000
NEGATIVE_SATOSHI = -1

MINIMUM_DUST = 330
MINIMUM_AMOUNT_REWARD = 540

# consolidation flows refuse to burn more than this share of the inputs
MAX_FEE_LOSS_PERCENT = 60


# Signing
SIGNING_BATCH_SIZE = 20


# Calldata embedding
DATA_CHUNK_SIZE = 512
MAX_CALLDATA_SIZE = 1024 * 1024
CONTRACT_SECRET_SIZE = 32
MAGIC = b"op"

# Contract deployment
MAXIMUM_CONTRACT_SIZE = 128 * 1024
DEPLOYMENT_VERSION = 0x00

# relative timelock (in blocks) of the challenge reward output
REWARD_TIMELOCK_BLOCKS = 75


# Hash-committed (CHCT) P2WSH policy limits
MAX_CHUNK_SIZE = 80
MAX_STACK_ITEMS = 100
MAX_WITNESS_SIZE = 1650
MAX_STANDARD_WEIGHT = 400000
MIN_OUTPUT_VALUE = 330
BYTES_PER_COMMITMENT = 23
SIG_CHECK_BYTES = 35
