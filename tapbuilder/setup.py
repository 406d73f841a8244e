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

from tapbuilder.errors import ParameterError

NETWORK = "testnet"
networks = {"mainnet", "testnet", "signet", "regtest"}


def setup(network: str = "testnet") -> str:
    """Sets the default network used when a component is not given one
    explicitly.

    Parameters
    ----------
    network : str
        one of mainnet, testnet, signet or regtest

    Raises
    ------
    ParameterError
        if the network is unknown
    """
    global NETWORK
    if network not in networks:
        raise ParameterError(f"Unknown network: {network}")
    NETWORK = network
    return NETWORK


def get_network() -> str:
    global NETWORK
    return NETWORK


def resolve_network(network: str | None = None) -> str:
    """Returns the explicitly passed network or falls back to the default"""
    if network is None:
        return get_network()
    if network not in networks:
        raise ParameterError(f"Unknown network: {network}")
    return network


def is_mainnet() -> bool:
    return get_network() == "mainnet"


def is_testnet() -> bool:
    return get_network() == "testnet"


def is_regtest() -> bool:
    return get_network() == "regtest"
