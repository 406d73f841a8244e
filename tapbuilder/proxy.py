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

from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union, cast

from bitcoinrpc.authproxy import AuthServiceProxy
from loguru import logger

from tapbuilder.constants import NETWORK_DEFAULT_PORTS
from tapbuilder.errors import ParameterError, RPCError
from tapbuilder.setup import resolve_network
from tapbuilder.signers import Signer
from tapbuilder.transactions import Transaction
from tapbuilder.utils import to_satoshis
from tapbuilder.utxo import UTXO, select_utxos

JSONDict = Dict[str, Any]
JSONList = List[Any]


class NodeProxy:
    """Bitcoin node proxy used to fetch UTXOs and broadcast transactions

    Attributes
    ----------
    proxy : object
        an instance of bitcoinrpc.authproxy.AuthServiceProxy
    network : str
        the network of the node

    Methods
    -------
    call(method, *params)
        Calls any RPC method with provided parameters
    list_unspent(minconf, maxconf, addresses)
        Returns the wallet UTXOs as reported by the node
    fetch_utxos(address, minimum_amount, requested_amount)
        Returns the UTXOs of an address that pay for requested_amount
    broadcast(tx)
        Sends a signed transaction
    """

    def __init__(
        self,
        rpcuser: str,
        rpcpassword: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: int = 30,
        use_https: bool = False,
        network: Optional[str] = None,
    ) -> None:
        """Connects to a Bitcoin node using provided credentials.

        Parameters
        ----------
        rpcuser : str
            RPC username as defined in bitcoin.conf
        rpcpassword : str
            RPC password as defined in bitcoin.conf
        host : str, optional
            Host where the Bitcoin node resides; defaults to 127.0.0.1
        port : int, optional
            Port to connect to; uses default ports according to network
        timeout : int, optional
            Timeout for RPC calls in seconds; defaults to 30
        use_https : bool, optional
            Whether to use HTTPS for the connection; defaults to False

        Raises
        ------
        ParameterError
            If rpcuser and/or rpcpassword are not specified
        """
        if not rpcuser or not rpcpassword:
            raise ParameterError("rpcuser or rpcpassword is missing")

        self.network = resolve_network(network)
        if not host:
            host = "127.0.0.1"
        if not port:
            port = NETWORK_DEFAULT_PORTS[self.network]

        protocol = "https" if use_https else "http"
        service_url = f"{protocol}://{rpcuser}:{rpcpassword}@{host}:{port}"

        self.proxy = AuthServiceProxy(service_url, timeout=timeout)

    def __call__(self, method: str, *params: Any) -> Any:
        return self.call(method, *params)

    def call(self, method: str, *params: Any) -> Any:
        """Call any Bitcoin Core RPC method.

        Raises
        ------
        RPCError
            If the RPC call fails
        """
        try:
            rpc_method = getattr(self.proxy, method)
            return rpc_method(*params)
        except Exception as e:
            # Extract error code if available
            error_code = None
            error = getattr(e, "error", None)
            if isinstance(error, dict) and "code" in error:
                error_code = error["code"]
            logger.debug(f"RPC {method} failed: {e}")
            raise RPCError(str(e), error_code) from e

    def get_block_count(self) -> int:
        return cast(int, self.call("getblockcount"))

    def list_unspent(
        self,
        minconf: int = 1,
        maxconf: int = 9999999,
        addresses: Optional[Sequence[str]] = None,
        include_unsafe: bool = True,
    ) -> JSONList:
        """List unspent transaction outputs.

        Returns
        -------
        list
            listunspent rows (txid, vout, address, scriptPubKey, amount, ...)
        """
        result = self.call("listunspent", minconf, maxconf, list(addresses or []), include_unsafe)
        return cast(JSONList, result)

    def fetch_utxos(
        self,
        address: str,
        minimum_amount: int = 0,
        requested_amount: int = 0,
        signer: Optional[Signer] = None,
        minconf: int = 0,
    ) -> List[UTXO]:
        """Returns UTXOs of an address that together exceed requested_amount

        Rows are taken in the order the node returns them.

        Raises
        ------
        InsufficientFundsError
            if the address does not hold enough funds
        RPCError
            If the RPC call fails
        """
        rows = self.list_unspent(minconf=minconf, addresses=[address])
        utxos = [UTXO.from_dict(row, signer=signer) for row in rows]
        return select_utxos(utxos, minimum_amount, requested_amount)

    def get_raw_transaction(
        self, txid: str, verbose: bool = False, blockhash: Optional[str] = None
    ) -> Union[str, JSONDict]:
        """Get a raw transaction, as hex or as a decoded object when verbose"""
        if blockhash:
            result = self.call("getrawtransaction", txid, verbose, blockhash)
        else:
            result = self.call("getrawtransaction", txid, verbose)
        return cast(Union[str, JSONDict], result)

    def send_raw_transaction(self, hex_string: str, max_fee_rate: Optional[float] = None) -> str:
        """Submit a raw transaction to the network and returns its txid"""
        if max_fee_rate is not None:
            result = self.call("sendrawtransaction", hex_string, max_fee_rate)
        else:
            result = self.call("sendrawtransaction", hex_string)
        return cast(str, result)

    def broadcast(self, tx: Union[Transaction, str]) -> str:
        """Sends a signed Transaction (or its hex) and returns the txid"""
        hex_string = tx.to_hex() if isinstance(tx, Transaction) else tx
        txid = self.send_raw_transaction(hex_string)
        logger.debug(f"Broadcast transaction {txid}")
        return txid

    def test_mempool_accept(
        self, raw_txs: Sequence[Union[Transaction, str]], max_fee_rate: Optional[float] = None
    ) -> JSONList:
        """Checks whether the transactions would be accepted by the mempool"""
        hexes = [tx.to_hex() if isinstance(tx, Transaction) else tx for tx in raw_txs]
        if max_fee_rate is not None:
            result = self.call("testmempoolaccept", hexes, max_fee_rate)
        else:
            result = self.call("testmempoolaccept", hexes)
        return cast(JSONList, result)

    def estimate_smart_fee(self, conf_target: int, estimate_mode: str = "CONSERVATIVE") -> JSONDict:
        """Estimate the fee rate (BTC/kvB) for confirmation within conf_target
        blocks"""
        result = self.call("estimatesmartfee", conf_target, estimate_mode)
        return cast(JSONDict, result)

    def estimate_fee_rate(self, conf_target: int = 6, fallback: Decimal = Decimal(1)) -> Decimal:
        """Returns estimatesmartfee converted to sat/vB, or the fallback if
        the node has no estimate"""
        estimate = self.estimate_smart_fee(conf_target)
        if "feerate" not in estimate:
            logger.warning(f"No fee estimate available, using {fallback} sat/vB")
            return fallback
        return Decimal(to_satoshis(Decimal(str(estimate["feerate"])))) / 1000
