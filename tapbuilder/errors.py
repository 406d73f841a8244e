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

from typing import Optional


class TransactionBuilderError(Exception):
    """Base class of every error raised by tapbuilder"""


class ParameterError(TransactionBuilderError, ValueError):
    """Raised when an argument has an invalid value, length or format.

    Parameter errors are detected before any network or signing work starts.
    """


class BuilderStateError(ParameterError):
    """Raised when an operation is called out of order, e.g. building twice"""


class ResourceError(TransactionBuilderError):
    """Raised when the available funds cannot satisfy the transaction"""


class InsufficientFundsError(ResourceError):
    """Raised when the selected UTXOs do not cover the requested amount

    Attributes
    ----------
    available : int
        the total value that could be gathered in satoshis
    requested : int
        the requested value in satoshis
    """

    def __init__(self, message: str, available: int = 0, requested: int = 0):
        self.available = available
        self.requested = requested
        super().__init__(message)


class DustError(ResourceError):
    """Raised when an output or the refund would be below the dust limit"""


class FeeLossError(ResourceError):
    """Raised when fees would consume too large a share of the inputs"""


class SigningError(TransactionBuilderError):
    """Raised when an input cannot be signed or finalized

    Attributes
    ----------
    input_index : int or None
        the index of the failing input, if known
    """

    def __init__(self, message: str, input_index: Optional[int] = None):
        self.input_index = input_index
        super().__init__(message)


class ScriptIntegrityError(TransactionBuilderError):
    """Raised when a compiled script does not round-trip or exceeds a
    witness policy limit"""


class RPCError(TransactionBuilderError):
    """Exception raised for errors when interfacing with the Bitcoin node.

    Attributes:
        message -- explanation of the error
        code -- error code returned by the node
    """

    def __init__(self, message: str, code: Optional[int] = None):
        self.message = message
        self.code = code
        super().__init__(f"RPC Error ({code}): {message}" if code else message)
