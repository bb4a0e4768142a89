"""
Transaction module.

Handles fee selection, transaction construction and signing.
"""

from relayer.tx.builder import TransactionBuilder, TransactionBuildError
from relayer.tx.fees import (
    FeePolicy,
    FeeQuote,
    FeeQuoteError,
    FixedFeePolicy,
    NodeFeePolicy,
    OperationFeePolicy,
    create_fee_policy,
)
from relayer.tx.signer import SigningError, TransactionSigner

__all__ = [
    "TransactionBuilder",
    "TransactionBuildError",
    "TransactionSigner",
    "SigningError",
    "FeePolicy",
    "FeeQuote",
    "FeeQuoteError",
    "NodeFeePolicy",
    "FixedFeePolicy",
    "OperationFeePolicy",
    "create_fee_policy",
]
