"""
Request identifier derivation.

Computes the same identifier the entry point returns from ``getRequestId``:

    keccak256(abi.encode(keccak256(pack(op)), entryPoint, chainId))

where ``pack(op)`` is the ABI encoding of the operation struct with an empty
signature, stripped of its leading offset word and its trailing zero-length
word. The signature never contributes, since it signs this identifier.
"""

from dataclasses import replace

from eth_abi import encode
from eth_utils import keccak

from relayer.core.operation import UserOperation

USER_OPERATION_ABI_TYPE = (
    "(address,uint256,bytes,bytes,uint256,uint256,uint256,uint256,uint256,address,bytes,bytes)"
)

WORD_SIZE = 32


def pack_user_op(op: UserOperation) -> bytes:
    """
    Pack an operation the way the entry point hashes it.

    Args:
        op: The operation to pack

    Returns:
        Packed bytes (signature excluded)
    """
    unsigned = replace(op, signature=b"")
    encoded = encode([USER_OPERATION_ABI_TYPE], [unsigned.to_abi_tuple()])
    return encoded[WORD_SIZE:-WORD_SIZE]


def get_user_op_hash(op: UserOperation) -> bytes:
    """Hash of the packed operation, before entry point and chain binding."""
    return keccak(pack_user_op(op))


def get_request_id(op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    """
    Derive the 32-byte request identifier of an operation.

    Args:
        op: The operation
        entry_point: Entry point contract address
        chain_id: Chain the entry point is deployed on

    Returns:
        The request identifier
    """
    return keccak(
        encode(
            ["bytes32", "address", "uint256"],
            [get_user_op_hash(op), entry_point, chain_id],
        )
    )


def request_id_hex(op: UserOperation, entry_point: str, chain_id: int) -> str:
    """Request identifier as a ``0x``-prefixed hex string."""
    return "0x" + get_request_id(op, entry_point, chain_id).hex()
