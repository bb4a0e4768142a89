"""
Entry point contract surface.

ABI encoding of the calls the relayer makes against the entry point, and
decoding of its return data, revert payloads and events.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

from relayer.chain.interface import ChainInterface
from relayer.core.operation import UserOperation
from relayer.core.request_id import USER_OPERATION_ABI_TYPE

logger = structlog.get_logger(__name__)

SIMULATE_VALIDATION_SELECTOR = function_signature_to_4byte_selector(
    f"simulateValidation({USER_OPERATION_ABI_TYPE})"
)
HANDLE_OPS_SELECTOR = function_signature_to_4byte_selector(
    f"handleOps({USER_OPERATION_ABI_TYPE}[],address)"
)
GET_REQUEST_ID_SELECTOR = function_signature_to_4byte_selector(
    f"getRequestId({USER_OPERATION_ABI_TYPE})"
)
BALANCE_OF_SELECTOR = function_signature_to_4byte_selector("balanceOf(address)")
GET_DEPOSIT_INFO_SELECTOR = function_signature_to_4byte_selector("getDepositInfo(address)")

# Revert payload selectors
FAILED_OP_SELECTOR = function_signature_to_4byte_selector("FailedOp(uint256,address,string)")
ERROR_SELECTOR = bytes.fromhex("08c379a0")   # Error(string)
PANIC_SELECTOR = bytes.fromhex("4e487b71")   # Panic(uint256)

USER_OPERATION_EVENT_TOPIC = keccak(
    text="UserOperationEvent(bytes32,address,address,uint256,uint256,uint256,bool)"
)
USER_OPERATION_REVERT_REASON_TOPIC = keccak(
    text="UserOperationRevertReason(bytes32,address,uint256,bytes)"
)


class AbiDecodeError(ValueError):
    """Raised when contract return data cannot be decoded."""
    pass


@dataclass(frozen=True)
class DecodedRevert:
    """
    A revert payload decoded into its parts.

    Attributes:
        reason: Human-readable reason (raw hex when the payload is unknown)
        op_index: Index of the failing operation (``FailedOp`` only)
        paymaster: Paymaster blamed for the failure (``FailedOp`` only)
        data: Raw revert payload as hex
    """

    reason: str
    op_index: Optional[int] = None
    paymaster: Optional[str] = None
    data: Optional[str] = None


@dataclass(frozen=True)
class DepositInfo:
    """Deposit and stake held by an account at the entry point."""

    deposit: int
    staked: bool
    stake: int
    unstake_delay_sec: int
    withdraw_time: int

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "deposit": self.deposit,
            "staked": self.staked,
            "stake": self.stake,
            "unstake_delay_sec": self.unstake_delay_sec,
            "withdraw_time": self.withdraw_time,
        }


@dataclass(frozen=True)
class UserOperationExecution:
    """
    Execution result of one operation inside a mined batch.

    Built from the ``UserOperationEvent`` (and optional
    ``UserOperationRevertReason``) logs of a ``handleOps`` receipt.
    """

    request_id: str
    sender: str
    paymaster: Optional[str]
    nonce: int
    actual_gas_cost: int
    actual_gas_price: int
    success: bool
    revert_reason: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "sender": self.sender,
            "paymaster": self.paymaster,
            "nonce": self.nonce,
            "actual_gas_cost": self.actual_gas_cost,
            "actual_gas_price": self.actual_gas_price,
            "success": self.success,
            "revert_reason": self.revert_reason,
        }


# ============================================================================
# Encoding
# ============================================================================

def encode_simulate_validation(op: UserOperation) -> bytes:
    """Encode a ``simulateValidation(op)`` call."""
    return SIMULATE_VALIDATION_SELECTOR + encode([USER_OPERATION_ABI_TYPE], [op.to_abi_tuple()])


def encode_handle_ops(ops: Sequence[UserOperation], beneficiary: str) -> bytes:
    """
    Encode a ``handleOps(ops, beneficiary)`` call.

    Args:
        ops: Operations in batch order
        beneficiary: Recipient of the collected fees
    """
    return HANDLE_OPS_SELECTOR + encode(
        [f"{USER_OPERATION_ABI_TYPE}[]", "address"],
        [[op.to_abi_tuple() for op in ops], beneficiary],
    )


def encode_get_request_id(op: UserOperation) -> bytes:
    """Encode a ``getRequestId(op)`` call."""
    return GET_REQUEST_ID_SELECTOR + encode([USER_OPERATION_ABI_TYPE], [op.to_abi_tuple()])


def decode_handle_ops(data: bytes) -> Tuple[List[UserOperation], str]:
    """
    Decode ``handleOps`` calldata back into operations and beneficiary.

    Raises:
        AbiDecodeError: If the calldata is not a ``handleOps`` call
    """
    if data[:4] != HANDLE_OPS_SELECTOR:
        raise AbiDecodeError("Calldata is not a handleOps call")
    try:
        raw_ops, beneficiary = decode([f"{USER_OPERATION_ABI_TYPE}[]", "address"], data[4:])
    except DecodingError as e:
        raise AbiDecodeError(f"Invalid handleOps calldata: {e}") from e
    ops = [UserOperation.from_abi_tuple(values) for values in raw_ops]
    return ops, to_checksum_address(beneficiary)


def decode_simulation_result(data: bytes) -> Tuple[int, int]:
    """
    Decode the ``(preOpGas, prefund)`` return of ``simulateValidation``.

    Raises:
        AbiDecodeError: If the return data is not two uint256 words
    """
    try:
        pre_op_gas, prefund = decode(["uint256", "uint256"], data)
    except DecodingError as e:
        raise AbiDecodeError(f"Invalid simulateValidation result: {e}") from e
    return pre_op_gas, prefund


def _text(raw: bytes) -> str:
    # Contracts may revert with reasons that are not valid UTF-8
    return raw.decode("utf-8", "replace")


def decode_revert(data: Optional[str]) -> DecodedRevert:
    """
    Decode a revert payload.

    Understands the entry point's ``FailedOp`` error and the standard
    ``Error(string)`` and ``Panic(uint256)`` payloads. Anything else is
    reported as its raw hex.

    Args:
        data: Revert payload as ``0x`` hex (None when the node gave none)
    """
    if not data:
        return DecodedRevert(reason="execution reverted")

    try:
        raw = bytes.fromhex(data[2:] if data.startswith("0x") else data)
    except ValueError:
        return DecodedRevert(reason=data, data=data)

    selector, body = raw[:4], raw[4:]
    try:
        if selector == FAILED_OP_SELECTOR:
            op_index, paymaster, reason = decode(["uint256", "address", "bytes"], body)
            return DecodedRevert(
                reason=_text(reason),
                op_index=op_index,
                paymaster=to_checksum_address(paymaster),
                data=data,
            )
        if selector == ERROR_SELECTOR:
            (reason,) = decode(["bytes"], body)
            return DecodedRevert(reason=_text(reason), data=data)
        if selector == PANIC_SELECTOR:
            (code,) = decode(["uint256"], body)
            return DecodedRevert(reason=f"panic code {code:#x}", data=data)
    except DecodingError:
        logger.debug("revert_decode_failed", data=data[:74])

    return DecodedRevert(reason=data, data=data)


def decode_user_operation_events(receipt: Dict[str, Any], entry_point: str) -> List[UserOperationExecution]:
    """
    Extract per-operation execution results from a ``handleOps`` receipt.

    Args:
        receipt: Transaction receipt as returned by the node
        entry_point: Entry point address; logs from other contracts are ignored

    Returns:
        One result per ``UserOperationEvent``, in log order
    """
    entry_point = entry_point.lower()
    revert_reasons: Dict[str, str] = {}
    events = []

    for log in receipt.get("logs") or []:
        if str(log.get("address", "")).lower() != entry_point:
            continue
        try:
            topics = [bytes.fromhex(t[2:]) for t in log.get("topics") or []]
            data = bytes.fromhex(str(log.get("data", "0x"))[2:])
        except (TypeError, ValueError):
            logger.warning("event_log_malformed", log_index=log.get("logIndex"))
            continue
        if not topics:
            continue

        try:
            if topics[0] == USER_OPERATION_EVENT_TOPIC and len(topics) == 4:
                fields = decode(["uint256", "uint256", "uint256", "bool"], data)
                events.append((topics, fields))
            elif topics[0] == USER_OPERATION_REVERT_REASON_TOPIC and len(topics) == 3:
                _, revert_reason = decode(["uint256", "bytes"], data)
                revert_reasons["0x" + topics[1].hex()] = decode_revert("0x" + revert_reason.hex()).reason
        except DecodingError:
            logger.warning("event_log_malformed", log_index=log.get("logIndex"), topic=topics[0].hex())

    results = []
    for topics, (nonce, gas_cost, gas_price, success) in events:
        request_id = "0x" + topics[1].hex()
        paymaster = to_checksum_address(topics[3][12:])
        results.append(
            UserOperationExecution(
                request_id=request_id,
                sender=to_checksum_address(topics[2][12:]),
                paymaster=None if int(paymaster, 16) == 0 else paymaster,
                nonce=nonce,
                actual_gas_cost=gas_cost,
                actual_gas_price=gas_price,
                success=success,
                revert_reason=revert_reasons.get(request_id),
            )
        )
    return results


# ============================================================================
# Contract wrapper
# ============================================================================

class EntryPoint:
    """
    Read-only view of a deployed entry point contract.

    All calls go through ``eth_call``; nothing here signs or broadcasts.
    """

    def __init__(self, chain: ChainInterface, address: str):
        """
        Initialize the contract wrapper.

        Args:
            chain: Node interface used for calls
            address: Entry point contract address
        """
        self.chain = chain
        self.address = to_checksum_address(address)

    async def simulate_validation(self, op: UserOperation, caller: Optional[str] = None) -> Tuple[int, int]:
        """
        Dry-run validation of an operation.

        Args:
            op: Operation to validate
            caller: Address the call is made from (the relayer)

        Returns:
            Tuple of (preOpGas, prefund)

        Raises:
            ContractRevertError: If validation reverted
            AbiDecodeError: If the return data is malformed
        """
        tx = {"to": self.address, "data": encode_simulate_validation(op)}
        if caller:
            tx["from"] = caller
        result = await self.chain.call(tx)
        return decode_simulation_result(result)

    async def get_request_id(self, op: UserOperation) -> bytes:
        """Ask the contract for the operation's request id."""
        result = await self.chain.call({"to": self.address, "data": encode_get_request_id(op)})
        try:
            (request_id,) = decode(["bytes32"], result)
        except DecodingError as e:
            raise AbiDecodeError(f"Invalid getRequestId result: {e}") from e
        return request_id

    async def balance_of(self, account: str) -> int:
        """Get the account's deposit at the entry point, in wei."""
        data = BALANCE_OF_SELECTOR + encode(["address"], [to_checksum_address(account)])
        result = await self.chain.call({"to": self.address, "data": data})
        try:
            (balance,) = decode(["uint256"], result)
        except DecodingError as e:
            raise AbiDecodeError(f"Invalid balanceOf result: {e}") from e
        return balance

    async def get_deposit_info(self, account: str) -> DepositInfo:
        """Get the account's deposit and stake information."""
        data = GET_DEPOSIT_INFO_SELECTOR + encode(["address"], [to_checksum_address(account)])
        result = await self.chain.call({"to": self.address, "data": data})
        try:
            ((deposit, staked, stake, unstake_delay, withdraw_time),) = decode(
                ["(uint112,bool,uint112,uint32,uint64)"], result
            )
        except DecodingError as e:
            raise AbiDecodeError(f"Invalid getDepositInfo result: {e}") from e
        return DepositInfo(
            deposit=deposit,
            staked=staked,
            stake=stake,
            unstake_delay_sec=unstake_delay,
            withdraw_time=withdraw_time,
        )

    def decode_events(self, receipt: Dict[str, Any]) -> List[UserOperationExecution]:
        """Decode this entry point's operation events from a receipt."""
        return decode_user_operation_events(receipt, self.address)
