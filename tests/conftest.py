"""
Pytest configuration and shared fixtures for the test suite.
"""

import asyncio
from typing import Any, Dict, List, Optional, Union

import pytest
from eth_abi import decode, encode
from eth_utils import keccak, to_checksum_address

from relayer.chain.entrypoint import (
    BALANCE_OF_SELECTOR,
    FAILED_OP_SELECTOR,
    GET_DEPOSIT_INFO_SELECTOR,
    GET_REQUEST_ID_SELECTOR,
    SIMULATE_VALIDATION_SELECTOR,
    USER_OPERATION_EVENT_TOPIC,
)
from relayer.chain.interface import ChainInterface, ContractRevertError
from relayer.config import FeeStrategy, RelayerConfig
from relayer.core.operation import ZERO_ADDRESS, UserOperation
from relayer.core.request_id import USER_OPERATION_ABI_TYPE, get_request_id
from relayer.tx.signer import TransactionSigner

CHAIN_ID = 1337
ENTRY_POINT = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

# Well-known development key; never holds real funds
RELAYER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
RELAYER_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

SENDER_A = to_checksum_address("0x" + "aa" * 20)
SENDER_B = to_checksum_address("0x" + "bb" * 20)


# ============================================================================
# Configuration Fixtures
# ============================================================================

def make_config(**overrides: Any) -> RelayerConfig:
    """Create a test configuration."""
    settings = dict(
        chain_id=CHAIN_ID,
        rpc_url="http://localhost:8545",
        entry_point_address=ENTRY_POINT,
        max_batch_size=3,
        fee_strategy=FeeStrategy.NODE,
        simulation_max_age_seconds=60,
        receipt_timeout_seconds=1,
        receipt_poll_interval_seconds=0.01,
        log_level="DEBUG",
    )
    settings.update(overrides)
    return RelayerConfig(**settings)


@pytest.fixture
def test_config() -> RelayerConfig:
    """Create a test configuration."""
    return make_config()


# ============================================================================
# Test Data Generators
# ============================================================================

def make_operation(
    sender: str = SENDER_A,
    nonce: int = 0,
    signature: bytes = b"\x01" * 65,
    **overrides: Any,
) -> UserOperation:
    """Create a valid operation with realistic gas values."""
    fields = dict(
        sender=sender,
        nonce=nonce,
        init_code=b"",
        call_data=bytes.fromhex("b61d27f6") + b"\x00" * 96,
        call_gas_limit=100_000,
        verification_gas_limit=150_000,
        pre_verification_gas=21_000,
        max_fee_per_gas=2_000_000,
        max_priority_fee_per_gas=1_000_000,
        paymaster=None,
        paymaster_data=b"",
        signature=signature,
    )
    fields.update(overrides)
    return UserOperation(**fields).validate()


def failed_op_revert(op_index: int, reason: Union[str, bytes], paymaster: str = ZERO_ADDRESS) -> str:
    """Encode a FailedOp revert payload as hex; a bytes reason is written as is."""
    reason_type = "bytes" if isinstance(reason, bytes) else "string"
    return "0x" + (
        FAILED_OP_SELECTOR + encode(["uint256", "address", reason_type], [op_index, paymaster, reason])
    ).hex()


def error_revert(reason: str) -> str:
    """Encode an Error(string) revert payload as hex."""
    return "0x08c379a0" + encode(["string"], [reason]).hex()


def log_topic(value: bytes) -> str:
    return "0x" + value.rjust(32, b"\x00").hex()


def user_operation_log(
    request_id: bytes,
    sender: str,
    success: bool,
    address: str = ENTRY_POINT,
) -> Dict[str, Any]:
    """Build a UserOperationEvent log as the node returns it."""
    return {
        "address": address.lower(),
        "topics": [
            log_topic(USER_OPERATION_EVENT_TOPIC),
            log_topic(request_id),
            log_topic(bytes.fromhex(sender[2:])),
            log_topic(b""),
        ],
        "data": "0x" + encode(
            ["uint256", "uint256", "uint256", "bool"],
            [0, 42_000, 1_000_000_000, success],
        ).hex(),
    }


@pytest.fixture
def sample_operation() -> UserOperation:
    """Create a sample operation."""
    return make_operation()


@pytest.fixture
def sample_operations() -> List[UserOperation]:
    """Create operations from five different senders."""
    return [
        make_operation(sender=to_checksum_address("0x" + f"{i + 1:02x}" * 20), nonce=i)
        for i in range(5)
    ]


# ============================================================================
# Mock Chain Interface
# ============================================================================

HANG = "hang"


class MockChain(ChainInterface):
    """
    Scripted chain interface for testing.

    Simulation results are scripted per sender; broadcast results are
    scripted as a FIFO list where ``None`` accepts, an exception instance is
    raised and ``HANG`` never answers.
    """

    def __init__(self, chain_id: int = CHAIN_ID):
        self.chain_id = chain_id
        self.pending_nonce = 0
        self.gas_price_wei = 1_000_000_000
        self.priority_fee_wei = 100_000_000
        self.gas_estimate = 200_000

        # Simulation scripting
        self.prefunds: Dict[str, int] = {}
        self.rejections: Dict[str, Union[str, bytes]] = {}
        self.simulation_errors: Dict[str, Exception] = {}
        self.simulation_delays: Dict[str, float] = {}

        # Failure injection
        self.nonce_error: Optional[Exception] = None
        self.estimate_error: Optional[Exception] = None
        self.send_script: List[Any] = []

        # Entry point state
        self.deposits: Dict[str, int] = {}
        self.receipts: Dict[str, dict] = {}

        # Recording
        self.calls: List[Dict[str, Any]] = []
        self.simulated_senders: List[str] = []
        self.sent_transactions: List[bytes] = []
        self.nonce_queries = 0
        self._connected = False

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def call(self, tx: Dict[str, Any], block: str = "latest") -> bytes:
        self.calls.append(tx)
        data: bytes = tx["data"]
        selector, body = data[:4], data[4:]

        if selector == SIMULATE_VALIDATION_SELECTOR:
            return await self._simulate(body)
        if selector == GET_REQUEST_ID_SELECTOR:
            (values,) = decode([USER_OPERATION_ABI_TYPE], body)
            op = UserOperation.from_abi_tuple(values)
            return encode(["bytes32"], [get_request_id(op, tx["to"], self.chain_id)])
        if selector == BALANCE_OF_SELECTOR:
            (account,) = decode(["address"], body)
            return encode(["uint256"], [self.deposits.get(to_checksum_address(account), 0)])
        if selector == GET_DEPOSIT_INFO_SELECTOR:
            (account,) = decode(["address"], body)
            deposit = self.deposits.get(to_checksum_address(account), 0)
            return encode(
                ["(uint112,bool,uint112,uint32,uint64)"],
                [(deposit, deposit > 0, deposit // 2, 86400, 0)],
            )
        raise ContractRevertError("execution reverted", code=3, data="0x")

    async def _simulate(self, body: bytes) -> bytes:
        (values,) = decode([USER_OPERATION_ABI_TYPE], body)
        sender = to_checksum_address(values[0])
        self.simulated_senders.append(sender)

        delay = self.simulation_delays.get(sender)
        if delay:
            await asyncio.sleep(delay)
        if sender in self.simulation_errors:
            raise self.simulation_errors[sender]
        if sender in self.rejections:
            raise ContractRevertError(
                "execution reverted",
                code=3,
                data=failed_op_revert(0, self.rejections[sender]),
            )
        return encode(["uint256", "uint256"], [50_000, self.prefunds.get(sender, 100_000)])

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        if self.estimate_error:
            raise self.estimate_error
        return self.gas_estimate

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        self.nonce_queries += 1
        if self.nonce_error:
            raise self.nonce_error
        return self.pending_nonce

    async def get_balance(self, address: str, block: str = "latest") -> int:
        return 10**18

    async def gas_price(self) -> int:
        return self.gas_price_wei

    async def max_priority_fee(self) -> int:
        return self.priority_fee_wei

    async def send_raw_transaction(self, raw_tx: bytes) -> str:
        behaviour = self.send_script.pop(0) if self.send_script else None
        if behaviour == HANG:
            await asyncio.Event().wait()
        if isinstance(behaviour, BaseException):
            raise behaviour

        self.sent_transactions.append(raw_tx)
        self.pending_nonce += 1
        return "0x" + keccak(raw_tx).hex()

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return self.receipts.get(tx_hash)


@pytest.fixture
def mock_chain() -> MockChain:
    """Create a mock chain interface."""
    return MockChain()


# ============================================================================
# Test Signer
# ============================================================================

@pytest.fixture
def test_signer(test_config) -> TransactionSigner:
    """Create a signer holding the development key."""
    signer = TransactionSigner(test_config)
    signer.load_key_from_hex(RELAYER_KEY)
    return signer
