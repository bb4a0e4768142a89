"""
Test suite for the entry point contract surface.

Covers call encoding, revert decoding, event decoding and the read-only
contract queries.
"""

import pytest
from eth_abi import encode
from eth_utils import to_checksum_address

from relayer.chain.entrypoint import (
    BALANCE_OF_SELECTOR,
    GET_DEPOSIT_INFO_SELECTOR,
    GET_REQUEST_ID_SELECTOR,
    HANDLE_OPS_SELECTOR,
    SIMULATE_VALIDATION_SELECTOR,
    USER_OPERATION_REVERT_REASON_TOPIC,
    AbiDecodeError,
    EntryPoint,
    decode_handle_ops,
    decode_revert,
    decode_simulation_result,
    decode_user_operation_events,
    encode_handle_ops,
    encode_simulate_validation,
)
from relayer.chain.interface import ContractRevertError
from relayer.core.request_id import get_request_id

from tests.conftest import (
    CHAIN_ID,
    ENTRY_POINT,
    RELAYER_ADDRESS,
    SENDER_A,
    SENDER_B,
    error_revert,
    failed_op_revert,
    log_topic,
    make_operation,
    user_operation_log,
)


# ============================================================================
# Test Encoding
# ============================================================================

class TestSelectors:
    """Selectors must match the deployed contract's ABI."""

    def test_known_selectors(self):
        assert SIMULATE_VALIDATION_SELECTOR.hex() == "1a1c1141"
        assert HANDLE_OPS_SELECTOR.hex() == "2815c17b"
        assert GET_REQUEST_ID_SELECTOR.hex() == "4baeaf8a"
        assert GET_DEPOSIT_INFO_SELECTOR.hex() == "5287ce12"
        assert BALANCE_OF_SELECTOR.hex() == "70a08231"


class TestEncoding:
    """Tests for call encoding."""

    def test_simulate_validation_calldata(self, sample_operation):
        data = encode_simulate_validation(sample_operation)

        assert data[:4] == SIMULATE_VALIDATION_SELECTOR
        # Single dynamic tuple argument: first word is its offset
        assert int.from_bytes(data[4:36], "big") == 32

    def test_handle_ops_preserves_order_and_beneficiary(self):
        ops = [make_operation(sender=SENDER_B), make_operation(sender=SENDER_A, nonce=3)]

        decoded_ops, beneficiary = decode_handle_ops(encode_handle_ops(ops, RELAYER_ADDRESS))

        assert decoded_ops == ops
        assert beneficiary == RELAYER_ADDRESS

    def test_decode_handle_ops_rejects_other_calls(self, sample_operation):
        with pytest.raises(AbiDecodeError):
            decode_handle_ops(encode_simulate_validation(sample_operation))

    def test_decode_simulation_result(self):
        assert decode_simulation_result(encode(["uint256", "uint256"], [1, 2])) == (1, 2)

    def test_decode_simulation_result_malformed(self):
        with pytest.raises(AbiDecodeError):
            decode_simulation_result(b"\x00" * 10)


# ============================================================================
# Test Revert Decoding
# ============================================================================

class TestDecodeRevert:
    """Tests for revert payload decoding."""

    def test_failed_op(self):
        paymaster = to_checksum_address("0x" + "cc" * 20)
        revert = decode_revert(failed_op_revert(2, "invalid signature", paymaster))

        assert revert.reason == "invalid signature"
        assert revert.op_index == 2
        assert revert.paymaster == paymaster

    def test_error_string(self):
        revert = decode_revert(error_revert("wallet: not enough funds"))

        assert revert.reason == "wallet: not enough funds"
        assert revert.op_index is None

    def test_panic(self):
        data = "0x4e487b71" + encode(["uint256"], [0x11]).hex()
        assert decode_revert(data).reason == "panic code 0x11"

    def test_unknown_payload_kept_raw(self):
        revert = decode_revert("0xdeadbeef")

        assert revert.reason == "0xdeadbeef"
        assert revert.data == "0xdeadbeef"

    def test_truncated_payload_kept_raw(self):
        data = failed_op_revert(0, "reason")[:40]
        assert decode_revert(data).reason == data

    def test_missing_payload(self):
        assert decode_revert(None).reason == "execution reverted"

    def test_failed_op_reason_not_utf8(self):
        revert = decode_revert(failed_op_revert(1, b"\xff\xfe bad"))

        assert revert.reason == "\ufffd\ufffd bad"
        assert revert.op_index == 1

    def test_error_string_not_utf8(self):
        data = "0x08c379a0" + encode(["bytes"], [b"oops \xc3"]).hex()

        assert decode_revert(data).reason == "oops \ufffd"


# ============================================================================
# Test Event Decoding
# ============================================================================

class TestEventDecoding:
    """Tests for per-operation results in receipts."""

    def test_success_and_revert_reason(self):
        ok_id = get_request_id(make_operation(sender=SENDER_A), ENTRY_POINT, CHAIN_ID)
        bad_id = get_request_id(make_operation(sender=SENDER_B), ENTRY_POINT, CHAIN_ID)
        revert_log = {
            "address": ENTRY_POINT,
            "topics": [
                log_topic(USER_OPERATION_REVERT_REASON_TOPIC),
                log_topic(bad_id),
                log_topic(bytes.fromhex(SENDER_B[2:])),
            ],
            "data": "0x" + encode(
                ["uint256", "bytes"],
                [0, bytes.fromhex(error_revert("transfer failed")[2:])],
            ).hex(),
        }
        receipt = {
            "status": "0x1",
            "logs": [
                user_operation_log(ok_id, SENDER_A, True),
                revert_log,
                user_operation_log(bad_id, SENDER_B, False),
            ],
        }

        results = decode_user_operation_events(receipt, ENTRY_POINT)

        assert [r.request_id for r in results] == ["0x" + ok_id.hex(), "0x" + bad_id.hex()]
        assert results[0].success is True
        assert results[0].sender == SENDER_A
        assert results[0].paymaster is None
        assert results[0].actual_gas_cost == 42_000
        assert results[1].success is False
        assert results[1].revert_reason == "transfer failed"

    def test_logs_from_other_contracts_ignored(self):
        request_id = b"\x01" * 32
        receipt = {"logs": [user_operation_log(request_id, SENDER_A, True, address="0x" + "99" * 20)]}

        assert decode_user_operation_events(receipt, ENTRY_POINT) == []

    def test_malformed_logs_skipped(self):
        ok_id = get_request_id(make_operation(sender=SENDER_A), ENTRY_POINT, CHAIN_ID)
        truncated = user_operation_log(b"\x02" * 32, SENDER_B, True)
        truncated["data"] = truncated["data"][:66]
        not_hex = user_operation_log(b"\x03" * 32, SENDER_B, True)
        not_hex["data"] = "0xzz"
        receipt = {"logs": [truncated, not_hex, user_operation_log(ok_id, SENDER_A, True)]}

        results = decode_user_operation_events(receipt, ENTRY_POINT)

        assert [r.request_id for r in results] == ["0x" + ok_id.hex()]

    def test_revert_reason_not_utf8(self):
        request_id = get_request_id(make_operation(sender=SENDER_B), ENTRY_POINT, CHAIN_ID)
        reason = bytes.fromhex("08c379a0") + encode(["bytes"], [b"\xff"])
        revert_log = {
            "address": ENTRY_POINT,
            "topics": [
                log_topic(USER_OPERATION_REVERT_REASON_TOPIC),
                log_topic(request_id),
                log_topic(bytes.fromhex(SENDER_B[2:])),
            ],
            "data": "0x" + encode(["uint256", "bytes"], [0, reason]).hex(),
        }
        receipt = {"logs": [revert_log, user_operation_log(request_id, SENDER_B, False)]}

        results = decode_user_operation_events(receipt, ENTRY_POINT)

        assert results[0].revert_reason == "\ufffd"


# ============================================================================
# Test Contract Queries
# ============================================================================

class TestEntryPointQueries:
    """Tests for the EntryPoint wrapper against the mock chain."""

    @pytest.mark.asyncio
    async def test_simulate_validation(self, mock_chain, sample_operation):
        mock_chain.prefunds[sample_operation.sender] = 777
        entry_point = EntryPoint(mock_chain, ENTRY_POINT)

        pre_op_gas, prefund = await entry_point.simulate_validation(sample_operation, RELAYER_ADDRESS)

        assert (pre_op_gas, prefund) == (50_000, 777)
        assert mock_chain.calls[-1]["from"] == RELAYER_ADDRESS
        assert mock_chain.calls[-1]["to"] == ENTRY_POINT

    @pytest.mark.asyncio
    async def test_simulate_validation_revert(self, mock_chain, sample_operation):
        mock_chain.rejections[sample_operation.sender] = "invalid signature"
        entry_point = EntryPoint(mock_chain, ENTRY_POINT)

        with pytest.raises(ContractRevertError) as exc_info:
            await entry_point.simulate_validation(sample_operation)

        assert decode_revert(exc_info.value.revert_data).reason == "invalid signature"

    @pytest.mark.asyncio
    async def test_get_request_id_query(self, mock_chain, sample_operation):
        """The query encodes the operation and decodes the returned bytes32."""
        entry_point = EntryPoint(mock_chain, ENTRY_POINT)

        onchain = await entry_point.get_request_id(sample_operation)

        assert onchain == get_request_id(sample_operation, ENTRY_POINT, CHAIN_ID)

    @pytest.mark.asyncio
    async def test_deposit_queries(self, mock_chain):
        mock_chain.deposits[SENDER_A] = 10**17
        entry_point = EntryPoint(mock_chain, ENTRY_POINT)

        balance = await entry_point.balance_of(SENDER_A)
        info = await entry_point.get_deposit_info(SENDER_A)

        assert balance == 10**17
        assert info.deposit == 10**17
        assert info.staked is True
        assert info.unstake_delay_sec == 86400
        assert info.to_dict()["stake"] == 10**17 // 2
