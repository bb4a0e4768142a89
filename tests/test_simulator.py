"""
Test suite for validation simulation.

The classification rules matter most here: a revert is a rejection, while
any transport problem leaves validity unknown.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from relayer.chain.entrypoint import EntryPoint
from relayer.chain.interface import (
    ChainConnectionError,
    ContractRevertError,
    MalformedResponseError,
    RpcError,
)
from relayer.core.outcomes import (
    SimulationAccepted,
    SimulationRejected,
    SimulationStatus,
    SimulationUnknown,
)
from relayer.core.request_id import request_id_hex
from relayer.engine.simulator import ValidationSimulator

from tests.conftest import CHAIN_ID, ENTRY_POINT, RELAYER_ADDRESS, error_revert


@pytest.fixture
def simulator(mock_chain, test_config) -> ValidationSimulator:
    return ValidationSimulator(EntryPoint(mock_chain, ENTRY_POINT), RELAYER_ADDRESS, test_config)


# ============================================================================
# Test Classification
# ============================================================================

class TestSimulate:
    """Tests for single-operation simulation."""

    @pytest.mark.asyncio
    async def test_accepted(self, simulator, mock_chain, sample_operation):
        mock_chain.prefunds[sample_operation.sender] = 123_456

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationAccepted)
        assert outcome.status == SimulationStatus.ACCEPTED
        assert outcome.request_id == request_id_hex(sample_operation, ENTRY_POINT, CHAIN_ID)
        assert outcome.operation is sample_operation
        assert outcome.pre_op_gas == 50_000
        assert outcome.prefund == 123_456

    @pytest.mark.asyncio
    async def test_rejected_with_failed_op(self, simulator, mock_chain, sample_operation):
        mock_chain.rejections[sample_operation.sender] = "AA23 reverted (or OOG)"

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationRejected)
        assert outcome.reason == "AA23 reverted (or OOG)"
        assert outcome.op_index == 0
        assert outcome.revert_data.startswith("0x")

    @pytest.mark.asyncio
    async def test_rejected_with_error_string(self, simulator, mock_chain, sample_operation):
        mock_chain.simulation_errors[sample_operation.sender] = ContractRevertError(
            "execution reverted", code=3, data=error_revert("paymaster: deposit too low")
        )

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationRejected)
        assert outcome.reason == "paymaster: deposit too low"
        assert outcome.op_index is None

    @pytest.mark.asyncio
    async def test_revert_without_data_uses_message(self, simulator, mock_chain, sample_operation):
        mock_chain.simulation_errors[sample_operation.sender] = ContractRevertError(
            "execution reverted", code=3
        )

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationRejected)
        assert outcome.reason == "execution reverted"

    @pytest.mark.asyncio
    async def test_timeout_is_unknown(self, simulator, mock_chain, sample_operation):
        mock_chain.simulation_delays[sample_operation.sender] = 5

        outcome = await simulator.simulate(sample_operation, timeout=0.05)

        assert isinstance(outcome, SimulationUnknown)
        assert "timed out" in outcome.error

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            ChainConnectionError("connection refused", request_sent=False),
            MalformedResponseError("eth_call: response is not JSON"),
            RpcError("internal error", code=-32603),
        ],
    )
    async def test_transport_failure_is_unknown(self, simulator, mock_chain, sample_operation, error):
        """Transport failures never look like rejections."""
        mock_chain.simulation_errors[sample_operation.sender] = error

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationUnknown)
        assert outcome.status == SimulationStatus.UNKNOWN
        assert type(error).__name__ in outcome.error

    @pytest.mark.asyncio
    async def test_undecodable_result_is_unknown(self, simulator, mock_chain, sample_operation):
        mock_chain.call = AsyncMock(return_value=b"\x00" * 7)

        outcome = await simulator.simulate(sample_operation)

        assert isinstance(outcome, SimulationUnknown)

    @pytest.mark.asyncio
    async def test_simulation_uses_no_relayer_nonce(self, simulator, mock_chain, sample_operation):
        await simulator.simulate(sample_operation)

        assert mock_chain.nonce_queries == 0
        assert mock_chain.sent_transactions == []


# ============================================================================
# Test Concurrent Simulation
# ============================================================================

class TestSimulateMany:
    """Tests for concurrent simulation."""

    @pytest.mark.asyncio
    async def test_outcomes_in_input_order(self, simulator, mock_chain, sample_operations):
        # Earlier operations answer later
        for position, op in enumerate(sample_operations):
            mock_chain.simulation_delays[op.sender] = 0.01 * (len(sample_operations) - position)
        mock_chain.rejections[sample_operations[2].sender] = "bad signature"

        outcomes = await simulator.simulate_many(sample_operations)

        assert [o.operation for o in outcomes] == sample_operations
        assert [o.status for o in outcomes] == [
            SimulationStatus.ACCEPTED,
            SimulationStatus.ACCEPTED,
            SimulationStatus.REJECTED,
            SimulationStatus.ACCEPTED,
            SimulationStatus.ACCEPTED,
        ]

    @pytest.mark.asyncio
    async def test_simulations_overlap(self, simulator, mock_chain, sample_operations):
        for op in sample_operations:
            mock_chain.simulation_delays[op.sender] = 0.1

        loop = asyncio.get_running_loop()
        started = loop.time()
        await simulator.simulate_many(sample_operations)

        assert loop.time() - started < 0.1 * len(sample_operations)

    @pytest.mark.asyncio
    async def test_one_timeout_does_not_affect_others(self, simulator, mock_chain, sample_operations):
        mock_chain.simulation_delays[sample_operations[1].sender] = 5

        outcomes = await simulator.simulate_many(sample_operations[:3], timeout=0.1)

        assert isinstance(outcomes[0], SimulationAccepted)
        assert isinstance(outcomes[1], SimulationUnknown)
        assert isinstance(outcomes[2], SimulationAccepted)

    @pytest.mark.asyncio
    async def test_reason_not_utf8_is_still_a_rejection(self, simulator, mock_chain, sample_operations):
        mock_chain.rejections[sample_operations[0].sender] = b"\xff\xfe bad"

        outcomes = await simulator.simulate_many(sample_operations[:2])

        assert len(outcomes) == 2
        assert isinstance(outcomes[0], SimulationRejected)
        assert outcomes[0].reason == "\ufffd\ufffd bad"
        assert isinstance(outcomes[1], SimulationAccepted)

    @pytest.mark.asyncio
    async def test_empty_input(self, simulator):
        assert await simulator.simulate_many([]) == []


# ============================================================================
# Test Freshness
# ============================================================================

class TestIsFresh:
    """Tests for simulation age checks."""

    @pytest.mark.asyncio
    async def test_recent_simulation_is_fresh(self, simulator, sample_operation):
        outcome = await simulator.simulate(sample_operation)
        assert ValidationSimulator.is_fresh(outcome, 60)

    @pytest.mark.asyncio
    async def test_old_simulation_is_stale(self, simulator, sample_operation):
        outcome = await simulator.simulate(sample_operation)
        old = replace(outcome, simulated_at=datetime.utcnow() - timedelta(seconds=61))

        assert not ValidationSimulator.is_fresh(old, 60)

    @pytest.mark.asyncio
    async def test_rejection_is_never_fresh(self, simulator, mock_chain, sample_operation):
        mock_chain.rejections[sample_operation.sender] = "nope"
        outcome = await simulator.simulate(sample_operation)

        assert not ValidationSimulator.is_fresh(outcome, 60)
