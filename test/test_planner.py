"""Unit tests for the BatchPlanner class."""

import pytest

from message_relayer.classifier import FinalizationClassifier
from message_relayer.errors import GasAllowanceExceededError, GasEstimationError
from message_relayer.extractor import MessageExtractor
from message_relayer.models import MessageStatus
from message_relayer.planner import BatchPlanner, StopReason


@pytest.fixture
def make_planner(chain):
    def _make(gas_ceiling: int = 1_000_000, gas_multiplier: float = 1.0, max_block_batch_size: int = 5):
        return BatchPlanner(
            extractor=MessageExtractor(chain),
            classifier=FinalizationClassifier(chain),
            estimator=chain,
            submitter=chain,
            gas_ceiling=gas_ceiling,
            gas_multiplier=gas_multiplier,
            max_block_batch_size=max_block_batch_size,
        )
    return _make


class TestBatchPlanner:
    """Test suite for BatchPlanner."""

    @pytest.mark.asyncio
    async def test_window_of_empty_blocks(self, chain, make_planner):
        """Test that empty blocks are consumed up to the window size."""
        for number in range(1, 10):
            chain.add_block(number)

        plan = await make_planner(max_block_batch_size=5).plan(1)

        assert plan.calls == []
        assert plan.blocks_consumed == 5
        assert plan.last_position == 5
        assert plan.stop_reason is StopReason.WINDOW_EXHAUSTED

    @pytest.mark.asyncio
    async def test_stops_at_gas_ceiling(self, chain, make_planner):
        """Test that growth stops at the block whose call would cross the ceiling."""
        chain.default_call_gas = 400_000
        chain.add_block(1)
        block2 = chain.add_block(2, message_count=1)
        block3 = chain.add_block(3, message_count=1)
        chain.add_block(4, message_count=1)
        chain.add_block(5)

        plan = await make_planner().plan(1)

        assert plan.messages == [*block2, *block3]
        assert plan.size == 2
        assert plan.estimated_gas == 800_000
        assert plan.blocks_consumed == 3
        assert plan.stop_reason is StopReason.GAS_CEILING

    @pytest.mark.asyncio
    async def test_deferred_block_is_not_skipped(self, chain, make_planner):
        """Test that blocks after an oversized block are not packed ahead of it."""
        chain.add_block(1)
        block2 = chain.add_block(2, message_count=1)
        block3 = chain.add_block(3, message_count=1)
        chain.add_block(4, message_count=1)
        chain.call_gas[block3[0].unique_key] = 900_000

        plan = await make_planner().plan(1)

        assert plan.messages == block2
        assert plan.blocks_consumed == 2
        assert plan.last_position == 2
        assert plan.stop_reason is StopReason.GAS_CEILING
        assert 4 not in {m.block_number for m in chain.status_queries}

    @pytest.mark.asyncio
    async def test_block_is_deferred_whole(self, chain, make_planner):
        """Test that a block whose second message overflows contributes no calls."""
        chain.add_block(1, message_count=1)
        chain.add_block(2, message_count=2)
        chain.default_call_gas = 400_000

        plan = await make_planner().plan(1)

        assert [m.block_number for m in plan.messages] == [1]
        assert plan.blocks_consumed == 1
        assert plan.estimated_gas == 400_000

    @pytest.mark.asyncio
    async def test_multiplier_applies_to_ceiling(self, chain, make_planner):
        chain.add_block(1, message_count=1)
        chain.add_block(2, message_count=1)
        chain.default_call_gas = 500_000

        # 2 x 500k = 1M fits exactly, but not once scaled by 1.5
        assert (await make_planner(gas_multiplier=1.0).plan(1)).size == 2
        assert (await make_planner(gas_multiplier=1.5).plan(1)).size == 1

    @pytest.mark.asyncio
    async def test_first_block_over_ceiling(self, chain, make_planner):
        chain.add_block(1, message_count=1)
        chain.default_call_gas = 2_000_000

        plan = await make_planner().plan(1)

        assert plan.calls == []
        assert plan.blocks_consumed == 0
        assert plan.stop_reason is StopReason.GAS_CEILING

    @pytest.mark.asyncio
    async def test_gas_allowance_exceeded_is_a_ceiling_stop(self, chain, make_planner):
        chain.add_block(1, message_count=1)
        chain.aggregate_error = GasAllowanceExceededError("gas required exceeds allowance (30000000)")

        plan = await make_planner().plan(1)

        assert plan.stop_reason is StopReason.GAS_CEILING
        assert plan.blocks_consumed == 0

    @pytest.mark.asyncio
    async def test_oversized_message_keeps_earlier_blocks(self, chain, make_planner):
        """Test that a message over the allowance defers its block, not the plan."""
        block1 = chain.add_block(1, message_count=1)
        block2 = chain.add_block(2, message_count=1)
        chain.add_block(3, message_count=1)
        chain.estimate_errors[block2[0].unique_key] = GasAllowanceExceededError(
            "gas required exceeds allowance (30000000)"
        )

        plan = await make_planner().plan(1)

        assert plan.messages == block1
        assert plan.blocks_consumed == 1
        assert plan.stop_reason is StopReason.GAS_CEILING

    @pytest.mark.asyncio
    async def test_stops_at_unfinalized_block(self, chain, make_planner):
        block1 = chain.add_block(1, message_count=1)
        block2 = chain.add_block(2, message_count=1)
        chain.add_block(3, message_count=1)
        chain.set_status(block2[0], MessageStatus.IN_CHALLENGE_WINDOW)

        plan = await make_planner().plan(1)

        assert plan.messages == block1
        assert plan.blocks_consumed == 1
        assert plan.stop_reason is StopReason.NOT_FINALIZED

    @pytest.mark.asyncio
    async def test_stops_at_missing_block(self, chain, make_planner):
        chain.add_block(1)
        chain.tip = 10

        plan = await make_planner().plan(1)

        assert plan.blocks_consumed == 1
        assert plan.stop_reason is StopReason.BLOCK_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_delivered_messages_are_left_out(self, chain, make_planner):
        """Test that a block whose messages were all relayed is consumed without calls."""
        delivered = chain.add_block(1, message_count=2)
        pending = chain.add_block(2, message_count=1)
        for message in delivered:
            chain.delivered.add(message.unique_key)

        plan = await make_planner().plan(1)

        assert plan.messages == pending
        assert plan.blocks_consumed == 2

    @pytest.mark.asyncio
    async def test_unknown_estimation_failure_propagates(self, chain, make_planner):
        messages = chain.add_block(1, message_count=1)
        chain.estimate_errors[messages[0].unique_key] = GasEstimationError("Gas estimation failed: boom")

        with pytest.raises(GasEstimationError):
            await make_planner().plan(1)
