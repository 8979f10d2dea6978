"""Unit tests for the MessageRelayer scheduling loop."""

import asyncio

import pytest

from message_relayer.errors import (
    AlreadyDeliveredError,
    ConfirmationTimeoutError,
    GasEstimationError,
    ProtocolViolationError,
    SubmissionError,
)
from message_relayer.models import MessageStatus
from message_relayer.scheduler import (
    RelayerState,
    TickEvent,
    TickKind,
    next_state,
)


class TestTransitions:
    """Tests for the tick state machine."""

    @pytest.mark.parametrize("state, event, expected", [
        (RelayerState.IDLE, TickEvent.NO_WORK, RelayerState.IDLE),
        (RelayerState.IDLE, TickEvent.WORK_AVAILABLE, RelayerState.SCANNING),
        (RelayerState.SCANNING, TickEvent.BLOCK_UNAVAILABLE, RelayerState.IDLE),
        (RelayerState.SCANNING, TickEvent.NO_MESSAGES, RelayerState.ADVANCING),
        (RelayerState.SCANNING, TickEvent.MESSAGES_FOUND, RelayerState.FINALIZING),
        (RelayerState.FINALIZING, TickEvent.NOT_FINALIZED, RelayerState.IDLE),
        (RelayerState.FINALIZING, TickEvent.FINALIZED, RelayerState.SUBMITTING),
        (RelayerState.SUBMITTING, TickEvent.SUBMITTED, RelayerState.ADVANCING),
        (RelayerState.SUBMITTING, TickEvent.RETRYABLE_FAILURE, RelayerState.IDLE),
        (RelayerState.ADVANCING, TickEvent.ADVANCED, RelayerState.IDLE),
    ])
    def test_valid_transitions(self, state, event, expected):
        assert next_state(state, event) is expected

    @pytest.mark.parametrize("state, event", [
        (RelayerState.IDLE, TickEvent.SUBMITTED),
        (RelayerState.SCANNING, TickEvent.ADVANCED),
        (RelayerState.FINALIZING, TickEvent.NO_MESSAGES),
        (RelayerState.ADVANCING, TickEvent.WORK_AVAILABLE),
    ])
    def test_invalid_transitions(self, state, event):
        with pytest.raises(ValueError, match="Invalid transition"):
            next_state(state, event)


class TestSingleMode:
    """Tests for ticks that relay one block at a time."""

    @pytest.mark.asyncio
    async def test_idle_refreshes_tip(self, chain, build_relayer):
        """Test that a tick at the tip refreshes the tip and idles."""
        relayer = build_relayer()

        outcome = await relayer.tick()
        assert outcome.kind is TickKind.IDLE
        assert outcome.delay == relayer.idle_interval

        chain.add_block(1)
        assert relayer.cursor.known_tip == 0
        await relayer.tick()
        assert relayer.cursor.known_tip == 1
        assert relayer.cursor.next_position == 1

    @pytest.mark.asyncio
    async def test_final_message_is_relayed(self, chain, metrics, build_relayer):
        """Test that a final message is submitted once and the cursor advances."""
        messages = chain.add_block(1, message_count=1)
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert outcome.blocks_advanced == 1
        assert outcome.messages_relayed == 1
        assert [m for m, _ in chain.finalized] == messages
        assert chain.receipt_waits == messages
        assert relayer.cursor.next_position == 2
        assert metrics.relayed_messages.value == 1
        assert relayer.state is RelayerState.IDLE

    @pytest.mark.asyncio
    async def test_message_in_challenge_window_waits(self, chain, metrics, build_relayer):
        """Test that nothing is submitted while the batch can still be challenged."""
        messages = chain.add_block(1, message_count=1)
        chain.set_status(messages[0], MessageStatus.IN_CHALLENGE_WINDOW)
        chain.inside_window = True
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.WAITING
        assert outcome.delay == relayer.poll_interval
        assert chain.finalized == []
        assert relayer.cursor.next_position == 1
        assert metrics.relayed_messages.value == 0

    @pytest.mark.asyncio
    async def test_window_passed_is_relayed(self, chain, build_relayer):
        messages = chain.add_block(1, message_count=1)
        chain.set_status(messages[0], MessageStatus.IN_CHALLENGE_WINDOW)
        chain.inside_window = False
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert len(chain.finalized) == 1

    @pytest.mark.asyncio
    async def test_already_received_still_advances(self, chain, metrics, build_relayer):
        """Test that a message relayed by someone else is not an error."""
        messages = chain.add_block(1, message_count=1)
        chain.submit_errors[messages[0].unique_key] = AlreadyDeliveredError(
            "execution reverted: Provided message has already been received."
        )
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert outcome.messages_relayed == 0
        assert relayer.cursor.next_position == 2
        assert metrics.relayed_messages.value == 0

    @pytest.mark.asyncio
    async def test_empty_block_advances(self, chain, build_relayer):
        chain.add_block(1)
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert outcome.delay == 0
        assert relayer.cursor.next_position == 2
        assert chain.status_queries == []

    @pytest.mark.asyncio
    async def test_missing_block_waits(self, chain, build_relayer):
        chain.tip = 3
        relayer = build_relayer()
        relayer.cursor.known_tip = 3

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.WAITING
        assert relayer.cursor.next_position == 1

    @pytest.mark.asyncio
    async def test_confirmation_timeout_is_retried(self, chain, metrics, build_relayer):
        """Test that a retryable failure keeps the cursor in place."""
        chain.add_block(1, message_count=1)
        chain.receipt_error = ConfirmationTimeoutError("not received after 1.0s")
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.RETRY
        assert outcome.delay == relayer.poll_interval
        assert relayer.cursor.next_position == 1
        assert relayer.state is RelayerState.IDLE
        assert metrics.relayed_messages.value == 0

        # The next tick finds the message delivered and moves on
        chain.receipt_error = None
        outcome = await relayer.tick()
        assert outcome.kind is TickKind.ADVANCED
        assert len(chain.finalized) == 1

    @pytest.mark.asyncio
    async def test_reverted_relay_is_fatal(self, chain, metrics, build_relayer):
        """Test that a reverted relay stops the tick instead of being resent."""
        chain.add_block(1, message_count=1)
        chain.confirm_error = SubmissionError("Transaction 0x01 reverted with status=0")
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        with pytest.raises(SubmissionError):
            await relayer.tick()

        assert len(chain.finalized) == 1
        assert chain.receipt_waits == []
        assert relayer.cursor.next_position == 1
        assert metrics.relayed_messages.value == 0

    @pytest.mark.asyncio
    async def test_protocol_violation_is_fatal(self, chain, build_relayer):
        chain.add_block(1, transactions=2)
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        with pytest.raises(ProtocolViolationError):
            await relayer.tick()
        assert relayer.cursor.next_position == 1

    @pytest.mark.asyncio
    async def test_unknown_estimation_failure_is_fatal(self, chain, build_relayer):
        messages = chain.add_block(1, message_count=1)
        chain.estimate_errors[messages[0].unique_key] = GasEstimationError("Gas estimation failed: boom")
        relayer = build_relayer()
        relayer.cursor.known_tip = 1

        with pytest.raises(GasEstimationError):
            await relayer.tick()
        assert relayer.cursor.next_position == 1


class TestAggregateMode:
    """Tests for ticks that relay batch plans."""

    @pytest.mark.asyncio
    async def test_cursor_advances_through_consumed_blocks_only(self, chain, metrics, build_relayer):
        """Test that the cursor stops before the block deferred by the gas ceiling."""
        chain.default_call_gas = 400_000
        chain.add_block(1)
        block2 = chain.add_block(2, message_count=1)
        block3 = chain.add_block(3, message_count=1)
        block4 = chain.add_block(4, message_count=1)
        chain.add_block(5)
        relayer = build_relayer(aggregate=True, gas_ceiling=1_000_000, max_block_batch_size=5)
        relayer.cursor.known_tip = 5

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert outcome.blocks_advanced == 3
        assert outcome.messages_relayed == 2
        assert relayer.cursor.next_position == 4
        assert len(chain.aggregates) == 1
        assert metrics.relayed_messages.value == 2
        assert chain.delivered == {m.unique_key for m in [*block2, *block3]}

        # Block 4 is picked up by the next tick
        outcome = await relayer.tick()
        assert outcome.blocks_advanced == 2
        assert chain.delivered >= {block4[0].unique_key}
        assert relayer.cursor.next_position == 6

    @pytest.mark.asyncio
    async def test_empty_blocks_advance_without_submission(self, chain, build_relayer):
        for number in range(1, 4):
            chain.add_block(number)
        relayer = build_relayer(aggregate=True)
        relayer.cursor.known_tip = 3

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert outcome.blocks_advanced == 3
        assert chain.aggregates == []

    @pytest.mark.asyncio
    async def test_unfinalized_first_block_waits(self, chain, build_relayer):
        messages = chain.add_block(1, message_count=1)
        chain.set_status(messages[0], MessageStatus.PENDING_PUBLICATION, header=None)
        relayer = build_relayer(aggregate=True)
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.WAITING
        assert relayer.cursor.next_position == 1
        assert chain.aggregates == []

    @pytest.mark.asyncio
    async def test_oversized_first_block_is_retried(self, chain, build_relayer):
        chain.add_block(1, message_count=1)
        chain.default_call_gas = 5_000_000
        relayer = build_relayer(aggregate=True, gas_ceiling=1_000_000)
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.RETRY
        assert relayer.cursor.next_position == 1
        assert relayer.state is RelayerState.IDLE

    @pytest.mark.asyncio
    async def test_already_delivered_submission_is_replanned(self, chain, metrics, build_relayer):
        """Test that a batch relayed by someone else does not stop the loop."""
        messages = chain.add_block(1, message_count=2)
        chain.submit_aggregate_error = AlreadyDeliveredError(
            "execution reverted: Provided message has already been received."
        )
        relayer = build_relayer(aggregate=True)
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.RETRY
        assert relayer.cursor.next_position == 1
        assert relayer.state is RelayerState.IDLE
        assert metrics.relayed_messages.value == 0

        # The other relayer delivered the first message; the second is still due
        chain.delivered.add(messages[0].unique_key)
        chain.submit_aggregate_error = None
        outcome = await relayer.tick()

        assert outcome.kind is TickKind.ADVANCED
        assert relayer.cursor.next_position == 2
        assert [chain._calls[call.call_data] for call in chain.aggregates[0][0]] == [messages[1]]
        assert metrics.relayed_messages.value == 1

    @pytest.mark.asyncio
    async def test_confirmation_timeout_keeps_cursor(self, chain, metrics, build_relayer):
        chain.add_block(1, message_count=2)
        chain.confirm_error = ConfirmationTimeoutError("not mined")
        relayer = build_relayer(aggregate=True)
        relayer.cursor.known_tip = 1

        outcome = await relayer.tick()

        assert outcome.kind is TickKind.RETRY
        assert relayer.cursor.next_position == 1
        assert metrics.relayed_messages.value == 0


class TestRunLoop:
    """Tests for the service loop."""

    @pytest.mark.asyncio
    async def test_run_relays_and_stops(self, chain, metrics, build_relayer):
        """Test that run() works through the chain and exits on stop()."""
        for number in range(1, 4):
            chain.add_block(number, message_count=1)
        relayer = build_relayer()

        task = asyncio.create_task(relayer.run())
        for _ in range(100):
            if relayer.cursor.next_position == 4:
                break
            await asyncio.sleep(0.01)

        relayer.stop()
        await asyncio.wait_for(task, timeout=1.0)

        assert not relayer.running
        assert relayer.cursor.next_position == 4
        assert metrics.relayed_messages.value == 3
        assert metrics.get_metrics()["highest_known_block"] == 3

    @pytest.mark.asyncio
    async def test_run_raises_fatal_errors(self, chain, build_relayer, caplog):
        chain.add_block(1, transactions=0)
        relayer = build_relayer()

        with pytest.raises(ProtocolViolationError):
            await relayer.run()

        assert not relayer.running
        assert "Error in main loop" in caplog.text
