"""
Message relayer scheduling loop.

This module contains the relay service that walks source-chain blocks one
tick at a time, waits for their messages to become final, and coordinates
the planner and executor to deliver them on the destination chain.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from .classifier import FinalizationClassifier
from .config import RelayerConfig
from .cursor import Cursor
from .errors import RelayerError
from .executor import SubmissionExecutor
from .extractor import MessageExtractor, allow_any_transaction_count, require_single_transaction
from .interfaces import SourceChain
from .messenger import Web3Messenger
from .metrics import RelayerMetrics
from .planner import BatchPlan, BatchPlanner, StopReason

logger = logging.getLogger(__name__)


class RelayerState(Enum):
    """Phase of the current tick."""

    IDLE = "idle"
    SCANNING = "scanning"
    FINALIZING = "finalizing"
    SUBMITTING = "submitting"
    ADVANCING = "advancing"


class TickEvent(Enum):
    """Observations that drive the tick state machine."""

    NO_WORK = "no_work"
    WORK_AVAILABLE = "work_available"
    BLOCK_UNAVAILABLE = "block_unavailable"
    NO_MESSAGES = "no_messages"
    MESSAGES_FOUND = "messages_found"
    NOT_FINALIZED = "not_finalized"
    FINALIZED = "finalized"
    SUBMITTED = "submitted"
    RETRYABLE_FAILURE = "retryable_failure"
    ADVANCED = "advanced"


_TRANSITIONS: dict[tuple[RelayerState, TickEvent], RelayerState] = {
    (RelayerState.IDLE, TickEvent.NO_WORK): RelayerState.IDLE,
    (RelayerState.IDLE, TickEvent.WORK_AVAILABLE): RelayerState.SCANNING,
    (RelayerState.SCANNING, TickEvent.BLOCK_UNAVAILABLE): RelayerState.IDLE,
    (RelayerState.SCANNING, TickEvent.NO_MESSAGES): RelayerState.ADVANCING,
    (RelayerState.SCANNING, TickEvent.MESSAGES_FOUND): RelayerState.FINALIZING,
    (RelayerState.SCANNING, TickEvent.RETRYABLE_FAILURE): RelayerState.IDLE,
    (RelayerState.FINALIZING, TickEvent.NOT_FINALIZED): RelayerState.IDLE,
    (RelayerState.FINALIZING, TickEvent.FINALIZED): RelayerState.SUBMITTING,
    (RelayerState.FINALIZING, TickEvent.RETRYABLE_FAILURE): RelayerState.IDLE,
    (RelayerState.SUBMITTING, TickEvent.SUBMITTED): RelayerState.ADVANCING,
    (RelayerState.SUBMITTING, TickEvent.RETRYABLE_FAILURE): RelayerState.IDLE,
    (RelayerState.ADVANCING, TickEvent.ADVANCED): RelayerState.IDLE,
}


def next_state(state: RelayerState, event: TickEvent) -> RelayerState:
    """
    Transition function of the tick state machine.

    Raises:
        ValueError: If the event is not valid in the given state
    """
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise ValueError(f"Invalid transition: {event.value} in state {state.value}") from None


class TickKind(Enum):
    """How a tick ended."""

    IDLE = "idle"
    WAITING = "waiting"
    RETRY = "retry"
    ADVANCED = "advanced"


@dataclass(frozen=True, slots=True)
class TickOutcome:
    """Result of one tick.

    Attributes:
        kind: How the tick ended
        position: Cursor position at the start of the tick
        blocks_advanced: Blocks the cursor moved forward
        messages_relayed: Messages this relayer delivered
        delay: Seconds to wait before the next tick
    """

    kind: TickKind
    position: int
    blocks_advanced: int = 0
    messages_relayed: int = 0
    delay: float = 0.0


class MessageRelayer:
    """
    Relay service that moves finalized messages from the source chain to the
    destination chain.

    Exactly one tick runs at a time. The cursor only moves after every
    message of the consumed blocks was confirmed on the destination chain.
    """

    STATUS_LOG_INTERVAL = 30  # seconds

    def __init__(
        self,
        source: SourceChain,
        extractor: MessageExtractor,
        classifier: FinalizationClassifier,
        executor: SubmissionExecutor,
        cursor: Cursor,
        metrics: RelayerMetrics,
        planner: BatchPlanner | None = None,
        poll_interval: float = 1.0,
        idle_interval: float = 1.0,
    ) -> None:
        """
        Initialize the MessageRelayer.

        Args:
            source: Source chain access, used to refresh the tip
            extractor: Message extractor
            classifier: Finalization classifier
            executor: Submission executor
            cursor: Scan position, owned by this relayer
            metrics: Metrics sink
            planner: Batch planner; None relays one block per tick
            poll_interval: Seconds to wait before rechecking unfinalized blocks
            idle_interval: Seconds to wait at the chain tip
        """
        self.source = source
        self.extractor = extractor
        self.classifier = classifier
        self.executor = executor
        self.cursor = cursor
        self.metrics = metrics
        self.planner = planner
        self.poll_interval = poll_interval
        self.idle_interval = idle_interval

        self.state = RelayerState.IDLE
        self.running = False

        # Async coordination
        self.shutdown_event = asyncio.Event()

    @classmethod
    def from_config(cls, config: RelayerConfig) -> "MessageRelayer":
        """
        Create a MessageRelayer wired to live chains.

        Args:
            config: Relayer configuration

        Returns:
            Configured MessageRelayer instance
        """
        config.log_config()
        messenger = Web3Messenger.from_config(config)
        metrics = RelayerMetrics()
        relay = config.relay

        block_check = (
            require_single_transaction if relay.require_single_transaction
            else allow_any_transaction_count
        )
        extractor = MessageExtractor(messenger, block_check=block_check)
        classifier = FinalizationClassifier(messenger)
        executor = SubmissionExecutor(
            estimator=messenger,
            submitter=messenger,
            metrics=metrics,
            gas_multiplier=relay.gas_multiplier,
            receipt_timeout=relay.receipt_timeout,
            poll_interval=relay.poll_interval,
        )

        planner = None
        if config.aggregate_mode:
            planner = BatchPlanner(
                extractor=extractor,
                classifier=classifier,
                estimator=messenger,
                submitter=messenger,
                gas_ceiling=relay.gas_ceiling,
                gas_multiplier=relay.gas_multiplier,
                max_block_batch_size=relay.max_block_batch_size,
            )

        logger.info(f"Initialized relayer in {'aggregate' if planner else 'single'} mode")
        return cls(
            source=messenger,
            extractor=extractor,
            classifier=classifier,
            executor=executor,
            cursor=Cursor(next_position=relay.start_position),
            metrics=metrics,
            planner=planner,
            poll_interval=relay.poll_interval,
            idle_interval=relay.idle_interval,
        )

    def _transition(self, event: TickEvent) -> None:
        previous = self.state
        self.state = next_state(previous, event)
        logger.debug(f"{previous.value} --{event.value}--> {self.state.value}")

    def _report_cursor(self) -> None:
        self.metrics.highest_checkable_block.set(self.cursor.next_position)
        self.metrics.highest_known_block.set(self.cursor.known_tip)

    def _advance(self, position: int, blocks: int, relayed: int) -> TickOutcome:
        self.cursor.advance(blocks)
        self._transition(TickEvent.ADVANCED)
        self._report_cursor()
        logger.info(
            f"advanced cursor by {blocks} block(s) to {self.cursor.next_position} "
            f"({relayed} message(s) relayed)"
        )
        return TickOutcome(
            kind=TickKind.ADVANCED,
            position=position,
            blocks_advanced=blocks,
            messages_relayed=relayed,
        )

    def _wait(self, position: int, kind: TickKind = TickKind.WAITING) -> TickOutcome:
        return TickOutcome(kind=kind, position=position, delay=self.poll_interval)

    async def tick(self) -> TickOutcome:
        """
        Run one tick of the relay state machine.

        The tick never sleeps; the returned outcome carries the delay the
        caller should wait before the next one.

        Returns:
            Outcome of the tick

        Raises:
            RelayerError: On fatal errors (protocol violations, unknown
                estimation or submission failures)
        """
        self.state = RelayerState.IDLE
        self._report_cursor()

        # If we're already at the tip, then update the latest tip and loop again.
        if not self.cursor.has_work():
            await self.cursor.refresh_tip(self.source)
            self._transition(TickEvent.NO_WORK)
            self._report_cursor()
            logger.debug(
                f"at tip: next={self.cursor.next_position} known={self.cursor.known_tip}"
            )
            return TickOutcome(
                kind=TickKind.IDLE,
                position=self.cursor.next_position,
                delay=self.idle_interval,
            )

        self._transition(TickEvent.WORK_AVAILABLE)
        position = self.cursor.next_position

        try:
            if self.planner is not None:
                return await self._tick_aggregate(position)
            return await self._tick_single(position)
        except RelayerError as e:
            if not e.retryable:
                raise
            logger.warning(f"retryable failure at block {position}, retrying: {e}")
            self._transition(TickEvent.RETRYABLE_FAILURE)
            return self._wait(position, TickKind.RETRY)

    async def _tick_single(self, position: int) -> TickOutcome:
        logger.info(f"checking L2 block {position}")

        messages = await self.extractor.extract(position)
        if messages is None:
            self._transition(TickEvent.BLOCK_UNAVAILABLE)
            logger.info(f"block not available yet, waiting: {position}")
            return self._wait(position)

        # No messages in this transaction so we can move on to the next one.
        if not messages:
            self._transition(TickEvent.NO_MESSAGES)
            return self._advance(position, 1, 0)

        self._transition(TickEvent.MESSAGES_FOUND)
        if not await self.classifier.is_finalized(messages):
            self._transition(TickEvent.NOT_FINALIZED)
            logger.info(f"tx not yet finalized, waiting: {position}")
            return self._wait(position)

        self._transition(TickEvent.FINALIZED)
        logger.info(f"tx is finalized, relaying: {position}")
        relayed = await self.executor.relay_messages(messages)

        self._transition(TickEvent.SUBMITTED)
        return self._advance(position, 1, relayed)

    async def _tick_aggregate(self, position: int) -> TickOutcome:
        plan = await self.planner.plan(position)
        span = _describe_span(plan)
        logger.info(f"checking L2 block {span}")

        if not plan.calls:
            # No messages to relay in these blocks so we can move on.
            if plan.blocks_consumed > 0:
                self._transition(TickEvent.NO_MESSAGES)
                return self._advance(position, plan.blocks_consumed, 0)

            if plan.stop_reason is StopReason.BLOCK_UNAVAILABLE:
                self._transition(TickEvent.BLOCK_UNAVAILABLE)
                logger.info(f"block not available yet, waiting: {position}")
                return self._wait(position)

            self._transition(TickEvent.MESSAGES_FOUND)
            if plan.stop_reason is StopReason.GAS_CEILING:
                self._transition(TickEvent.FINALIZED)
                self._transition(TickEvent.RETRYABLE_FAILURE)
                logger.warning(f"messages of block {position} do not fit under the gas ceiling, waiting")
                return self._wait(position, TickKind.RETRY)

            self._transition(TickEvent.NOT_FINALIZED)
            logger.info(f"txs not yet finalized, waiting: {position}")
            return self._wait(position)

        self._transition(TickEvent.MESSAGES_FOUND)
        self._transition(TickEvent.FINALIZED)
        logger.info(f"txs are finalized, relaying: {span}")
        if await self.executor.submit_plan(plan) is None:
            # Some calls were relayed by someone else; replan so their dry runs drop them
            self._transition(TickEvent.RETRYABLE_FAILURE)
            return self._wait(position, TickKind.RETRY)

        self._transition(TickEvent.SUBMITTED)
        return self._advance(position, plan.blocks_consumed, plan.size)

    async def _sleep(self, delay: float) -> None:
        """Wait for ``delay`` seconds or until shutdown is requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass  # Continue running

    async def run(self) -> None:
        """Main loop of the relayer service."""
        self.running = True
        logger.info("Message Relayer starting...")
        logger.info(f"Starting at L2 block {self.cursor.next_position}")

        last_status = time.monotonic()
        try:
            await self.cursor.refresh_tip(self.source)

            while self.running and not self.shutdown_event.is_set():
                outcome = await self.tick()

                if time.monotonic() - last_status >= self.STATUS_LOG_INTERVAL:
                    self.metrics.log_metrics()
                    last_status = time.monotonic()

                if outcome.delay > 0:
                    await self._sleep(outcome.delay)

        except Exception as e:
            logger.error(f"Error in main loop: {e}", exc_info=True)
            raise
        finally:
            self.running = False
            self.metrics.log_metrics()
            logger.info("Message Relayer stopped")

    def stop(self) -> None:
        """Stop the relayer after the current tick."""
        self.running = False
        self.shutdown_event.set()


def _describe_span(plan: BatchPlan) -> str:
    if plan.blocks_consumed > 1:
        return f"{plan.start_position} ~ {plan.last_position}"
    return f"{plan.start_position}"
