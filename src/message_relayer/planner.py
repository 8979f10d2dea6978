#!/usr/bin/env python3
"""Batch planning for aggregate relays.

The planner walks a window of source blocks starting at the cursor and packs
the calls that deliver their messages into one aggregator transaction, as long
as the aggregate gas estimate stays under the configured ceiling.

Blocks are the unit of progress: a block is either consumed entirely (all of
its relayable calls are in the plan) or left for the next tick. Growth stops
for good at the first block that is not finalized, does not exist yet, or
would push the aggregate over the ceiling.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .classifier import FinalizationClassifier
from .errors import AlreadyDeliveredError, GasAllowanceExceededError
from .executor import gas_limit_for
from .extractor import MessageExtractor
from .interfaces import GasEstimator, TransactionSubmitter
from .models import Call, CrossChainMessage

logger = logging.getLogger(__name__)


class StopReason(Enum):
    """Why the planner stopped growing the plan."""

    WINDOW_EXHAUSTED = "window_exhausted"
    BLOCK_UNAVAILABLE = "block_unavailable"
    NOT_FINALIZED = "not_finalized"
    GAS_CEILING = "gas_ceiling"


@dataclass
class BatchPlan:
    """Calls selected for one aggregator transaction.

    Attributes:
        start_position: First source block scanned
        calls: Destination calls, in source order
        messages: Messages delivered by ``calls``, same order
        estimated_gas: Aggregate gas estimate for ``calls``
        blocks_consumed: Source blocks fully covered, including empty ones
        stop_reason: What ended growth
    """

    start_position: int
    calls: list[Call] = field(default_factory=list)
    messages: list[CrossChainMessage] = field(default_factory=list)
    estimated_gas: int = 0
    blocks_consumed: int = 0
    stop_reason: StopReason = StopReason.WINDOW_EXHAUSTED

    @property
    def size(self) -> int:
        return len(self.calls)

    @property
    def last_position(self) -> int:
        """Last block covered by the plan."""
        return self.start_position + self.blocks_consumed - 1


class BatchPlanner:
    """Greedily builds batch plans bounded by a gas ceiling."""

    def __init__(
        self,
        extractor: MessageExtractor,
        classifier: FinalizationClassifier,
        estimator: GasEstimator,
        submitter: TransactionSubmitter,
        gas_ceiling: int = 1_500_000,
        gas_multiplier: float = 1.1,
        max_block_batch_size: int = 200,
    ) -> None:
        """
        Initialize the BatchPlanner.

        Args:
            extractor: Message extractor for source blocks
            classifier: Finalization classifier
            estimator: Destination-chain gas estimator
            submitter: Builds the delivery call for each message
            gas_ceiling: Maximum gas limit of the aggregator transaction
            gas_multiplier: Factor applied to the aggregate estimate before the ceiling check
            max_block_batch_size: Maximum number of source blocks per plan
        """
        self.extractor = extractor
        self.classifier = classifier
        self.estimator = estimator
        self.submitter = submitter
        self.gas_ceiling = gas_ceiling
        self.gas_multiplier = gas_multiplier
        self.max_block_batch_size = max_block_batch_size

    def _exceeds_ceiling(self, estimated_gas: int) -> bool:
        return gas_limit_for(estimated_gas, self.gas_multiplier) > self.gas_ceiling

    async def plan(self, start_position: int) -> BatchPlan:
        """
        Build the plan for the window starting at ``start_position``.

        Args:
            start_position: Cursor position

        Returns:
            The plan; it may carry no calls while still consuming empty blocks

        Raises:
            ProtocolViolationError: If a block fails the extractor's check
            GasEstimationError: If a dry run fails for an unknown reason
        """
        plan = BatchPlan(start_position=start_position)

        for position in range(start_position, start_position + self.max_block_batch_size):
            messages = await self.extractor.extract(position)
            if messages is None:
                plan.stop_reason = StopReason.BLOCK_UNAVAILABLE
                break

            # No messages in this block so it is consumed as is
            if not messages:
                plan.blocks_consumed += 1
                continue

            if not await self.classifier.is_finalized(messages):
                plan.stop_reason = StopReason.NOT_FINALIZED
                break

            grown = await self._grow(plan, messages)
            if grown is None:
                plan.stop_reason = StopReason.GAS_CEILING
                logger.info(
                    f"Gas ceiling reached at block {position}, "
                    f"deferring it with {len(messages)} message(s) to the next tick"
                )
                break

            block_calls, block_messages, estimated_gas = grown
            plan.calls.extend(block_calls)
            plan.messages.extend(block_messages)
            if block_calls:
                plan.estimated_gas = estimated_gas
            plan.blocks_consumed += 1

        logger.debug(
            f"Planned {plan.size} call(s) over {plan.blocks_consumed} block(s) "
            f"from {start_position}, stopped: {plan.stop_reason.value}"
        )
        return plan

    async def _grow(
        self,
        plan: BatchPlan,
        messages: list[CrossChainMessage],
    ) -> tuple[list[Call], list[CrossChainMessage], int] | None:
        """
        Try to add every relayable message of one block to the plan.

        Returns:
            The block's calls, their messages and the new aggregate estimate,
            or None if the block does not fit under the ceiling
        """
        block_calls: list[Call] = []
        block_messages: list[CrossChainMessage] = []
        estimated_gas = plan.estimated_gas

        for message in messages:
            try:
                # Dry run of the individual delivery
                await self.estimator.estimate_finalize_gas(message)
            except AlreadyDeliveredError:
                logger.debug(f"{message} was already relayed, leaving it out of the batch")
                continue
            except GasAllowanceExceededError:
                # The message alone does not fit; keep what was planned before it
                return None

            call = await self.submitter.get_finalize_call(message)
            candidate = [*plan.calls, *block_calls, call]

            try:
                estimated_gas = await self.estimator.estimate_aggregate_gas(candidate)
            except GasAllowanceExceededError:
                return None

            if self._exceeds_ceiling(estimated_gas):
                return None

            block_calls.append(call)
            block_messages.append(message)

        return block_calls, block_messages, estimated_gas
