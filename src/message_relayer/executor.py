#!/usr/bin/env python3
"""Message submission for the relayer.

This module sends finalized messages to the destination chain, either one
transaction per message or one aggregator transaction for a whole batch plan,
and waits for confirmation before the caller moves the cursor.
"""

import logging
import math
from collections.abc import Sequence
from typing import TYPE_CHECKING

from .errors import AlreadyDeliveredError
from .interfaces import GasEstimator, TransactionSubmitter
from .metrics import RelayerMetrics
from .models import CrossChainMessage

if TYPE_CHECKING:
    from .planner import BatchPlan

logger = logging.getLogger(__name__)


def gas_limit_for(estimated_gas: int, gas_multiplier: float) -> int:
    """Gas limit for a transaction: the estimate scaled by the multiplier, rounded up."""
    return math.ceil(estimated_gas * gas_multiplier)


class SubmissionExecutor:
    """Submits messages and batch plans to the destination chain."""

    def __init__(
        self,
        estimator: GasEstimator,
        submitter: TransactionSubmitter,
        metrics: RelayerMetrics,
        gas_multiplier: float = 1.1,
        receipt_timeout: float = 15.0,
        poll_interval: float = 1.0,
    ) -> None:
        """
        Initialize the SubmissionExecutor.

        Args:
            estimator: Destination-chain gas estimator
            submitter: Destination-chain transaction submitter
            metrics: Metrics receiving the relayed message count
            gas_multiplier: Factor applied to gas estimates
            receipt_timeout: Seconds to wait for each confirmation
            poll_interval: Seconds between confirmation polls
        """
        self.estimator = estimator
        self.submitter = submitter
        self.metrics = metrics
        self.gas_multiplier = gas_multiplier
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval

    async def relay_message(self, message: CrossChainMessage) -> bool:
        """
        Relay one message in its own transaction and wait for its receipt.

        An "already received" answer from estimation or submission means the
        message was relayed by someone else; it is not an error.

        Args:
            message: A finalized message

        Returns:
            True if this relayer sent the message, False if it was already delivered

        Raises:
            SubmissionError: If the transaction could not be sent or reverted
            GasEstimationError: If estimation failed for an unknown reason
            ConfirmationTimeoutError: If the receipt did not show up in time
        """
        sent = False
        try:
            estimated_gas = await self.estimator.estimate_finalize_gas(message)
            gas_limit = gas_limit_for(estimated_gas, self.gas_multiplier)
            tx_hash = await self.submitter.finalize_message(message, gas_limit)
            logger.info(f"relayer sent tx: {tx_hash} ({message}, gas={gas_limit})")
            sent = True
        except AlreadyDeliveredError:
            logger.info(f"{message} was already relayed, skipping submission")

        if sent:
            # A reverted relay never produces a message receipt
            await self.submitter.wait_for_confirmation(
                tx_hash,
                timeout=self.receipt_timeout,
                poll_interval=self.poll_interval,
            )

        await self.submitter.wait_for_message_receipt(
            message,
            timeout=self.receipt_timeout,
            poll_interval=self.poll_interval,
        )

        if sent:
            self.metrics.relayed_messages.inc()
        return sent

    async def relay_messages(self, messages: Sequence[CrossChainMessage]) -> int:
        """
        Relay every message of a block, in order.

        Returns:
            Number of messages this relayer sent
        """
        relayed = 0
        for message in messages:
            if await self.relay_message(message):
                relayed += 1
        return relayed

    async def submit_plan(self, plan: "BatchPlan") -> str | None:
        """
        Submit a batch plan as one aggregator transaction and wait for it.

        Args:
            plan: A non-empty batch plan

        Returns:
            Hash of the aggregator transaction, or None if the messages were
            already delivered and nothing was sent

        Raises:
            ValueError: If the plan is empty
            SubmissionError: If the transaction could not be sent or reverted
            ConfirmationTimeoutError: If the receipt did not show up in time
        """
        if not plan.calls:
            raise ValueError("Cannot submit an empty batch plan")

        gas_limit = gas_limit_for(plan.estimated_gas, self.gas_multiplier)
        try:
            tx_hash = await self.submitter.submit_aggregate(plan.calls, gas_limit)
        except AlreadyDeliveredError:
            logger.info(f"Messages of the plan ({len(plan.calls)} calls) were already relayed, skipping submission")
            return None
        logger.info(f"relayer sent multicall: {tx_hash} ({len(plan.calls)} calls, gas={gas_limit})")

        await self.submitter.wait_for_confirmation(
            tx_hash,
            timeout=self.receipt_timeout,
            poll_interval=self.poll_interval,
        )
        self.metrics.relayed_messages.inc(len(plan.calls))
        return tx_hash
