#!/usr/bin/env python3
"""Finalization classification for outbound messages.

This module decides whether the messages of a block can be relayed. The
oracle's coarse status lags the destination chain, so messages reported as
in the challenge window get a second, precise check against their batch
header before they are held back.
"""

import logging
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass

from .interfaces import MessageStatusOracle
from .models import CrossChainMessage, MessageStatus

# Get logger for this module
logger = logging.getLogger(__name__)

RELAYABLE_STATUSES: frozenset[MessageStatus] = frozenset(
    {MessageStatus.FINAL, MessageStatus.ALREADY_DELIVERED}
)


@dataclass(frozen=True, slots=True)
class Classification:
    """Result of classifying one message.

    Attributes:
        message: The classified message
        status: Effective status after the challenge window check
        reported_status: Status as reported by the oracle
        regressed: True if the status dropped below the one seen before it
    """

    message: CrossChainMessage
    status: MessageStatus
    reported_status: MessageStatus
    regressed: bool = False

    @property
    def relayable(self) -> bool:
        return self.status in RELAYABLE_STATUSES


class FinalizationClassifier:
    """Classifies messages as pending, in challenge window, final or delivered.

    Classification never raises for "not ready" conditions; those are
    expressed through the returned status.
    """

    MAX_TRACKED_MESSAGES: int = 10_000

    def __init__(self, oracle: MessageStatusOracle) -> None:
        """
        Initialize the FinalizationClassifier.

        Args:
            oracle: Message-status oracle
        """
        self.oracle = oracle
        # Last status seen per message and whether reaching it was a regression,
        # bounded with LRU eviction
        self.observed_statuses: OrderedDict[tuple[str, int], tuple[MessageStatus, bool]] = OrderedDict()

    async def classify(self, message: CrossChainMessage) -> Classification:
        """
        Classify a single message.

        Args:
            message: The message to classify

        Returns:
            Classification with the effective status
        """
        report = await self.oracle.get_message_status(message)
        status = report.status

        if status is MessageStatus.IN_CHALLENGE_WINDOW:
            if report.batch_header is None:
                logger.warning(f"No batch header resolved for {message}, treating as in challenge window")
            elif not await self.oracle.inside_challenge_window(report.batch_header):
                logger.debug(
                    f"Batch {report.batch_header.batch_index} is past its challenge window, "
                    f"treating {message} as final"
                )
                status = MessageStatus.FINAL

        regressed = self._track_status(message, status)
        return Classification(
            message=message,
            status=status,
            reported_status=report.status,
            regressed=regressed,
        )

    async def is_finalized(self, messages: Sequence[CrossChainMessage]) -> bool:
        """
        Check whether every message of a unit can be relayed.

        Stops at the first message that is not ready.

        Args:
            messages: Messages of one block

        Returns:
            True if all messages are final or already delivered
        """
        for message in messages:
            result = await self.classify(message)
            if not result.relayable:
                logger.debug(f"{message} not relayable yet (status={result.status.value})")
                return False
        return True

    def _track_status(self, message: CrossChainMessage, status: MessageStatus) -> bool:
        """
        Record the status seen for a message and report regressions.

        A regression points at a reorg or an oracle bug. It is logged once, when
        the status changes, and does not hold the message back: the relay
        decision only depends on the current status, so classifying again
        without a chain change gives the same answer.

        Returns:
            True if the status dropped below the previously recorded one
        """
        key = message.unique_key
        previous = self.observed_statuses.get(key)

        if previous is not None and previous[0] is status:
            regressed = previous[1]
        else:
            regressed = previous is not None and status.rank < previous[0].rank
            if regressed:
                logger.warning(
                    f"Status of {message} regressed from {previous[0].value} to {status.value}, "
                    f"possible reorg"
                )

        if key in self.observed_statuses:
            self.observed_statuses.move_to_end(key)
        elif len(self.observed_statuses) >= self.MAX_TRACKED_MESSAGES:
            self.observed_statuses.popitem(last=False)
        self.observed_statuses[key] = (status, regressed)
        return regressed
