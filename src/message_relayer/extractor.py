"""Outbound message extraction from source-chain blocks."""

import logging
from collections.abc import Callable

from .errors import ProtocolViolationError
from .interfaces import SourceChain
from .models import CrossChainMessage, MessageDirection, SourceBlock

logger = logging.getLogger(__name__)

BlockCheck = Callable[[SourceBlock], None]


def require_single_transaction(block: SourceBlock) -> None:
    """Reject blocks that do not carry exactly one transaction.

    The source chain produces one block per transaction. Any other count
    means the relayer is pointed at a chain it was not built for.

    Raises:
        ProtocolViolationError: If the block has zero or several transactions
    """
    if len(block.transactions) != 1:
        raise ProtocolViolationError(
            f"got an unexpected number of transactions in block: {block.number} "
            f"(expected 1, got {len(block.transactions)})"
        )


def allow_any_transaction_count(block: SourceBlock) -> None:
    """Accept blocks with any number of transactions."""


class MessageExtractor:
    """Pulls source blocks and returns the outbound messages they carry."""

    def __init__(
        self,
        source: SourceChain,
        block_check: BlockCheck = require_single_transaction,
    ) -> None:
        """
        Initialize the MessageExtractor.

        Args:
            source: Source chain access
            block_check: Validation applied to every block before extraction
        """
        self.source = source
        self.block_check = block_check

    async def extract(self, position: int) -> list[CrossChainMessage] | None:
        """
        Extract the outbound messages of the block at ``position``.

        Args:
            position: Source block number

        Returns:
            Messages in transaction then log order, an empty list when the
            block sent nothing, or None when the block does not exist yet

        Raises:
            ProtocolViolationError: If the block fails the configured check
        """
        block = await self.source.get_block(position)
        if block is None:
            logger.debug(f"Block {position} not available yet")
            return None

        self.block_check(block)

        messages: list[CrossChainMessage] = []
        for tx_hash in block.transactions:
            found = await self.source.get_messages_by_transaction(
                tx_hash, direction=MessageDirection.L2_TO_L1
            )
            messages.extend(m for m in found if m.direction is MessageDirection.L2_TO_L1)

        if messages:
            logger.debug(f"Block {position} carries {len(messages)} outbound message(s)")
        return messages
